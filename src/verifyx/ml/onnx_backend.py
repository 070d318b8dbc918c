"""Local inference backend running models with ONNX Runtime.

Sessions come from ``OnnxModelManager``. Each call runs on a dedicated thread
pool so that the per-model timeout can be enforced; a call that overruns is
reported as ``InferenceTimeoutError`` and terminated through its ``RunOptions``.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TYPE_CHECKING

import numpy as np
from onnxruntime import RunOptions

from verifyx.errors import InferenceTimeoutError, InferenceTransportError
from verifyx.ml.backend import NUMPY_DTYPES, InferTensor, ModelConfig, TensorSpec
from verifyx.ml.model_manager import OnnxModelManager

if TYPE_CHECKING:
    from collections.abc import Sequence

    from onnxruntime import InferenceSession, NodeArg

    from verifyx.config import Settings
    from verifyx.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

# ONNX type strings -> wire datatype names.
_ONNX_DTYPES: dict[str, str] = {
    "tensor(bool)": "BOOL",
    "tensor(uint8)": "UINT8",
    "tensor(int8)": "INT8",
    "tensor(int16)": "INT16",
    "tensor(int32)": "INT32",
    "tensor(int64)": "INT64",
    "tensor(float16)": "FP16",
    "tensor(float)": "FP32",
    "tensor(double)": "FP64",
}


def _tensor_spec(node: NodeArg) -> TensorSpec:
    # The leading dim is the batch axis for every model we serve.
    dims = tuple(d if isinstance(d, int) else -1 for d in node.shape[1:])
    return TensorSpec(name=node.name, dtype=_ONNX_DTYPES.get(node.type, "FP32"), dims=dims)


class OnnxBackend:
    """``InferenceBackend`` implementation on top of ONNX Runtime sessions."""

    def __init__(self, settings: Settings, model_manager: ModelManager | None = None) -> None:
        self._model_manager = model_manager if model_manager is not None else OnnxModelManager(settings)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="onnx-backend",
        )

    @property
    def model_manager(self) -> ModelManager:
        return self._model_manager

    def get_model_config(self, model_name: str, timeout: float) -> ModelConfig:
        session = self._session(model_name)
        return ModelConfig(
            name=model_name,
            inputs=tuple(_tensor_spec(node) for node in session.get_inputs()),
            outputs=tuple(_tensor_spec(node) for node in session.get_outputs()),
            platform="onnxruntime",
        )

    def infer(self, model_name: str, timeout: float, inputs: Sequence[InferTensor]) -> list[InferTensor]:
        session = self._session(model_name)
        feeds = {tensor.name: tensor.data for tensor in inputs}
        output_nodes = session.get_outputs()

        run_options = RunOptions()
        future = self._executor.submit(session.run, None, feeds, run_options)
        try:
            raw_outputs = future.result(timeout=timeout)
        except FutureTimeoutError:
            # Abort the run so its worker is free for the next call.
            run_options.terminate = True
            logger.warning("Inference on %s exceeded %ss, terminating the run", model_name, timeout)
            raise InferenceTimeoutError(f"Inference on {model_name} timed out after {timeout}s") from None
        except Exception as exc:
            raise InferenceTransportError(f"Inference on {model_name} failed: {exc}") from exc

        outputs: list[InferTensor] = []
        for node, value in zip(output_nodes, raw_outputs, strict=True):
            dtype = _ONNX_DTYPES.get(node.type, "FP32")
            data = np.asarray(value, dtype=NUMPY_DTYPES[dtype])
            outputs.append(InferTensor(name=node.name, dtype=dtype, shape=data.shape, data=data))
        return outputs

    def loaded_models(self) -> list[str]:
        return self._model_manager.get_loaded_models()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
        self._model_manager.shutdown()

    def _session(self, model_name: str) -> InferenceSession:
        try:
            return self._model_manager.get_session(model_name)
        except (KeyError, FileNotFoundError):
            raise
        except Exception as exc:
            raise InferenceTransportError(f"Could not load model {model_name}: {exc}") from exc
