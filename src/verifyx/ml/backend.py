"""Inference boundary: named tensors, model configuration, backend protocol.

Every model call in VerifyX goes through ``InferenceBackend.infer``. Backends
translate their own failures into ``InferenceTransportError`` (or
``InferenceTimeoutError``) and the rest of the code propagates them as-is.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

import numpy as np

from verifyx.errors import ShapeMismatchError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray


# Wire datatype names (KServe v2 / Triton) and their numpy equivalents.
NUMPY_DTYPES: dict[str, type[np.generic]] = {
    "BOOL": np.bool_,
    "UINT8": np.uint8,
    "INT8": np.int8,
    "INT16": np.int16,
    "INT32": np.int32,
    "INT64": np.int64,
    "FP16": np.float16,
    "FP32": np.float32,
    "FP64": np.float64,
}


@dataclass(frozen=True)
class InferTensor:
    """A named, shaped tensor crossing the inference boundary."""

    name: str
    dtype: str
    shape: tuple[int, ...]
    data: NDArray[np.generic]

    @classmethod
    def from_array(cls, name: str, array: NDArray[np.generic], dtype: str = "FP32") -> InferTensor:
        try:
            np_dtype = NUMPY_DTYPES[dtype]
        except KeyError:
            raise ShapeMismatchError(f"Unsupported tensor datatype: {dtype}") from None
        data = np.ascontiguousarray(array, dtype=np_dtype)
        return cls(name=name, dtype=dtype, shape=tuple(int(d) for d in data.shape), data=data)


@dataclass(frozen=True)
class TensorSpec:
    """Declared name, datatype and per-sample dims of a model input/output.

    ``dims`` excludes the batch dimension; dynamic dims are ``-1``.
    """

    name: str
    dtype: str
    dims: tuple[int, ...]


@dataclass(frozen=True)
class ModelConfig:
    """Model signature obtained once from the backend and cached."""

    name: str
    inputs: tuple[TensorSpec, ...]
    outputs: tuple[TensorSpec, ...]
    max_batch_size: int = 0
    platform: str = field(default="", compare=False)

    @property
    def output_names(self) -> list[str]:
        return [spec.name for spec in self.outputs]


class InferenceBackend(Protocol):
    """Protocol for the remote (or local) model-serving capability."""

    def get_model_config(self, model_name: str, timeout: float) -> ModelConfig:
        """Return the input/output signature of a model."""
        ...

    def infer(self, model_name: str, timeout: float, inputs: Sequence[InferTensor]) -> list[InferTensor]:
        """Run one inference request.

        Raises:
            InferenceTimeoutError: If the call exceeds ``timeout`` seconds.
            InferenceTransportError: On any other backend failure.
        """
        ...

    def loaded_models(self) -> list[str]:
        """Names of the models currently ready to serve."""
        ...

    def shutdown(self) -> None:
        """Release backend resources."""
        ...
