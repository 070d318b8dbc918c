"""Base class for clients of a single served model."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Generic, TypeVar

from verifyx.config import ModelParams
from verifyx.errors import ShapeMismatchError
from verifyx.ml.backend import InferTensor

if TYPE_CHECKING:
    from collections.abc import Sequence

    import numpy as np
    from numpy.typing import NDArray

    from verifyx.ml.backend import InferenceBackend, ModelConfig

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=ModelParams)


class ModelClient(Generic[P]):
    """Binds a backend to one model and its static parameters.

    The model signature is fetched once at construction and reused for every
    request.
    """

    def __init__(self, backend: InferenceBackend, params: P) -> None:
        self._backend = backend
        self.params = params
        self.config: ModelConfig = backend.get_model_config(params.name, params.timeout)
        logger.info("Model %s ready (%d inputs, %d outputs)", params.name, len(self.config.inputs), len(self.config.outputs))

    @property
    def model_name(self) -> str:
        return self.params.name

    def _infer(self, arrays: Sequence[NDArray[np.generic]]) -> list[NDArray[np.generic]]:
        """Send one array per declared model input; return outputs in declared order."""
        specs = self.config.inputs
        if len(arrays) != len(specs):
            raise ShapeMismatchError(f"{self.model_name} expects {len(specs)} inputs, got {len(arrays)}")

        inputs = [InferTensor.from_array(spec.name, array, spec.dtype) for spec, array in zip(specs, arrays, strict=True)]
        outputs = self._backend.infer(self.model_name, self.params.timeout, inputs)

        by_name = {tensor.name: tensor.data for tensor in outputs}
        names = self.config.output_names
        if names and all(name in by_name for name in names):
            return [by_name[name] for name in names]
        return [tensor.data for tensor in outputs]
