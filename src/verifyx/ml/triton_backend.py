"""Remote inference backend for Triton Inference Server (KServe v2 HTTP/JSON).

Endpoints used:
    GET  {url}/v2/models/{model}/config
    POST {url}/v2/models/{model}/infer
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx
import numpy as np

from verifyx.errors import InferenceTimeoutError, InferenceTransportError
from verifyx.ml.backend import NUMPY_DTYPES, InferTensor, ModelConfig, TensorSpec

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)


def _parse_specs(entries: list[dict[str, Any]]) -> tuple[TensorSpec, ...]:
    specs = []
    for entry in entries:
        # Triton reports config datatypes as TYPE_FP32, TYPE_INT32, ...
        dtype = str(entry.get("data_type", "TYPE_FP32")).removeprefix("TYPE_")
        dims = tuple(int(d) for d in entry.get("dims", []))
        specs.append(TensorSpec(name=entry["name"], dtype=dtype, dims=dims))
    return tuple(specs)


class TritonBackend:
    """``InferenceBackend`` implementation talking to Triton over HTTP."""

    def __init__(self, url: str, client: httpx.Client | None = None) -> None:
        self._client = client if client is not None else httpx.Client(base_url=url)
        self._configured: list[str] = []

    def get_model_config(self, model_name: str, timeout: float) -> ModelConfig:
        payload = self._request("GET", f"/v2/models/{model_name}/config", model_name, timeout)
        config = ModelConfig(
            name=payload.get("name", model_name),
            inputs=_parse_specs(payload.get("input", [])),
            outputs=_parse_specs(payload.get("output", [])),
            max_batch_size=int(payload.get("max_batch_size", 0)),
            platform=payload.get("platform", payload.get("backend", "")),
        )
        if model_name not in self._configured:
            self._configured.append(model_name)
        logger.info("Fetched config for %s (%d inputs, %d outputs)", model_name, len(config.inputs), len(config.outputs))
        return config

    def infer(self, model_name: str, timeout: float, inputs: Sequence[InferTensor]) -> list[InferTensor]:
        body = {
            "inputs": [
                {
                    "name": tensor.name,
                    "datatype": tensor.dtype,
                    "shape": list(tensor.shape),
                    "data": tensor.data.reshape(-1).tolist(),
                }
                for tensor in inputs
            ]
        }
        payload = self._request("POST", f"/v2/models/{model_name}/infer", model_name, timeout, json=body)

        outputs: list[InferTensor] = []
        for entry in payload.get("outputs", []):
            dtype = entry["datatype"]
            shape = tuple(int(d) for d in entry["shape"])
            try:
                data = np.asarray(entry["data"], dtype=NUMPY_DTYPES[dtype]).reshape(shape)
            except (KeyError, ValueError) as exc:
                raise InferenceTransportError(f"Malformed output {entry.get('name')!r} from {model_name}") from exc
            outputs.append(InferTensor(name=entry["name"], dtype=dtype, shape=shape, data=data))
        return outputs

    def loaded_models(self) -> list[str]:
        return list(self._configured)

    def shutdown(self) -> None:
        self._client.close()

    def _request(
        self, method: str, path: str, model_name: str, timeout: float, json: object | None = None
    ) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, json=json, timeout=timeout)
            response.raise_for_status()
            payload: dict[str, Any] = response.json()
        except httpx.TimeoutException:
            raise InferenceTimeoutError(f"Request to {model_name} timed out after {timeout}s") from None
        except httpx.HTTPStatusError as exc:
            raise InferenceTransportError(
                f"{model_name} returned HTTP {exc.response.status_code}: {exc.response.text}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise InferenceTransportError(f"Request to {model_name} failed: {exc}") from exc
        return payload
