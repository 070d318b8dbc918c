"""Tests for the Triton (KServe v2 HTTP) backend."""

from __future__ import annotations

import json

import httpx
import numpy as np
import pytest

from verifyx.errors import InferenceTimeoutError, InferenceTransportError
from verifyx.ml.backend import InferTensor
from verifyx.ml.triton_backend import TritonBackend

_CONFIG = {
    "name": "face_id",
    "platform": "onnxruntime_onnx",
    "max_batch_size": 8,
    "input": [{"name": "input.1", "data_type": "TYPE_FP32", "dims": [3, 112, 112]}],
    "output": [{"name": "embedding", "data_type": "TYPE_FP32", "dims": [512]}],
}


def _backend(handler: httpx.MockTransport) -> TritonBackend:
    client = httpx.Client(transport=handler, base_url="http://triton:8000")
    return TritonBackend("http://triton:8000", client=client)


class TestModelConfig:
    def test_parses_config(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            assert request.url.path == "/v2/models/face_id/config"
            return httpx.Response(200, json=_CONFIG)

        backend = _backend(httpx.MockTransport(handler))
        config = backend.get_model_config("face_id", 5.0)

        assert config.name == "face_id"
        assert config.max_batch_size == 8
        assert config.inputs[0].name == "input.1"
        assert config.inputs[0].dtype == "FP32"
        assert config.inputs[0].dims == (3, 112, 112)
        assert config.output_names == ["embedding"]
        assert backend.loaded_models() == ["face_id"]

    def test_unknown_model_is_transport_error(self) -> None:
        backend = _backend(httpx.MockTransport(lambda request: httpx.Response(404, text="not found")))
        with pytest.raises(InferenceTransportError, match="404"):
            backend.get_model_config("missing", 5.0)


class TestInfer:
    def test_round_trip_payload(self) -> None:
        seen: dict[str, object] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            seen.update(body["inputs"][0])
            return httpx.Response(
                200,
                json={
                    "model_name": "face_quality_vp",
                    "outputs": [{"name": "quality", "datatype": "FP32", "shape": [2, 2], "data": [0.1, 0.2, 0.3, 0.4]}],
                },
            )

        backend = _backend(httpx.MockTransport(handler))
        tensor = InferTensor.from_array("input", np.arange(6, dtype=np.float32).reshape(1, 2, 3))

        (output,) = backend.infer("face_quality_vp", 5.0, [tensor])

        assert seen == {"name": "input", "datatype": "FP32", "shape": [1, 2, 3], "data": [0, 1, 2, 3, 4, 5]}
        assert output.name == "quality"
        assert output.shape == (2, 2)
        np.testing.assert_allclose(output.data, [[0.1, 0.2], [0.3, 0.4]], rtol=1e-6)

    def test_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        backend = _backend(httpx.MockTransport(handler))
        tensor = InferTensor.from_array("input", np.zeros((1, 3), dtype=np.float32))

        with pytest.raises(InferenceTimeoutError):
            backend.infer("scrfd", 0.1, [tensor])

    def test_connection_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        backend = _backend(httpx.MockTransport(handler))
        tensor = InferTensor.from_array("input", np.zeros((1, 3), dtype=np.float32))

        with pytest.raises(InferenceTransportError) as exc_info:
            backend.infer("scrfd", 1.0, [tensor])
        assert not isinstance(exc_info.value, InferenceTimeoutError)

    def test_malformed_output(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={"outputs": [{"name": "x", "datatype": "FP32", "shape": [3], "data": [1.0, 2.0]}]},
            )

        backend = _backend(httpx.MockTransport(handler))
        tensor = InferTensor.from_array("input", np.zeros((1, 3), dtype=np.float32))

        with pytest.raises(InferenceTransportError, match="Malformed"):
            backend.infer("scrfd", 1.0, [tensor])
