"""Tests for the VerifyX HTTP API."""

from __future__ import annotations

import json
import os
import warnings
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import cv2
import httpx
import pytest
from conftest import FACE_LANDMARK, FakeBackend, make_face_image
from fastapi import FastAPI, status

from verifyx.config import get_settings
from verifyx.engine import VerificationEngine
from verifyx.errors import (
    DegenerateVectorError,
    GeometryEstimationError,
    InferenceTimeoutError,
    InferenceTransportError,
    InvalidImageError,
    LowLandmarkQualityError,
    NoFaceDetectedError,
    VerifyXError,
)
from verifyx.main import create_app, error_status
from verifyx.ml.inference import InferencePool


def _init_app_state(app: FastAPI, **env_overrides: str) -> FakeBackend:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, env_overrides):
        settings = get_settings()
    backend = FakeBackend(settings)
    app.state.settings = settings
    app.state.inference_pool = InferencePool(settings)
    app.state.engine = VerificationEngine(backend, settings)
    return backend


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


def _jpeg() -> bytes:
    ok, buffer = cv2.imencode(".jpg", make_face_image())
    assert ok
    return buffer.tobytes()


def _triplet_files() -> dict[str, tuple[str, bytes, str]]:
    data = _jpeg()
    return {name: (f"{name}.jpg", data, "image/jpeg") for name in ("far", "mid", "near")}


def _landmark_json() -> dict[str, dict[str, float]]:
    names = ("left_eye", "right_eye", "nose", "left_mouth", "right_mouth")
    return {name: {"x": float(x), "y": float(y)} for name, (x, y) in zip(names, FACE_LANDMARK, strict=True)}


@pytest.fixture()
def app() -> FastAPI:
    """Create a fresh app instance with default settings and a fake backend."""
    application = create_app()
    application.state.fake_backend = _init_app_state(application)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["backend"] == "onnx"
        assert "scrfd" in data["models_loaded"]
        assert isinstance(data["concurrent_requests"], int)
        assert isinstance(data["queue_depth"], int)

    async def test_health_gpu_true_when_cuda(self) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, VERIFYX_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestModelsEndpoint:
    async def test_models_returns_configured_models(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        models = {m["name"]: m for m in response.json()["models"]}
        assert set(models) == {
            "scrfd",
            "face_id",
            "face_quality_vp",
            "face_anti_spoofing_crop_l14",
            "face_anti_spoofing_fi_l14",
        }
        assert models["scrfd"]["task"] == "face_detection"
        assert models["face_anti_spoofing_crop_l14"]["img_size"] == 224
        assert all(m["status"] == "loaded" for m in models.values())


class TestVerifyEndpoints:
    async def test_verify_passive(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/verify/passive", files=_triplet_files())
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["is_same_person"] is True
        assert data["is_liveness"] is True
        assert data["is_face_mask"] is False
        assert data["score_fm"] == pytest.approx(1.0)
        assert data["similarity_score"] == -1.0

    async def test_verify_active_with_landmarks(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        landmarks = {"far": _landmark_json(), "mid": _landmark_json(), "near": _landmark_json()}
        response = await client.post(
            "/api/v1/verify/active",
            files=_triplet_files(),
            data={"landmarks": json.dumps(landmarks)},
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["is_same_person"] is True
        assert app.state.fake_backend.calls_to("scrfd") == []

    async def test_invalid_landmarks_return_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/verify/active",
            files=_triplet_files(),
            data={"landmarks": json.dumps({"far": {"left_eye": {"x": 1}}})},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "Invalid landmarks" in response.json()["detail"]

    async def test_no_face_returns_422_with_result(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        app.state.fake_backend.faces = []
        response = await client.post("/api/v1/verify/passive", files=_triplet_files())
        assert response.status_code == 422
        data = response.json()
        assert "far-face" in data["detail"]
        assert data["result"]["score_fm"] == -1.0

    async def test_backend_failure_returns_502_with_partial_result(
        self, app: FastAPI, client: httpx.AsyncClient
    ) -> None:
        app.state.fake_backend.failing.add("face_anti_spoofing_crop_l14")
        response = await client.post("/api/v1/verify/passive", files=_triplet_files())
        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        result = response.json()["result"]
        assert result["score_fm"] == pytest.approx(1.0)
        assert result["liveness_score_crop"] == -1.0

    async def test_undecodable_image_returns_400(self, client: httpx.AsyncClient) -> None:
        files = _triplet_files()
        files["mid"] = ("mid.jpg", b"garbage", "image/jpeg")
        response = await client.post("/api/v1/verify/passive", files=files)
        assert response.status_code == status.HTTP_400_BAD_REQUEST


class TestOtherEndpoints:
    async def test_landmarks(self, client: httpx.AsyncClient) -> None:
        data = _jpeg()
        response = await client.post(
            "/api/v1/landmarks",
            files=[("files", ("a.jpg", data, "image/jpeg")), ("files", ("b.jpg", data, "image/jpeg"))],
        )
        assert response.status_code == status.HTTP_200_OK
        faces = response.json()["faces"]
        assert len(faces) == 2
        assert faces[0]["landmark"]["left_eye"]["x"] == pytest.approx(270.0, abs=1e-2)
        assert faces[0]["box"]["right"] == pytest.approx(440.0, abs=1e-2)

    async def test_match_document(self, client: httpx.AsyncClient) -> None:
        data = _jpeg()
        response = await client.post(
            "/api/v1/match-document",
            files={"document": ("card.jpg", data, "image/jpeg"), "selfie": ("selfie.jpg", data, "image/jpeg")},
            data={"landmarks": json.dumps(_landmark_json())},
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"similarity_score": pytest.approx(1.0), "is_match": True}

    async def test_quality(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/quality", files=_triplet_files())
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["face_mask_score"] == pytest.approx(0.3)
        assert response.json()["is_face_mask"] is False

    async def test_embedding(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/embedding", files={"file": ("a.jpg", _jpeg(), "image/jpeg")})
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["dimension"] == 512
        assert len(data["vector"]) == 512

    @pytest.mark.parametrize("path", ["/api/v1/crop/selfie", "/api/v1/crop/document"])
    async def test_crops_return_jpeg(self, client: httpx.AsyncClient, path: str) -> None:
        response = await client.post(path, files={"file": ("a.jpg", _jpeg(), "image/jpeg")})
        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"] == "image/jpeg"
        assert response.content[:2] == b"\xff\xd8"


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self) -> None:
        app = create_app()
        _init_app_state(app, VERIFYX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/verify/passive", files=_triplet_files())
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )

    async def test_auth_passes_with_correct_key(self) -> None:
        app = create_app()
        _init_app_state(app, VERIFYX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self) -> None:
        app = create_app()
        _init_app_state(app, VERIFYX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )


class TestErrorStatus:
    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (NoFaceDetectedError("no face"), 422),
            (LowLandmarkQualityError("small face"), 422),
            (GeometryEstimationError("no transform"), 422),
            (DegenerateVectorError("zero vector"), 422),
            (InvalidImageError("bad bytes"), status.HTTP_400_BAD_REQUEST),
            (InferenceTimeoutError("slow"), status.HTTP_504_GATEWAY_TIMEOUT),
            (InferenceTransportError("down"), status.HTTP_502_BAD_GATEWAY),
            (VerifyXError("other"), status.HTTP_500_INTERNAL_SERVER_ERROR),
        ],
    )
    def test_error_status(self, error: VerifyXError, expected: int) -> None:
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            assert error_status(error) == expected
