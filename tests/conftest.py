"""Shared fixtures: an in-memory inference backend and synthetic face images."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

from verifyx.config import Settings
from verifyx.engine import VerificationEngine
from verifyx.errors import InferenceTransportError
from verifyx.ml.backend import InferTensor, ModelConfig, TensorSpec

if TYPE_CHECKING:
    from collections.abc import Sequence

# A frontal face in a 640x480 image, in pixels.
FACE_BOX = np.array([200.0, 100.0, 440.0, 400.0], dtype=np.float32)
FACE_LANDMARK = np.array(
    [[270.0, 200.0], [370.0, 200.0], [320.0, 260.0], [280.0, 320.0], [360.0, 320.0]],
    dtype=np.float32,
)
IMAGE_SHAPE = (480, 640, 3)
DETECTOR_SIZE = 640

EMBEDDING_DIM = 512


def _spec(name: str, dims: tuple[int, ...], dtype: str = "FP32") -> TensorSpec:
    return TensorSpec(name=name, dtype=dtype, dims=dims)


def _triplet_inputs(size: int) -> tuple[TensorSpec, ...]:
    return tuple(_spec(name, (3, size, size)) for name in ("far", "mid", "near"))


class FakeBackend:
    """In-memory ``InferenceBackend`` serving the five models with canned outputs.

    The detector returns ``faces`` (pixel coordinates for a 640-wide image,
    normalised on the way out) for every image of every call. Models listed in
    ``failing`` raise ``InferenceTransportError``.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings if settings is not None else Settings()
        self.detector_name = settings.face_detection.name
        self.face_id_name = settings.face_id.name
        self.quality_name = settings.face_quality.name
        self.fas_crop_name = settings.anti_spoofing_crop.name
        self.fas_full_name = settings.anti_spoofing_full.name

        self.faces: list[tuple[np.ndarray, np.ndarray, float]] = [(FACE_BOX, FACE_LANDMARK, 0.9)]
        self.embeddings: list[np.ndarray] | None = None
        self.quality_row = np.array([0.1, 0.2, 0.3, 0.05], dtype=np.float32)
        self.fas_scores = {self.fas_crop_name: 0.9, self.fas_full_name: 0.7}
        self.failing: set[str] = set()
        self.calls: list[tuple[str, list[InferTensor]]] = []
        self.shut_down = False

        self._configs = {
            self.detector_name: ModelConfig(
                name=self.detector_name,
                inputs=(_spec("images", (3, DETECTOR_SIZE, DETECTOR_SIZE)),),
                outputs=(
                    _spec("num_dets", (1,), "INT32"),
                    _spec("det_boxes", (-1, 4)),
                    _spec("det_scores", (-1,)),
                    _spec("det_classes", (-1,), "INT32"),
                    _spec("det_lmks", (-1, 10)),
                ),
            ),
            self.face_id_name: ModelConfig(
                name=self.face_id_name,
                inputs=(_spec("input.1", (3, 112, 112)),),
                outputs=(_spec("embedding", (EMBEDDING_DIM,)),),
            ),
            self.quality_name: ModelConfig(
                name=self.quality_name,
                inputs=(_spec("input", (3, 112, 112)),),
                outputs=(_spec("quality", (4,)),),
            ),
            self.fas_crop_name: ModelConfig(
                name=self.fas_crop_name,
                inputs=_triplet_inputs(224),
                outputs=(_spec("score", (2,)),),
            ),
            self.fas_full_name: ModelConfig(
                name=self.fas_full_name,
                inputs=_triplet_inputs(224),
                outputs=(_spec("score", (2,)),),
            ),
        }

    # -- InferenceBackend ---------------------------------------------------

    def get_model_config(self, model_name: str, timeout: float) -> ModelConfig:
        return self._configs[model_name]

    def infer(self, model_name: str, timeout: float, inputs: Sequence[InferTensor]) -> list[InferTensor]:
        self.calls.append((model_name, list(inputs)))
        if model_name in self.failing:
            raise InferenceTransportError(f"{model_name} is unavailable")

        if model_name == self.detector_name:
            return self._detect(inputs[0])
        if model_name == self.face_id_name:
            return self._embed(inputs[0])
        if model_name == self.quality_name:
            batch = inputs[0].shape[0]
            return [InferTensor.from_array("quality", np.tile(self.quality_row, (batch, 1)))]
        live = self.fas_scores[model_name]
        return [InferTensor.from_array("score", np.array([[1.0 - live, live]], dtype=np.float32))]

    def loaded_models(self) -> list[str]:
        return list(self._configs)

    def shutdown(self) -> None:
        self.shut_down = True

    # -- Helpers ------------------------------------------------------------

    def calls_to(self, model_name: str) -> list[list[InferTensor]]:
        return [inputs for name, inputs in self.calls if name == model_name]

    def _detect(self, images: InferTensor) -> list[InferTensor]:
        batch = images.shape[0]
        k = max(len(self.faces), 1)
        num_dets = np.full((batch, 1), len(self.faces), dtype=np.int32)
        boxes = np.zeros((batch, k, 4), dtype=np.float32)
        scores = np.zeros((batch, k), dtype=np.float32)
        classes = np.zeros((batch, k), dtype=np.int32)
        landmarks = np.zeros((batch, k, 10), dtype=np.float32)
        for i, (box, landmark, score) in enumerate(self.faces):
            boxes[:, i] = np.asarray(box) / DETECTOR_SIZE
            landmarks[:, i] = np.asarray(landmark).reshape(10) / DETECTOR_SIZE
            scores[:, i] = score
        return [
            InferTensor.from_array("num_dets", num_dets, "INT32"),
            InferTensor.from_array("det_boxes", boxes),
            InferTensor.from_array("det_scores", scores),
            InferTensor.from_array("det_classes", classes, "INT32"),
            InferTensor.from_array("det_lmks", landmarks),
        ]

    def _embed(self, crop: InferTensor) -> list[InferTensor]:
        index = len(self.calls_to(self.face_id_name)) - 1
        if self.embeddings is not None:
            vector = self.embeddings[index % len(self.embeddings)]
        else:
            vector = np.ones(EMBEDDING_DIM, dtype=np.float32)
        return [InferTensor.from_array("embedding", np.asarray(vector, dtype=np.float32).reshape(1, -1))]


def make_face_image(value: int = 128) -> np.ndarray:
    """A 640x480 RGB image with a bright ellipse where the fake face sits."""
    image = np.full(IMAGE_SHAPE, value // 4, dtype=np.uint8)
    yy, xx = np.mgrid[: IMAGE_SHAPE[0], : IMAGE_SHAPE[1]]
    inside = ((xx - 320) / 120.0) ** 2 + ((yy - 250) / 150.0) ** 2 <= 1.0
    image[inside] = value
    return image


@pytest.fixture()
def settings() -> Settings:
    return Settings()


@pytest.fixture()
def fake_backend(settings: Settings) -> FakeBackend:
    return FakeBackend(settings)


@pytest.fixture()
def engine(fake_backend: FakeBackend, settings: Settings) -> VerificationEngine:
    return VerificationEngine(fake_backend, settings)


@pytest.fixture()
def face_image() -> np.ndarray:
    return make_face_image()
