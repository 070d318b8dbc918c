"""Pydantic request/response schemas for the VerifyX API."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from verifyx.engine import VerificationResult
    from verifyx.ml.localizer import FaceCandidate

LANDMARK_ORDER = ("left_eye", "right_eye", "nose", "left_mouth", "right_mouth")


class Point(BaseModel):
    """A pixel position in the uploaded image."""

    x: float
    y: float


class FaceLandmark(BaseModel):
    """Five facial landmarks in pixel coordinates."""

    left_eye: Point
    right_eye: Point
    nose: Point
    left_mouth: Point
    right_mouth: Point

    def to_array(self) -> NDArray[np.float32]:
        """Return the landmarks as a (5, 2) array in canonical order."""
        return np.array(
            [[getattr(self, name).x, getattr(self, name).y] for name in LANDMARK_ORDER],
            dtype=np.float32,
        )

    @classmethod
    def from_array(cls, landmark: NDArray[np.float32]) -> FaceLandmark:
        points = np.asarray(landmark, dtype=np.float64).reshape(5, 2)
        return cls(**{name: Point(x=float(p[0]), y=float(p[1])) for name, p in zip(LANDMARK_ORDER, points, strict=True)})


class TripletLandmarks(BaseModel):
    """Optional precomputed landmarks for a far/mid/near capture triplet."""

    far: FaceLandmark | None = None
    mid: FaceLandmark | None = None
    near: FaceLandmark | None = None

    def to_arrays(self) -> tuple[NDArray[np.float32] | None, ...]:
        return tuple(lmk.to_array() if lmk is not None else None for lmk in (self.far, self.mid, self.near))


class BoundingBox(BaseModel):
    """Face box in pixel coordinates (may extend past the image border)."""

    left: float
    top: float
    right: float
    bottom: float


class LocatedFace(BaseModel):
    """One located face."""

    box: BoundingBox
    landmark: FaceLandmark
    score: float = Field(description="Detection confidence (0.0-1.0)")

    @classmethod
    def from_candidate(cls, candidate: FaceCandidate) -> LocatedFace:
        left, top, right, bottom = (float(v) for v in candidate.box)
        return cls(
            box=BoundingBox(left=left, top=top, right=right, bottom=bottom),
            landmark=FaceLandmark.from_array(candidate.landmark),
            score=float(candidate.score),
        )


class LandmarksResponse(BaseModel):
    """One entry per uploaded image, null when no face was found."""

    faces: list[LocatedFace | None]


class VerificationResponse(BaseModel):
    """Scores and decisions of a verification flow.

    Scores that were not computed keep the value -1.
    """

    is_face_mask: bool = False
    is_liveness: bool = False
    is_same_person: bool = False
    score_mn: float = -1.0
    score_fm: float = -1.0
    liveness_score_full: float = -1.0
    liveness_score_crop: float = -1.0
    similarity_score: float = -1.0
    face_mask_score: float = -1.0

    @classmethod
    def from_result(cls, result: VerificationResult) -> VerificationResponse:
        return cls(**result.to_dict())


class DocumentMatchResponse(BaseModel):
    """Response for the document-to-selfie match endpoint."""

    similarity_score: float
    is_match: bool


class QualityResponse(BaseModel):
    """Response for the obstruction check endpoint."""

    face_mask_score: float
    is_face_mask: bool


class EmbeddingResponse(BaseModel):
    """Raw identity embedding of one face."""

    vector: list[float]
    dimension: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    backend: str
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about a configured model."""

    name: str
    task: str = Field(
        description="Model task: 'face_detection', 'face_recognition', 'face_quality' or 'anti_spoofing'"
    )
    status: str = Field(description="Model status: 'loaded' or 'configured'")
    img_size: int
    timeout: float


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response, with the partial result of a failed verification."""

    detail: str
    result: VerificationResponse | None = None
