"""Environment-based configuration for VerifyX."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

Triplet = tuple[float, float, float]

# ImageNet statistics expressed as (pixel - mean) * scale on 0-255 pixels.
_IMAGENET_MEAN: Triplet = (123.675, 116.28, 103.53)
_IMAGENET_SCALE: Triplet = (1 / (0.229 * 255.0), 1 / (0.224 * 255.0), 1 / (0.225 * 255.0))


class ModelParams(BaseModel):
    """Static parameters shared by every remote model."""

    name: str
    mean: Triplet = (127.5, 127.5, 127.5)
    scale: Triplet = (1 / 127.5, 1 / 127.5, 1 / 127.5)
    img_size: int = Field(default=112, ge=1)
    timeout: float = Field(default=10.0, gt=0)


class FaceDetectionParams(ModelParams):
    name: str = "scrfd"
    img_size: int = Field(default=640, ge=1)


class FaceIDParams(ModelParams):
    name: str = "face_id"
    threshold_same_person: float = 0.4
    threshold_same_ekyc: float = 0.3


class FaceQualityParams(ModelParams):
    name: str = "face_quality_vp"
    mean: Triplet = _IMAGENET_MEAN
    scale: Triplet = _IMAGENET_SCALE
    threshold_cover: float = 0.5
    # Column of the quality head holding the obstruction score.
    cover_index: int = Field(default=2, ge=0)


class AntiSpoofingParams(ModelParams):
    mean: Triplet = _IMAGENET_MEAN
    scale: Triplet = _IMAGENET_SCALE
    img_size: int = Field(default=224, ge=1)
    threshold: float = 0.5


class Settings(BaseSettings):
    """Application settings loaded from VERIFYX_* environment variables.

    Nested model parameters use ``__`` as delimiter, e.g.
    ``VERIFYX_FACE_ID__THRESHOLD_SAME_PERSON=0.45``.
    """

    model_config = SettingsConfigDict(
        env_prefix="VERIFYX_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # Inference backend
    inference_backend: Literal["onnx", "triton"] = "onnx"
    triton_url: str = "http://localhost:8000"

    # ML device (ONNX backend only)
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model storage (ONNX backend only)
    models_dir: str = "models"
    models_repo: str | None = None

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Model management
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Localization
    score_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    eye_distance_threshold: float | None = Field(default=None, ge=0.0)
    legacy_document_center: bool = False

    # Models
    face_detection: FaceDetectionParams = FaceDetectionParams()
    face_id: FaceIDParams = FaceIDParams()
    face_quality: FaceQualityParams = FaceQualityParams()
    anti_spoofing_crop: AntiSpoofingParams = AntiSpoofingParams(
        name="face_anti_spoofing_crop_l14",
        threshold=0.58,
    )
    anti_spoofing_full: AntiSpoofingParams = AntiSpoofingParams(
        name="face_anti_spoofing_fi_l14",
        threshold=0.48,
    )

    def configured_models(self) -> list[ModelParams]:
        """Return the parameters of every model the engine talks to."""
        return [
            self.face_detection,
            self.face_id,
            self.face_quality,
            self.anti_spoofing_crop,
            self.anti_spoofing_full,
        ]


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
