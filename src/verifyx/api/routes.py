"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated, TypeVar

from fastapi import APIRouter, Depends, Form, HTTPException, Request, UploadFile, status
from fastapi.responses import Response
from pydantic import BaseModel, ValidationError

from verifyx.api.middleware import (
    get_engine,
    get_inference_pool,
    get_settings_from_request,
    verify_api_key,
)
from verifyx.api.schemas import (
    DocumentMatchResponse,
    EmbeddingResponse,
    ErrorResponse,
    FaceLandmark,
    HealthResponse,
    LandmarksResponse,
    LocatedFace,
    ModelInfo,
    ModelsResponse,
    QualityResponse,
    TripletLandmarks,
    VerificationResponse,
)
from verifyx.config import Settings
from verifyx.engine import VerificationEngine
from verifyx.ml.inference import InferencePool
from verifyx.ml.model_manager import build_registry
from verifyx.ml.preprocessing import decode_image, encode_jpeg

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

M = TypeVar("M", bound=BaseModel)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

SettingsDep = Annotated[Settings, Depends(get_settings_from_request)]
EngineDep = Annotated[VerificationEngine, Depends(get_engine)]
PoolDep = Annotated[InferencePool, Depends(get_inference_pool)]

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    status.HTTP_502_BAD_GATEWAY: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    status.HTTP_504_GATEWAY_TIMEOUT: {"model": ErrorResponse},
}


async def _read_image(upload: UploadFile, settings: Settings) -> NDArray[np.uint8]:
    data = await upload.read()
    return decode_image(data, settings.max_image_pixels, settings.max_file_size)


def _parse_landmarks(raw: str | None, model: type[M]) -> M | None:
    if raw is None or not raw.strip():
        return None
    try:
        return model.model_validate_json(raw)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid landmarks: {exc.errors(include_url=False)}",
        ) from exc


def _triplet_landmarks(raw: str | None) -> tuple[NDArray[np.float32] | None, ...]:
    parsed = _parse_landmarks(raw, TripletLandmarks)
    if parsed is None:
        return (None, None, None)
    return parsed.to_arrays()


def _single_landmark(raw: str | None) -> NDArray[np.float32] | None:
    parsed = _parse_landmarks(raw, FaceLandmark)
    if parsed is None:
        return None
    return parsed.to_array()


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


@router.post(
    "/landmarks",
    response_model=LandmarksResponse,
    responses=_ERROR_RESPONSES,
    summary="Locate the central face of each image",
)
async def locate_landmarks(
    files: list[UploadFile],
    settings: SettingsDep,
    engine: EngineDep,
    pool: PoolDep,
) -> LandmarksResponse:
    """Return box, landmarks and score of the most central face per image."""
    images = [await _read_image(f, settings) for f in files]
    faces = await pool.run(engine.locate_landmarks, images)
    return LandmarksResponse(faces=[LocatedFace.from_candidate(f) if f is not None else None for f in faces])


@router.post(
    "/verify/active",
    response_model=VerificationResponse,
    responses=_ERROR_RESPONSES,
    summary="Verify a far/mid/near capture triplet with optional landmarks",
)
async def verify_active(
    far: UploadFile,
    mid: UploadFile,
    near: UploadFile,
    settings: SettingsDep,
    engine: EngineDep,
    pool: PoolDep,
    landmarks: Annotated[str | None, Form()] = None,
) -> VerificationResponse:
    """Run the same-person, obstruction and liveness checks.

    ``landmarks`` is a JSON object with optional ``far``, ``mid`` and ``near``
    entries; missing entries are located on the images.
    """
    lmk_far, lmk_mid, lmk_near = _triplet_landmarks(landmarks)
    images = [await _read_image(f, settings) for f in (far, mid, near)]
    result = await pool.run(engine.verify_active, *images, lmk_far, lmk_mid, lmk_near)
    return VerificationResponse.from_result(result)


@router.post(
    "/verify/passive",
    response_model=VerificationResponse,
    responses=_ERROR_RESPONSES,
    summary="Verify a far/mid/near capture triplet from images only",
)
async def verify_passive(
    far: UploadFile,
    mid: UploadFile,
    near: UploadFile,
    settings: SettingsDep,
    engine: EngineDep,
    pool: PoolDep,
) -> VerificationResponse:
    images = [await _read_image(f, settings) for f in (far, mid, near)]
    result = await pool.run(engine.verify_passive, *images)
    return VerificationResponse.from_result(result)


@router.post(
    "/match-document",
    response_model=DocumentMatchResponse,
    responses=_ERROR_RESPONSES,
    summary="Match the face on an identity document against a selfie",
)
async def match_document(
    document: UploadFile,
    selfie: UploadFile,
    settings: SettingsDep,
    engine: EngineDep,
    pool: PoolDep,
    landmarks: Annotated[str | None, Form()] = None,
) -> DocumentMatchResponse:
    selfie_lmk = _single_landmark(landmarks)
    doc_image = await _read_image(document, settings)
    selfie_image = await _read_image(selfie, settings)
    score, is_match = await pool.run(engine.match_document, doc_image, selfie_image, selfie_lmk)
    return DocumentMatchResponse(similarity_score=score, is_match=is_match)


@router.post(
    "/quality",
    response_model=QualityResponse,
    responses=_ERROR_RESPONSES,
    summary="Check a capture triplet for face obstruction",
)
async def check_quality(
    far: UploadFile,
    mid: UploadFile,
    near: UploadFile,
    settings: SettingsDep,
    engine: EngineDep,
    pool: PoolDep,
    landmarks: Annotated[str | None, Form()] = None,
) -> QualityResponse:
    lmk_far, lmk_mid, lmk_near = _triplet_landmarks(landmarks)
    images = [await _read_image(f, settings) for f in (far, mid, near)]
    score, is_mask = await pool.run(engine.check_quality, *images, lmk_far, lmk_mid, lmk_near)
    return QualityResponse(face_mask_score=score, is_face_mask=is_mask)


@router.post(
    "/embedding",
    response_model=EmbeddingResponse,
    responses=_ERROR_RESPONSES,
    summary="Extract the identity embedding of a face",
)
async def extract_embedding(
    file: UploadFile,
    settings: SettingsDep,
    engine: EngineDep,
    pool: PoolDep,
    landmarks: Annotated[str | None, Form()] = None,
) -> EmbeddingResponse:
    lmk = _single_landmark(landmarks)
    image = await _read_image(file, settings)
    vector = await pool.run(engine.extract_embedding, image, lmk)
    return EmbeddingResponse(vector=vector.tolist(), dimension=int(vector.size))


# ---------------------------------------------------------------------------
# Document-photo crops
# ---------------------------------------------------------------------------


@router.post(
    "/crop/selfie",
    response_class=Response,
    responses={**_ERROR_RESPONSES, status.HTTP_200_OK: {"content": {"image/jpeg": {}}}},
    summary="Crop a selfie into a document-photo portrait",
)
async def crop_selfie(file: UploadFile, settings: SettingsDep, engine: EngineDep, pool: PoolDep) -> Response:
    image = await _read_image(file, settings)
    crop = await pool.run(engine.crop_selfie, image)
    return Response(content=encode_jpeg(crop), media_type="image/jpeg")


@router.post(
    "/crop/document",
    response_class=Response,
    responses={**_ERROR_RESPONSES, status.HTTP_200_OK: {"content": {"image/jpeg": {}}}},
    summary="Crop the portrait printed on an identity document",
)
async def crop_document(file: UploadFile, settings: SettingsDep, engine: EngineDep, pool: PoolDep) -> Response:
    image = await _read_image(file, settings)
    crop = await pool.run(engine.crop_document_face, image)
    return Response(content=encode_jpeg(crop), media_type="image/jpeg")


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request, settings: SettingsDep, pool: PoolDep) -> HealthResponse:
    """Return service health status."""
    engine: VerificationEngine | None = getattr(request.app.state, "engine", None)
    return HealthResponse(
        status="ok" if engine is not None else "starting",
        gpu=settings.inference_backend == "onnx" and settings.device == "cuda",
        backend=settings.inference_backend,
        models_loaded=engine.loaded_models() if engine is not None else [],
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List configured models",
)
async def list_models(request: Request, settings: SettingsDep) -> ModelsResponse:
    """Return every model the engine uses and whether it is loaded."""
    engine: VerificationEngine | None = getattr(request.app.state, "engine", None)
    loaded = set(engine.loaded_models()) if engine is not None else set()
    registry = build_registry(settings)

    models: list[ModelInfo] = []
    for params in settings.configured_models():
        models.append(
            ModelInfo(
                name=params.name,
                task=registry[params.name].task,
                status="loaded" if params.name in loaded else "configured",
                img_size=params.img_size,
                timeout=params.timeout,
            )
        )
    return ModelsResponse(models=models)
