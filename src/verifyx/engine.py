"""Verification engine: localization, alignment, scoring and fusion.

Every verification flow fills a ``VerificationResult`` stage by stage
(same-person, then quality, then liveness). When a stage fails, the partially
filled result is attached to the raised ``VerifyXError`` as ``exc.result``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from verifyx.config import Settings
from verifyx.errors import VerifyXError
from verifyx.ml import fusion
from verifyx.ml.alignment import FaceAligner, as_landmark
from verifyx.ml.face_antispoofing import FaceAntiSpoofingClient
from verifyx.ml.face_detector import FaceDetectionClient
from verifyx.ml.face_quality import FaceQualityClient
from verifyx.ml.face_recognizer import FaceIDClient
from verifyx.ml.geometry import cosine_similarity
from verifyx.ml.localizer import LandmarkLocalizer
from verifyx.ml.preprocessing import check_image
from verifyx.ml.selection import SelectionPolicy, select_face

if TYPE_CHECKING:
    from collections.abc import Sequence

    import numpy as np
    from numpy.typing import ArrayLike, NDArray

    from verifyx.ml.backend import InferenceBackend
    from verifyx.ml.localizer import FaceCandidate

logger = logging.getLogger(__name__)

TRIPLET_LABELS = ("far-face", "mid-face", "near-face")


@dataclass
class VerificationResult:
    """Scores and decisions of one verification request.

    Numeric fields keep the sentinel ``-1.0`` until their stage has run.
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

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def build_backend(settings: Settings) -> InferenceBackend:
    """Create the inference backend selected by ``settings.inference_backend``."""
    if settings.inference_backend == "triton":
        from verifyx.ml.triton_backend import TritonBackend

        logger.info("Using Triton backend at %s", settings.triton_url)
        return TritonBackend(settings.triton_url)

    from verifyx.ml.onnx_backend import OnnxBackend

    logger.info("Using ONNX Runtime backend (device=%s, models_dir=%s)", settings.device, settings.models_dir)
    return OnnxBackend(settings)


class VerificationEngine:
    """Face verification flows over an ``InferenceBackend``.

    Model configurations are fetched once here; the engine itself keeps no
    per-request state and can be shared between worker threads.
    """

    def __init__(self, backend: InferenceBackend, settings: Settings | None = None) -> None:
        self.settings = settings if settings is not None else Settings()
        self._backend = backend

        self.detector = FaceDetectionClient(backend, self.settings.face_detection)
        self.face_id = FaceIDClient(backend, self.settings.face_id)
        self.face_quality = FaceQualityClient(backend, self.settings.face_quality)
        self.anti_spoofing_crop = FaceAntiSpoofingClient(backend, self.settings.anti_spoofing_crop)
        self.anti_spoofing_full = FaceAntiSpoofingClient(backend, self.settings.anti_spoofing_full)

        self.localizer = LandmarkLocalizer(
            self.detector,
            score_threshold=self.settings.score_threshold,
            eye_distance_threshold=self.settings.eye_distance_threshold,
        )
        self.aligner = FaceAligner(
            face_size=self.settings.face_id.img_size,
            fas_size=self.settings.anti_spoofing_crop.img_size,
        )

        if self.settings.legacy_document_center:
            logger.warning(
                "legacy_document_center is enabled: document faces are selected around "
                "(width % 5, height % 2) instead of the image center"
            )
        logger.info("Verification engine ready (%d models)", len(self.settings.configured_models()))

    @property
    def model_names(self) -> list[str]:
        return [params.name for params in self.settings.configured_models()]

    def loaded_models(self) -> list[str]:
        return self._backend.loaded_models()

    def close(self) -> None:
        self._backend.shutdown()

    # ------------------------------------------------------------------
    # Landmarks
    # ------------------------------------------------------------------

    def locate_landmarks(self, images: Sequence[NDArray[np.uint8]]) -> list[FaceCandidate | None]:
        """Locate the most central face of every image (with padding retry).

        Returns one entry per image, ``None`` where no face survived filtering.
        """
        sizes = [check_image(image) for image in images]
        located = self.localizer.locate(images, try_padding=True)

        faces: list[FaceCandidate | None] = []
        for (height, width), candidates in zip(sizes, located, strict=True):
            if not candidates:
                faces.append(None)
                continue
            faces.append(select_face(candidates, width, height, SelectionPolicy.CENTER))
        logger.debug("Located faces in %d of %d images", sum(f is not None for f in faces), len(faces))
        return faces

    # ------------------------------------------------------------------
    # Verification flows
    # ------------------------------------------------------------------

    def verify_active(
        self,
        img_far: NDArray[np.uint8],
        img_mid: NDArray[np.uint8],
        img_near: NDArray[np.uint8],
        lmk_far: ArrayLike | None = None,
        lmk_mid: ArrayLike | None = None,
        lmk_near: ArrayLike | None = None,
    ) -> VerificationResult:
        """Verify a capture triplet, reusing caller landmarks where given."""
        result = VerificationResult()
        try:
            images = [img_far, img_mid, img_near]
            landmarks = self._resolve_landmarks(images, [lmk_far, lmk_mid, lmk_near])
            self._run_checks(result, images, landmarks)
        except VerifyXError as exc:
            exc.result = result
            raise
        return result

    def verify_passive(
        self,
        img_far: NDArray[np.uint8],
        img_mid: NDArray[np.uint8],
        img_near: NDArray[np.uint8],
    ) -> VerificationResult:
        """Verify a capture triplet, deriving every landmark from the images."""
        result = VerificationResult()
        try:
            images = [img_far, img_mid, img_near]
            landmarks = self._resolve_landmarks(images, [None, None, None])
            self._run_checks(result, images, landmarks)
        except VerifyXError as exc:
            exc.result = result
            raise
        return result

    def match_document(
        self,
        document: NDArray[np.uint8],
        selfie: NDArray[np.uint8],
        selfie_lmk: ArrayLike | None = None,
    ) -> tuple[float, bool]:
        """Compare the face on an identity document with a selfie.

        Returns:
            The cosine similarity and whether it reaches the document threshold.
        """
        doc_face = self.localizer.locate_single(document, SelectionPolicy.LARGEST, try_padding=True, label="card")
        if selfie_lmk is None:
            selfie_lmk = self.localizer.locate_single(
                selfie, SelectionPolicy.CENTER, try_padding=True, label="input face"
            ).landmark

        crops = self.aligner.align_recognition([document, selfie], [doc_face.landmark, as_landmark(selfie_lmk)])
        doc_vector, selfie_vector = self.face_id.get_embeddings(crops)
        score = cosine_similarity(doc_vector, selfie_vector)
        is_match = fusion.is_document_match(score, self.settings.face_id.threshold_same_ekyc)
        logger.debug("Document match score %.4f (match=%s)", score, is_match)
        return score, is_match

    def check_quality(
        self,
        img_far: NDArray[np.uint8],
        img_mid: NDArray[np.uint8],
        img_near: NDArray[np.uint8],
        lmk_far: ArrayLike | None = None,
        lmk_mid: ArrayLike | None = None,
        lmk_near: ArrayLike | None = None,
    ) -> tuple[float, bool]:
        """Obstruction check only. Returns ``(face_mask_score, is_face_mask)``."""
        images = [img_far, img_mid, img_near]
        landmarks = self._resolve_landmarks(images, [lmk_far, lmk_mid, lmk_near])
        crops = self.aligner.align_recognition(images, landmarks)
        score = self.face_quality.mask_score(crops)
        return score, fusion.is_face_mask(score, self.settings.face_quality.threshold_cover)

    def extract_embedding(self, image: NDArray[np.uint8], lmk: ArrayLike | None = None) -> NDArray[np.float32]:
        """Return the raw identity embedding of the most central face."""
        if lmk is None:
            lmk = self.localizer.locate_single(image, SelectionPolicy.CENTER, label="input face").landmark
        crops = self.aligner.align_recognition([image], [as_landmark(lmk)])
        return self.face_id.get_embeddings(crops)[0]

    # ------------------------------------------------------------------
    # Document-photo crops
    # ------------------------------------------------------------------

    def crop_selfie(self, image: NDArray[np.uint8]) -> NDArray[np.uint8]:
        """Crop the largest face of a selfie into a 240x320 portrait."""
        face = self.localizer.locate_single(image, SelectionPolicy.LARGEST, label="input face")
        crop, _ = self.aligner.align_document(image, face.landmark, face.box)
        return crop

    def crop_document_face(self, image: NDArray[np.uint8]) -> NDArray[np.uint8]:
        """Crop the face printed on an identity document into a 240x320 portrait."""
        height, width = check_image(image)
        if self.settings.legacy_document_center:
            center = (float(width % 5), float(height % 2))
        else:
            center = (width / 2, height / 2)
        face = self.localizer.locate_single(image, SelectionPolicy.CENTER, label="card", center=center)
        crop, _ = self.aligner.align_document(image, face.landmark, face.box)
        return crop

    # ------------------------------------------------------------------
    # Internal stages
    # ------------------------------------------------------------------

    def _resolve_landmarks(
        self,
        images: Sequence[NDArray[np.uint8]],
        landmarks: Sequence[ArrayLike | None],
    ) -> list[NDArray[np.float32]]:
        resolved = []
        for label, image, landmark in zip(TRIPLET_LABELS, images, landmarks, strict=True):
            check_image(image)
            if landmark is None:
                landmark = self.localizer.locate_single(
                    image, SelectionPolicy.LARGEST, try_padding=True, label=label
                ).landmark
            resolved.append(as_landmark(landmark))
        return resolved

    def _run_checks(
        self,
        result: VerificationResult,
        images: Sequence[NDArray[np.uint8]],
        landmarks: Sequence[NDArray[np.float32]],
    ) -> None:
        recognition_crops = self.aligner.align_recognition(images, landmarks)
        self._check_same_person(result, recognition_crops)
        self._check_quality(result, recognition_crops)
        self._check_liveness(result, images, landmarks)

    def _check_same_person(self, result: VerificationResult, crops: Sequence[NDArray[np.uint8]]) -> None:
        v_far, v_mid, v_near = self.face_id.get_embeddings(crops)
        result.score_fm = cosine_similarity(v_far, v_mid)
        result.score_mn = cosine_similarity(v_mid, v_near)
        result.is_same_person = fusion.is_same_person(
            result.score_fm, result.score_mn, self.settings.face_id.threshold_same_person
        )

    def _check_quality(self, result: VerificationResult, crops: Sequence[NDArray[np.uint8]]) -> None:
        result.face_mask_score = self.face_quality.mask_score(crops)
        result.is_face_mask = fusion.is_face_mask(result.face_mask_score, self.settings.face_quality.threshold_cover)

    def _check_liveness(
        self,
        result: VerificationResult,
        images: Sequence[NDArray[np.uint8]],
        landmarks: Sequence[NDArray[np.float32]],
    ) -> None:
        crops = self.aligner.align_anti_spoofing(images, landmarks)
        result.liveness_score_crop = self.anti_spoofing_crop.liveness_score(*crops)
        result.liveness_score_full = self.anti_spoofing_full.liveness_score(*images)
        result.is_liveness = fusion.is_liveness(
            result.liveness_score_crop,
            result.liveness_score_full,
            self.anti_spoofing_crop.params.threshold,
            self.anti_spoofing_full.params.threshold,
        )
        logger.debug(
            "Liveness crop=%.4f full=%.4f live=%s",
            result.liveness_score_crop,
            result.liveness_score_full,
            result.is_liveness,
        )
