"""Landmark localization: detector output -> filtered face candidates.

Filtering rejects detections whose inter-eye distance is below the configured
threshold or whose score is below the score threshold. When an image has no
detection at all, one retry on a zero-padded copy can be requested; its
coordinates are shifted back into the frame of the unpadded image.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from verifyx.errors import LowLandmarkQualityError, NoFaceDetectedError
from verifyx.ml.geometry import norm
from verifyx.ml.preprocessing import check_image, pad_image
from verifyx.ml.selection import select_face

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from verifyx.ml.face_detector import FaceDetector, RawDetection
    from verifyx.ml.selection import SelectionPolicy

logger = logging.getLogger(__name__)

PADDING_RATIO: float = 0.5


@dataclass(frozen=True)
class FaceCandidate:
    """A detected face that passed filtering."""

    box: NDArray[np.float32]
    landmark: NDArray[np.float32]
    score: float
    class_id: int

    @property
    def eye_distance(self) -> float:
        return norm(self.landmark[0], self.landmark[1])


@dataclass
class ImageDetections:
    """Filtering outcome for one image."""

    candidates: list[FaceCandidate] = field(default_factory=list)
    rejected_low_quality: int = 0
    padded: bool = False


class LandmarkLocalizer:
    """Turns detector output into per-image lists of ``FaceCandidate``."""

    def __init__(
        self,
        detector: FaceDetector,
        score_threshold: float = 0.5,
        eye_distance_threshold: float | None = None,
    ) -> None:
        self._detector = detector
        self.score_threshold = score_threshold
        self.eye_distance_threshold = eye_distance_threshold

    def locate(
        self,
        images: Sequence[NDArray[np.uint8]],
        score_threshold: float | None = None,
        eye_distance_threshold: float | None = None,
        try_padding: bool = False,
    ) -> list[list[FaceCandidate]]:
        """Detect and filter faces in every image.

        Args:
            images: HxWx3 RGB uint8 arrays.
            score_threshold: Minimum detection score (default: localizer setting).
            eye_distance_threshold: Minimum inter-eye distance in pixels
                (default: localizer setting; ``None`` disables the check).
            try_padding: Retry once on a padded copy of images without detections.

        Returns:
            One (possibly empty) candidate list per image, in detector order.
        """
        detailed = self.locate_detailed(images, score_threshold, eye_distance_threshold, try_padding)
        return [d.candidates for d in detailed]

    def locate_detailed(
        self,
        images: Sequence[NDArray[np.uint8]],
        score_threshold: float | None = None,
        eye_distance_threshold: float | None = None,
        try_padding: bool = False,
    ) -> list[ImageDetections]:
        """Same as ``locate`` but keeps per-image rejection counts."""
        if score_threshold is None:
            score_threshold = self.score_threshold
        if eye_distance_threshold is None:
            eye_distance_threshold = self.eye_distance_threshold

        batch_results = self._detector.detect(images)

        outputs: list[ImageDetections] = []
        for image, raw in zip(images, batch_results, strict=True):
            padded = False
            if try_padding and not raw:
                raw = self._detect_padded(image)
                padded = True
            detections = self._filter(raw, score_threshold, eye_distance_threshold)
            detections.padded = padded
            outputs.append(detections)
        return outputs

    def locate_single(
        self,
        image: NDArray[np.uint8],
        policy: SelectionPolicy,
        try_padding: bool = False,
        label: str = "input",
        center: tuple[float, float] | None = None,
    ) -> FaceCandidate:
        """Locate exactly one face in ``image``.

        ``center`` overrides the reference point of the center policy.

        Raises:
            LowLandmarkQualityError: If every detection failed the eye-distance check.
            NoFaceDetectedError: If nothing usable was detected.
        """
        height, width = check_image(image)
        detections = self.locate_detailed([image], try_padding=try_padding)[0]
        if not detections.candidates:
            if detections.rejected_low_quality:
                raise LowLandmarkQualityError(f"face landmarks too small in {label} image")
            raise NoFaceDetectedError(f"cannot detect any face in {label} image")
        if detections.padded:
            logger.debug("Found %d face(s) in %s image after padding", len(detections.candidates), label)
        return select_face(detections.candidates, width, height, policy, center)

    def _detect_padded(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        padded, off_x, off_y = pad_image(image, PADDING_RATIO)
        logger.debug("No face found, retrying on padded image (offset %d, %d)", off_x, off_y)
        raw = self._detector.detect([padded])[0]
        return [detection.shifted(off_x, off_y) for detection in raw]

    @staticmethod
    def _filter(
        raw: Sequence[RawDetection],
        score_threshold: float,
        eye_distance_threshold: float | None,
    ) -> ImageDetections:
        result = ImageDetections()
        for detection in raw:
            candidate = FaceCandidate(
                box=np.asarray(detection.bbox, dtype=np.float32).reshape(4),
                landmark=np.asarray(detection.landmarks, dtype=np.float32).reshape(5, 2),
                score=detection.score,
                class_id=detection.class_id,
            )
            if eye_distance_threshold is not None and candidate.eye_distance < eye_distance_threshold:
                result.rejected_low_quality += 1
                continue
            if candidate.score < score_threshold:
                continue
            result.candidates.append(candidate)
        return result
