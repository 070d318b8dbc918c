"""Face alignment onto canonical 5-point templates.

A robust similarity transform (rotation, uniform scale, translation) maps the
detected landmarks onto a template and the image is warped to the template's
fixed output size. Three templates exist:

* recognition: ArcFace reference points, 112x112 (scaled with the crop size);
* anti-spoofing: 224x224 reference points;
* document photo: built per face by blending an adult and a baby template
  according to how far the box center sits below the eyes relative to the
  nose. Output is 240x320.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import cv2
import numpy as np

from verifyx.errors import GeometryEstimationError, ShapeMismatchError
from verifyx.ml.geometry import cross2d, norm

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike, NDArray

logger = logging.getLogger(__name__)

# LMedS estimator settings.
REPROJ_THRESHOLD: float = 3.0
MAX_ITERS: int = 2000
CONFIDENCE: float = 0.99
REFINE_ITERS: int = 10

RECOGNITION_POINTS = np.array(
    [
        [38.2946, 51.6963],
        [73.5318, 51.5014],
        [56.0252, 71.7366],
        [41.5493, 92.3655],
        [70.7299, 92.2041],
    ],
    dtype=np.float32,
)
RECOGNITION_SIZE = 112

ANTI_SPOOFING_POINTS = np.array(
    [
        [74.01555, 90.46853],
        [135.68065, 90.12745],
        [105.0441, 125.539055],
        [79.71127, 161.63963],
        [130.77733, 161.35718],
    ],
    dtype=np.float32,
)
ANTI_SPOOFING_SIZE = 224

DOCUMENT_ADULT_POINTS = np.array(
    [
        [87.56117786, 140.95207892],
        [152.12076214, 140.5917773],
        [120.04617, 177.99955243],
        [93.52425322, 216.13514054],
        [146.98728108, 215.83676865],
    ],
    dtype=np.float32,
)
DOCUMENT_BABY_POINTS = np.array(
    [
        [89.26848429, 149.95460108],
        [150.43019571, 149.6132627],
        [120.04374, 185.05220757],
        [94.91771357, 221.18065946],
        [145.56689786, 220.89799136],
    ],
    dtype=np.float32,
)
DOCUMENT_SIZE = (240, 320)
ADULT_RATIO: float = 0.565
BABY_RATIO: float = 0.306


@dataclass(frozen=True)
class AlignmentTemplate:
    """Canonical landmark positions and the output crop size ``(width, height)``."""

    points: NDArray[np.float32]
    size: tuple[int, int]

    def __post_init__(self) -> None:
        points = np.array(self.points, dtype=np.float32).reshape(5, 2)
        points.setflags(write=False)
        object.__setattr__(self, "points", points)


def recognition_template(face_size: int = RECOGNITION_SIZE) -> AlignmentTemplate:
    return AlignmentTemplate(RECOGNITION_POINTS * (face_size / RECOGNITION_SIZE), (face_size, face_size))


def anti_spoofing_template(fas_size: int = ANTI_SPOOFING_SIZE) -> AlignmentTemplate:
    return AlignmentTemplate(ANTI_SPOOFING_POINTS * (fas_size / ANTI_SPOOFING_SIZE), (fas_size, fas_size))


def as_landmark(landmark: ArrayLike) -> NDArray[np.float32]:
    """Coerce a landmark set to a (5, 2) float32 array."""
    array = np.asarray(landmark, dtype=np.float32)
    if array.size != 10 or array.ndim not in (1, 2) or (array.ndim == 2 and array.shape != (5, 2)):
        raise ShapeMismatchError(f"Expected 5 landmark points, got shape {array.shape}")
    return array.reshape(5, 2)


def document_face_ratio(landmark: ArrayLike, box: ArrayLike) -> float:
    """Box-center-to-eyes over nose-to-eyes distance, clamped to [baby, adult].

    Both distances are signed perpendicular distances to the eye line.
    """
    points = as_landmark(landmark)
    bbox = np.asarray(box, dtype=np.float64).reshape(4)
    center = np.array([(bbox[0] + bbox[2]) / 2, (bbox[1] + bbox[3]) / 2])
    e0, e1, nose = points[0].astype(np.float64), points[1].astype(np.float64), points[2].astype(np.float64)

    eye_dist = norm(e0, e1)
    if eye_dist == 0.0:
        raise GeometryEstimationError("eye landmarks coincide")
    d_cbox_eyes = cross2d(e0 - e1, center - e1) / eye_dist
    d_nose_eyes = cross2d(e0 - e1, nose - e1) / eye_dist
    if d_nose_eyes == 0.0:
        raise GeometryEstimationError("nose lies on the eye line")

    return float(min(max(d_cbox_eyes / d_nose_eyes, BABY_RATIO), ADULT_RATIO))


def document_template(landmark: ArrayLike, box: ArrayLike) -> AlignmentTemplate:
    """Interpolate between the baby and adult document templates for one face."""
    ratio = document_face_ratio(landmark, box)
    adult = DOCUMENT_ADULT_POINTS.astype(np.float64)
    baby = DOCUMENT_BABY_POINTS.astype(np.float64)
    points = ((baby * ADULT_RATIO - adult * BABY_RATIO) + (adult - baby) * ratio) / (ADULT_RATIO - BABY_RATIO)
    return AlignmentTemplate(points, DOCUMENT_SIZE)


def estimate_similarity(src: ArrayLike, dst: ArrayLike) -> NDArray[np.float64]:
    """Robustly estimate the 2x3 similarity transform mapping ``src`` onto ``dst``."""
    matrix, _inliers = cv2.estimateAffinePartial2D(
        np.asarray(src, dtype=np.float32).reshape(-1, 1, 2),
        np.asarray(dst, dtype=np.float32).reshape(-1, 1, 2),
        method=cv2.LMEDS,
        ransacReprojThreshold=REPROJ_THRESHOLD,
        maxIters=MAX_ITERS,
        confidence=CONFIDENCE,
        refineIters=REFINE_ITERS,
    )
    if matrix is None or not np.all(np.isfinite(matrix)):
        raise GeometryEstimationError("could not estimate a similarity transform from the landmarks")
    return matrix


class FaceAligner:
    """Warps faces onto the recognition, anti-spoofing and document templates."""

    def __init__(self, face_size: int = RECOGNITION_SIZE, fas_size: int = ANTI_SPOOFING_SIZE) -> None:
        self.recognition = recognition_template(face_size)
        self.anti_spoofing = anti_spoofing_template(fas_size)

    @staticmethod
    def align(
        image: NDArray[np.uint8],
        landmark: ArrayLike,
        template: AlignmentTemplate,
        border_mode: int = cv2.BORDER_CONSTANT,
    ) -> tuple[NDArray[np.uint8], NDArray[np.float64]]:
        """Warp ``image`` so that ``landmark`` lands on ``template``.

        Returns:
            The cropped face of size ``template.size`` and the 2x3 transform.
        """
        matrix = estimate_similarity(as_landmark(landmark), template.points)
        crop = cv2.warpAffine(
            image,
            matrix,
            template.size,
            flags=cv2.INTER_LINEAR,
            borderMode=border_mode,
            borderValue=(0, 0, 0),
        )
        return crop, matrix

    def align_batch(
        self,
        images: Sequence[NDArray[np.uint8]],
        landmarks: Sequence[ArrayLike],
        template: AlignmentTemplate,
        border_mode: int = cv2.BORDER_CONSTANT,
    ) -> tuple[list[NDArray[np.uint8]], list[NDArray[np.float64]]]:
        """Align parallel lists of images and landmarks."""
        if len(images) != len(landmarks):
            raise ShapeMismatchError(
                f"number of images and landmarks must be equal ({len(images)} != {len(landmarks)})"
            )
        crops: list[NDArray[np.uint8]] = []
        matrices: list[NDArray[np.float64]] = []
        for image, landmark in zip(images, landmarks, strict=True):
            crop, matrix = self.align(image, landmark, template, border_mode)
            crops.append(crop)
            matrices.append(matrix)
        return crops, matrices

    def align_recognition(
        self, images: Sequence[NDArray[np.uint8]], landmarks: Sequence[ArrayLike]
    ) -> list[NDArray[np.uint8]]:
        return self.align_batch(images, landmarks, self.recognition)[0]

    def align_anti_spoofing(
        self, images: Sequence[NDArray[np.uint8]], landmarks: Sequence[ArrayLike]
    ) -> list[NDArray[np.uint8]]:
        return self.align_batch(images, landmarks, self.anti_spoofing)[0]

    def align_document(
        self,
        image: NDArray[np.uint8],
        landmark: ArrayLike,
        box: ArrayLike,
        border_mode: int = cv2.BORDER_CONSTANT,
    ) -> tuple[NDArray[np.uint8], NDArray[np.float64]]:
        """Crop a document-photo style portrait (240x320) around one face."""
        template = document_template(landmark, box)
        logger.debug("Document template built for box %s", np.asarray(box).tolist())
        return self.align(image, landmark, template, border_mode)
