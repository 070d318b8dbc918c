"""Single-face selection policies.

Both policies are pure and break ties by first occurrence in input order.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

from verifyx.errors import NoFaceDetectedError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from verifyx.ml.localizer import FaceCandidate


class SelectionPolicy(StrEnum):
    LARGEST = "largest"
    CENTER = "center"


def _boxes(candidates: Sequence[FaceCandidate]) -> np.ndarray:
    if not candidates:
        raise NoFaceDetectedError("No face candidates to select from")
    return np.stack([np.asarray(c.box, dtype=np.float64).reshape(4) for c in candidates])


def largest_face_index(candidates: Sequence[FaceCandidate], width: int, height: int) -> int:
    """Index of the candidate with the largest box area after clipping to the image."""
    boxes = _boxes(candidates)
    left = np.clip(boxes[:, 0], 0, width)
    top = np.clip(boxes[:, 1], 0, height)
    right = np.clip(boxes[:, 2], 0, width)
    bottom = np.clip(boxes[:, 3], 0, height)
    areas = (right - left) * (bottom - top)
    return int(np.argmax(areas))


def center_face_index(
    candidates: Sequence[FaceCandidate],
    width: int | None = None,
    height: int | None = None,
    center: tuple[float, float] | None = None,
) -> int:
    """Index of the candidate whose box center is closest to a reference point.

    The reference is ``center`` when given, otherwise ``(width / 2, height / 2)``
    with missing dimensions treated as 0.
    """
    boxes = _boxes(candidates)
    if center is None:
        center = ((width or 0) / 2, (height or 0) / 2)
    ref = np.asarray(center, dtype=np.float64)

    centers = np.stack([(boxes[:, 0] + boxes[:, 2]) / 2, (boxes[:, 1] + boxes[:, 3]) / 2], axis=1)
    distances = np.linalg.norm(centers - ref, axis=1)
    return int(np.argmin(distances))


def select_face(
    candidates: Sequence[FaceCandidate],
    width: int,
    height: int,
    policy: SelectionPolicy,
    center: tuple[float, float] | None = None,
) -> FaceCandidate:
    """Reduce a candidate list to one face according to ``policy``."""
    if policy is SelectionPolicy.LARGEST:
        return candidates[largest_face_index(candidates, width, height)]
    return candidates[center_face_index(candidates, width, height, center)]
