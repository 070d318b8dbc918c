"""Face quality (obstruction) client."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

from verifyx.config import FaceQualityParams
from verifyx.errors import ShapeMismatchError
from verifyx.ml.client import ModelClient
from verifyx.ml.preprocessing import resize_square, to_chw

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class FaceQualityClient(ModelClient[FaceQualityParams]):
    """Scores face crops for obstruction (mask, hand, glasses...)."""

    def cover_scores(self, face_crops: Sequence[NDArray[np.uint8]]) -> NDArray[np.float32]:
        """Return the obstruction score of every crop, shape ``(len(face_crops),)``.

        All crops go to the model as one stacked batch. Every output head is
        read at column ``cover_index`` and a crop keeps its highest value.
        """
        if not face_crops:
            raise ShapeMismatchError("no face crops to score")
        size = self.params.img_size
        batch = np.stack([to_chw(resize_square(crop, size), self.params.mean, self.params.scale) for crop in face_crops])

        column = self.params.cover_index
        per_head = []
        for output in self._infer([batch]):
            head = np.asarray(output, dtype=np.float32).reshape(len(face_crops), -1)
            if column >= head.shape[1]:
                raise ShapeMismatchError(f"{self.model_name} output has {head.shape[1]} columns, need index {column}")
            per_head.append(head[:, column])
        if not per_head:
            raise ShapeMismatchError(f"{self.model_name} returned no outputs")
        return np.max(np.stack(per_head), axis=0)

    def mask_score(self, face_crops: Sequence[NDArray[np.uint8]]) -> float:
        """Highest obstruction score over all crops."""
        scores = self.cover_scores(face_crops)
        logger.debug("Cover scores: %s", scores.tolist())
        return float(np.max(scores))
