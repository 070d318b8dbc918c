"""Face anti-spoofing client.

The model takes the far, mid and near shots as three separate inputs and
returns a two-class score; index 1 is the probability of a live face.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from verifyx.config import AntiSpoofingParams
from verifyx.errors import ShapeMismatchError
from verifyx.ml.client import ModelClient
from verifyx.ml.preprocessing import resize_square, to_chw

if TYPE_CHECKING:
    from numpy.typing import NDArray

_LIVE_INDEX = 1


class FaceAntiSpoofingClient(ModelClient[AntiSpoofingParams]):
    """Scores a far/mid/near triplet for liveness."""

    def liveness_score(
        self,
        img_far: NDArray[np.uint8],
        img_mid: NDArray[np.uint8],
        img_near: NDArray[np.uint8],
    ) -> float:
        size = self.params.img_size
        tensors = [
            to_chw(resize_square(img, size), self.params.mean, self.params.scale)[np.newaxis]
            for img in (img_far, img_mid, img_near)
        ]
        scores = np.asarray(self._infer(tensors)[0], dtype=np.float32).reshape(-1)
        if scores.size <= _LIVE_INDEX:
            raise ShapeMismatchError(f"{self.model_name} returned {scores.size} scores, expected at least 2")
        return float(scores[_LIVE_INDEX])
