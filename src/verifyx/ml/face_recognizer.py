"""Face recognition (embedding) client."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from verifyx.config import FaceIDParams
from verifyx.ml.client import ModelClient
from verifyx.ml.preprocessing import resize_square, to_chw

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray


class FaceIDClient(ModelClient[FaceIDParams]):
    """Extracts identity embeddings from recognition-aligned face crops."""

    def get_embeddings(self, face_crops: Sequence[NDArray[np.uint8]]) -> list[NDArray[np.float32]]:
        """Generate one embedding per aligned face crop.

        Each crop is sent as its own request, as the served model takes a
        batch of one.

        Args:
            face_crops: HxWx3 RGB uint8 crops aligned on the recognition template.

        Returns:
            Flattened embedding vectors (not normalised).
        """
        size = self.params.img_size
        embeddings = []
        for crop in face_crops:
            tensor = to_chw(resize_square(crop, size), self.params.mean, self.params.scale)[np.newaxis]
            outputs = self._infer([tensor])
            embeddings.append(np.asarray(outputs[0], dtype=np.float32).reshape(-1))
        return embeddings
