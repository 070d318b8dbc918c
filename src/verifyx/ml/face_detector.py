"""Face detection client (SCRFD-style detector with built-in NMS).

The served detector takes a letterboxed, normalised CHW batch and returns five
outputs in declared order: detection count, boxes, scores, class ids and
5-point landmarks. Coordinates are relative to the model input size and are
mapped back to original image pixels here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from verifyx.config import FaceDetectionParams
from verifyx.errors import ShapeMismatchError
from verifyx.ml.client import ModelClient
from verifyx.ml.preprocessing import check_image, letterbox, to_chw

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

_NUM_OUTPUTS = 5


@dataclass(frozen=True)
class RawDetection:
    """Raw face detection result in pixel space of the original image."""

    bbox: NDArray[np.float32]
    score: float
    class_id: int
    landmarks: NDArray[np.float32]

    def shifted(self, off_x: float, off_y: float) -> RawDetection:
        """Return a copy with ``(off_x, off_y)`` subtracted from every coordinate."""
        offset = np.asarray([off_x, off_y], dtype=np.float32)
        return RawDetection(
            bbox=(self.bbox.reshape(2, 2) - offset).reshape(4),
            score=self.score,
            class_id=self.class_id,
            landmarks=self.landmarks - offset,
        )


class FaceDetector(Protocol):
    """Protocol for face detection models."""

    def detect(self, images: Sequence[NDArray[np.uint8]]) -> list[list[RawDetection]]:
        """Detect faces in a batch of HxWx3 RGB uint8 images."""
        ...


class FaceDetectionClient(ModelClient[FaceDetectionParams]):
    """Runs the face detector on batches of RGB images."""

    @property
    def input_size(self) -> tuple[int, int]:
        """Model input ``(height, width)``; falls back to ``img_size`` for dynamic dims."""
        dims = self.config.inputs[0].dims if self.config.inputs else ()
        if len(dims) == 3 and dims[1] > 0 and dims[2] > 0:
            return int(dims[1]), int(dims[2])
        return self.params.img_size, self.params.img_size

    def detect(self, images: Sequence[NDArray[np.uint8]]) -> list[list[RawDetection]]:
        """Detect faces in a batch of images with a single model call.

        Args:
            images: HxWx3 RGB uint8 arrays.

        Returns:
            One list of raw detections per input image.
        """
        if not images:
            return []

        in_h, in_w = self.input_size
        batch = []
        ratios = []
        for image in images:
            check_image(image)
            canvas, ratio = letterbox(image, in_h, in_w)
            batch.append(to_chw(canvas, self.params.mean, self.params.scale))
            ratios.append(ratio)

        outputs = self._infer([np.stack(batch, axis=0)])
        if len(outputs) < _NUM_OUTPUTS:
            raise ShapeMismatchError(f"{self.model_name} returned {len(outputs)} outputs, expected {_NUM_OUTPUTS}")
        return self._postprocess(outputs, ratios, in_h, in_w)

    def _postprocess(
        self,
        outputs: list[NDArray[np.generic]],
        ratios: list[float],
        in_h: int,
        in_w: int,
    ) -> list[list[RawDetection]]:
        num_dets, boxes, scores, classes, landmarks = outputs[:_NUM_OUTPUTS]
        batch_size = len(ratios)
        boxes = np.asarray(boxes, dtype=np.float32).reshape(batch_size, -1, 4)
        landmarks = np.asarray(landmarks, dtype=np.float32).reshape(batch_size, -1, 5, 2)
        scores = np.asarray(scores, dtype=np.float32).reshape(batch_size, -1)
        classes = np.asarray(classes).reshape(batch_size, -1)
        num_dets = np.asarray(num_dets).reshape(batch_size, -1)

        results: list[list[RawDetection]] = []
        for b, ratio in enumerate(ratios):
            # Normalised model-input coordinates -> original image pixels.
            scale = np.asarray([in_w / ratio, in_h / ratio], dtype=np.float32)
            count = min(int(num_dets[b, 0]), boxes.shape[1])
            detections = [
                RawDetection(
                    bbox=(boxes[b, i].reshape(2, 2) * scale).reshape(4),
                    score=float(scores[b, i]),
                    class_id=int(classes[b, i]),
                    landmarks=landmarks[b, i] * scale,
                )
                for i in range(count)
            ]
            results.append(detections)
        logger.debug("Detected %s faces", [len(r) for r in results])
        return results
