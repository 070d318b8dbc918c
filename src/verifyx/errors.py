"""Exception hierarchy for VerifyX.

Every error raised by the verification core derives from ``VerifyXError``.
Verification flows attach the partially filled ``VerificationResult`` to the
error before re-raising, so callers keep the scores of completed stages.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from verifyx.engine import VerificationResult


class VerifyXError(Exception):
    """Base class for all VerifyX errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.result: VerificationResult | None = None


class NoFaceDetectedError(VerifyXError):
    """No face candidate survived detection (and the padding retry)."""


class LowLandmarkQualityError(VerifyXError):
    """Faces were detected but rejected by the inter-eye distance threshold."""


class GeometryEstimationError(VerifyXError):
    """The similarity transform could not be estimated from the landmarks."""


class ShapeMismatchError(VerifyXError, ValueError):
    """Mismatched list lengths or malformed array shapes."""


class DegenerateVectorError(VerifyXError, ValueError):
    """A zero-length vector was passed where a direction is required."""


class InvalidImageError(VerifyXError, ValueError):
    """Image bytes could not be decoded or exceed the configured limits."""


class InferenceTransportError(VerifyXError):
    """The inference backend failed to serve a request."""


class InferenceTimeoutError(InferenceTransportError, TimeoutError):
    """The inference backend did not answer within the model timeout."""
