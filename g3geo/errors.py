"""
g3geo Error Taxonomy

Every failure the geo layer can report falls into one of a small set of
kinds. User-facing flows (QR reviews) return these as values so callers can
show a specific message; best-effort flows (broadcasts, persistence) log
them and carry on.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import SignedReviewReport


class ErrorKind(str, Enum):
    SIGNATURE_INVALID = "SignatureInvalid"
    REPORT_EXPIRED = "ReportExpired"
    PROOF_ALREADY_USED = "ProofAlreadyUsed"
    OUT_OF_PROXIMITY_RANGE = "OutOfProximityRange"
    MALFORMED_PAYLOAD = "MalformedPayload"
    TRANSPORT_UNAVAILABLE = "TransportUnavailable"
    PERSISTENCE_FAILURE = "PersistenceFailure"


class GeoBroadcastError(Exception):
    """Base class for all g3geo errors."""
    kind: ErrorKind = ErrorKind.MALFORMED_PAYLOAD


class SignatureInvalid(GeoBroadcastError):
    kind = ErrorKind.SIGNATURE_INVALID


class ReportExpired(GeoBroadcastError):
    kind = ErrorKind.REPORT_EXPIRED


class ProofAlreadyUsed(GeoBroadcastError):
    kind = ErrorKind.PROOF_ALREADY_USED


class OutOfProximityRange(GeoBroadcastError):
    kind = ErrorKind.OUT_OF_PROXIMITY_RANGE

    def __init__(self, distance_meters: float, max_distance_meters: float):
        self.distance_meters = distance_meters
        self.max_distance_meters = max_distance_meters
        super().__init__(
            f"Too far from business location ({round(distance_meters)}m away, "
            f"max {round(max_distance_meters)}m)"
        )


class MalformedPayload(GeoBroadcastError):
    kind = ErrorKind.MALFORMED_PAYLOAD


class BusinessNotRegistered(MalformedPayload):
    """Raised when a QR code is requested for an unknown business."""


class TransportUnavailable(GeoBroadcastError):
    kind = ErrorKind.TRANSPORT_UNAVAILABLE


class PersistenceFailure(GeoBroadcastError):
    kind = ErrorKind.PERSISTENCE_FAILURE


@dataclass
class ReviewResult:
    """
    Outcome of a proof-gated review attempt.

    Exactly one of `review` / `error` is set.
    """
    success: bool
    review: Optional["SignedReviewReport"] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def ok(cls, review: "SignedReviewReport") -> "ReviewResult":
        return cls(success=True, review=review)

    @classmethod
    def failed(cls, exc: GeoBroadcastError) -> "ReviewResult":
        return cls(success=False, error=str(exc), error_kind=exc.kind)
