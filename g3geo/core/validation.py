"""
g3geo Report Validation

Checks a report received from another peer before it is allowed anywhere
near a local cache. Order matters: cheap structural checks run first, the
signature check runs before any type-specific inspection of `data`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from ..errors import ErrorKind
from ..models import (
    GeoLocation,
    GeoReportType,
    HazardData,
    TrafficData,
    ReviewData,
    SignedGeoReport,
    now_ms,
)
from .codec import report_ttl_ms, verify_report


logger = logging.getLogger(__name__)


MAX_TRAFFIC_SPEED_KMH = 300.0


@dataclass
class ReportValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    validated_at: int = 0
    error_kind: Optional[ErrorKind] = None


class GeoReportValidator:
    """
    Validates signed reports from untrusted peers.

    Example:
        validator = GeoReportValidator()
        result = validator.validate(report)
        if result.is_valid:
            cache.insert(...)
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock

    def _fail(self, kind: ErrorKind, *errors: str) -> ReportValidation:
        return ReportValidation(
            is_valid=False,
            errors=list(errors),
            validated_at=self._clock(),
            error_kind=kind,
        )

    def validate(self, report: SignedGeoReport) -> ReportValidation:
        now = self._clock()

        if not report.id or not report.signature or not report.public_key:
            return self._fail(ErrorKind.MALFORMED_PAYLOAD, "Missing required report fields")

        if now > report.expires_at:
            return self._fail(ErrorKind.REPORT_EXPIRED, "Report has expired")

        # expires_at is outside the signed payload; it may not exceed the type lifetime
        if report.expires_at > report.timestamp + report_ttl_ms(report.type):
            return self._fail(ErrorKind.MALFORMED_PAYLOAD, "Expiry exceeds report lifetime")

        if not self._valid_location(report.location):
            return self._fail(ErrorKind.MALFORMED_PAYLOAD, "Invalid location data")

        if not verify_report(report):
            return self._fail(ErrorKind.SIGNATURE_INVALID, "Invalid signature")

        errors = self._validate_data(report.type, report.data, report.timestamp)
        if errors:
            return self._fail(ErrorKind.MALFORMED_PAYLOAD, *errors)

        return ReportValidation(is_valid=True, validated_at=now)

    @staticmethod
    def _valid_location(location: GeoLocation) -> bool:
        return (
            -90 <= location.latitude <= 90
            and -180 <= location.longitude <= 180
            and location.timestamp > 0
        )

    def _validate_data(
        self, report_type: GeoReportType, data, report_signed_at: int
    ) -> List[str]:
        if report_type == GeoReportType.HAZARD and isinstance(data, HazardData):
            # hazard_type and severity are enum-validated at parse time
            return []
        if report_type == GeoReportType.TRAFFIC_SPEED and isinstance(data, TrafficData):
            return self._validate_traffic(data)
        if report_type == GeoReportType.BUSINESS_REVIEW and isinstance(data, ReviewData):
            return self._validate_review(data, report_signed_at)
        return [f"Unknown report type: {report_type}"]

    @staticmethod
    def _validate_traffic(data: TrafficData) -> List[str]:
        errors = []
        if data.speed < 0 or data.speed > MAX_TRAFFIC_SPEED_KMH:
            errors.append("Invalid speed value")
        if data.congestion_level < 0 or data.congestion_level > 1:
            errors.append("Invalid congestion level")
        return errors

    @staticmethod
    def _validate_review(data: ReviewData, signed_at: int) -> List[str]:
        errors = []
        if not data.business_id:
            errors.append("Invalid business ID")
        if data.rating < 1 or data.rating > 5:
            errors.append("Invalid rating (must be 1-5)")

        proof = data.qr_proof
        if not proof.business_public_key or not proof.signed_timestamp or not proof.signature:
            errors.append("Incomplete QR proof")
        elif signed_at > proof.valid_until:
            errors.append("QR proof had expired when the review was signed")
        return errors
