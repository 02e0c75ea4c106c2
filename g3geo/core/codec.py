"""
g3geo Signed Report Codec

Builds and verifies the canonical signature payload for every report type.

The payload is produced by an explicit serializer rather than by dumping a
dict, so that peers written in other languages (the browser client signs
with `JSON.stringify`) produce byte-identical input to Ed25519:

    {"type":...,"location":{"lat":...,"lng":...,"ts":...},"data":{...},"timestamp":...}

Rules (payload format version 1.0.0):
    - Object keys appear in the fixed order listed in `_DATA_FIELDS`
    - Absent optional fields are omitted, never written as null
    - Numbers follow ECMAScript Number::toString (integral floats have no
      fractional part, exponent form only below 1e-6 or from 1e21 up)
    - Strings are escaped exactly like JSON.stringify

Everything here is stateless.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import math
import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519
from pydantic import ValidationError

from ..errors import MalformedPayload
from ..models import (
    REPORT_VERSION,
    GeoLocation,
    GeoReportType,
    HazardData,
    TrafficData,
    ReviewData,
    QrProof,
    ReportPayload,
    SignedGeoReport,
    SignedHazardReport,
    SignedTrafficReport,
    SignedReviewReport,
    signed_report_adapter,
    now_ms,
)


logger = logging.getLogger(__name__)


PAYLOAD_FORMAT_VERSION = "1.0.0"

MINUTE_MS = 60 * 1000

REPORT_TTL_MS: Dict[GeoReportType, int] = {
    GeoReportType.HAZARD: 60 * MINUTE_MS,
    GeoReportType.TRAFFIC_SPEED: 5 * MINUTE_MS,
    GeoReportType.BUSINESS_REVIEW: 365 * 24 * 60 * MINUTE_MS,
}

GEO_BROADCAST_TOPICS: Dict[GeoReportType, str] = {
    GeoReportType.HAZARD: "/g3zkp/geo/hazard/v1",
    GeoReportType.TRAFFIC_SPEED: "/g3zkp/geo/traffic/v1",
    GeoReportType.BUSINESS_REVIEW: "/g3zkp/business/review/v1",
}

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

# (python attribute, wire key) in signing order
_DATA_FIELDS: Dict[type, List[Tuple[str, str]]] = {
    HazardData: [
        ("hazard_type", "hazardType"),
        ("severity", "severity"),
        ("description", "description"),
        ("direction", "direction"),
        ("lane_affected", "laneAffected"),
        ("expires_at", "expiresAt"),
    ],
    TrafficData: [
        ("road_segment_id", "roadSegmentId"),
        ("speed", "speed"),
        ("free_flow_speed", "freeFlowSpeed"),
        ("congestion_level", "congestionLevel"),
        ("sample_count", "sampleCount"),
        ("direction", "direction"),
    ],
    ReviewData: [
        ("business_id", "businessId"),
        ("business_name", "businessName"),
        ("rating", "rating"),
        ("comment", "comment"),
        ("qr_proof", "qrProof"),
        ("categories", "categories"),
        ("photos", "photos"),
    ],
    QrProof: [
        ("business_public_key", "businessPublicKey"),
        ("signed_timestamp", "signedTimestamp"),
        ("signature", "signature"),
        ("valid_until", "validUntil"),
    ],
}

_PAYLOAD_TYPES: Dict[GeoReportType, type] = {
    GeoReportType.HAZARD: HazardData,
    GeoReportType.TRAFFIC_SPEED: TrafficData,
    GeoReportType.BUSINESS_REVIEW: ReviewData,
}

_REPORT_CLASSES: Dict[GeoReportType, type] = {
    GeoReportType.HAZARD: SignedHazardReport,
    GeoReportType.TRAFFIC_SPEED: SignedTrafficReport,
    GeoReportType.BUSINESS_REVIEW: SignedReviewReport,
}


# =============================================================================
# KEYS
# =============================================================================

@dataclass(frozen=True)
class KeyPair:
    """An Ed25519 signing keypair."""
    private_key: ed25519.Ed25519PrivateKey
    public_key: ed25519.Ed25519PublicKey

    @property
    def public_key_bytes(self) -> bytes:
        return self.public_key.public_bytes(
            serialization.Encoding.Raw, serialization.PublicFormat.Raw
        )

    @property
    def private_key_bytes(self) -> bytes:
        return self.private_key.private_bytes(
            serialization.Encoding.Raw,
            serialization.PrivateFormat.Raw,
            serialization.NoEncryption(),
        )

    @property
    def public_key_b64(self) -> str:
        return b64e(self.public_key_bytes)

    @property
    def private_key_b64(self) -> str:
        return b64e(self.private_key_bytes)

    @classmethod
    def from_private_bytes(cls, raw: bytes) -> "KeyPair":
        """Rebuild from a 32-byte seed, or a 64-byte seed||public secret key."""
        if len(raw) == 64:
            raw = raw[:32]
        private_key = ed25519.Ed25519PrivateKey.from_private_bytes(raw)
        return cls(private_key=private_key, public_key=private_key.public_key())


def generate_keypair() -> KeyPair:
    private_key = ed25519.Ed25519PrivateKey.generate()
    return KeyPair(private_key=private_key, public_key=private_key.public_key())


def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")


def b64d(s: str) -> bytes:
    return base64.b64decode(s.encode("ascii"), validate=True)


def _public_key_b64(
    public_key: Union[ed25519.Ed25519PublicKey, bytes, str, None],
    private_key: ed25519.Ed25519PrivateKey,
) -> str:
    if public_key is None:
        public_key = private_key.public_key()
    if isinstance(public_key, str):
        return public_key
    if isinstance(public_key, bytes):
        return b64e(public_key)
    return b64e(public_key.public_bytes(
        serialization.Encoding.Raw, serialization.PublicFormat.Raw
    ))


# =============================================================================
# TYPE TABLES
# =============================================================================

def report_ttl_ms(report_type: GeoReportType) -> int:
    return REPORT_TTL_MS[GeoReportType(report_type)]


def topic_for_type(report_type: GeoReportType) -> str:
    return GEO_BROADCAST_TOPICS[GeoReportType(report_type)]


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_report_id(report_type: GeoReportType, timestamp: Optional[int] = None) -> str:
    """
    Build a report id such as ``hazard_lxk3j2a1_4f9q0zk2m``.

    Format: {type prefix}_{base36 timestamp}_{9 random base36 chars}
    """
    prefix = GeoReportType(report_type).value.lower().replace("_", "-")
    ts = now_ms() if timestamp is None else timestamp
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"{prefix}_{_to_base36(ts)}_{suffix}"


# =============================================================================
# CANONICAL PAYLOAD
# =============================================================================

def _format_number(value: Union[int, float]) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if not math.isfinite(value):
        return "null"
    text = repr(value)
    if value == int(value) and abs(value) < 1e21:
        if abs(value) < 2 ** 53:
            return str(int(value))
        return format(Decimal(text), "f")

    if "e" not in text:
        return text

    mantissa, exponent = text.split("e")
    exp = int(exponent)
    if -7 < exp < 21:
        return format(Decimal(text), "f")
    sign = "+" if exp > 0 else "-"
    return f"{mantissa}e{sign}{abs(exp)}"


def _encode_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, (bool, int, float)):
        return _format_number(value)
    if isinstance(value, str):
        # Enums subclass str, so use the raw value
        raw = value.value if hasattr(value, "value") else value
        return json.dumps(raw, ensure_ascii=False)
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_encode_value(v) for v in value) + "]"
    if type(value) in _DATA_FIELDS:
        return _encode_model(value)
    raise MalformedPayload(f"Cannot encode value of type {type(value).__name__}")


def _encode_model(model: Any) -> str:
    fields = _DATA_FIELDS[type(model)]
    parts = []
    for attr, key in fields:
        value = getattr(model, attr)
        if value is None:
            continue
        parts.append(f"{json.dumps(key)}:{_encode_value(value)}")
    return "{" + ",".join(parts) + "}"


def _check_payload_type(report_type: GeoReportType, data: ReportPayload) -> None:
    expected = _PAYLOAD_TYPES.get(GeoReportType(report_type))
    if expected is None or not isinstance(data, expected):
        raise MalformedPayload(
            f"{type(data).__name__} is not a valid payload for {report_type}"
        )


def canonical_payload(
    report_type: GeoReportType,
    location: GeoLocation,
    data: ReportPayload,
    timestamp: int,
) -> str:
    """
    Build the exact string that is signed for a report.

    Raises:
        MalformedPayload: if `data` does not match `report_type`
    """
    _check_payload_type(report_type, data)

    location_part = (
        '{"lat":' + _format_number(location.latitude) +
        ',"lng":' + _format_number(location.longitude) +
        ',"ts":' + _format_number(location.timestamp) + "}"
    )
    return (
        '{"type":' + json.dumps(GeoReportType(report_type).value) +
        ',"location":' + location_part +
        ',"data":' + _encode_model(data) +
        ',"timestamp":' + _format_number(timestamp) + "}"
    )


# =============================================================================
# SIGN / VERIFY
# =============================================================================

def sign_bytes(payload: bytes, private_key: ed25519.Ed25519PrivateKey) -> str:
    """Detached Ed25519 signature, base64 encoded."""
    return b64e(private_key.sign(payload))


def verify_detached(payload: bytes, signature_b64: str, public_key_b64: str) -> bool:
    """
    Verify a detached signature.

    Returns False (never raises) on malformed base64, wrong key or
    signature length, or a signature mismatch.
    """
    try:
        signature = b64d(signature_b64)
        public_key = ed25519.Ed25519PublicKey.from_public_bytes(b64d(public_key_b64))
        public_key.verify(signature, payload)
        return True
    except (InvalidSignature, binascii.Error, ValueError, TypeError, AttributeError):
        return False


def sign_report(
    report_type: GeoReportType,
    location: GeoLocation,
    data: ReportPayload,
    private_key: ed25519.Ed25519PrivateKey,
    public_key: Union[ed25519.Ed25519PublicKey, bytes, str, None] = None,
    clock: Callable[[], int] = now_ms,
) -> SignedGeoReport:
    """
    Sign a report.

    Args:
        report_type: Which report variant is being signed
        location: Where the report applies
        data: Payload matching `report_type`
        private_key: Author's Ed25519 key
        public_key: Author's public key to embed (derived when omitted)
        clock: Millisecond clock, injectable for tests

    Returns:
        The matching SignedGeoReport subclass

    Raises:
        MalformedPayload: if `data` does not match `report_type`
    """
    report_type = GeoReportType(report_type)
    timestamp = clock()
    payload = canonical_payload(report_type, location, data, timestamp)

    report_cls = _REPORT_CLASSES[report_type]
    return report_cls(
        id=generate_report_id(report_type, timestamp),
        type=report_type,
        location=location,
        timestamp=timestamp,
        expires_at=timestamp + report_ttl_ms(report_type),
        data=data,
        signature=sign_bytes(payload.encode("utf-8"), private_key),
        public_key=_public_key_b64(public_key, private_key),
        version=REPORT_VERSION,
    )


def verify_report(report: SignedGeoReport) -> bool:
    """
    Check a report's embedded signature against its embedded public key.

    The canonical payload is rebuilt from the report's own fields, so any
    change to type, location, data or timestamp after signing is detected.
    Never raises.
    """
    try:
        payload = canonical_payload(
            report.type, report.location, report.data, report.timestamp
        )
    except (MalformedPayload, ValueError, AttributeError) as e:
        logger.debug(f"Cannot rebuild payload for report {getattr(report, 'id', '?')}: {e}")
        return False

    return verify_detached(payload.encode("utf-8"), report.signature, report.public_key)


def is_report_expired(report: SignedGeoReport, now: Optional[int] = None) -> bool:
    return (now_ms() if now is None else now) > report.expires_at


# =============================================================================
# WIRE FORMAT
# =============================================================================

def encode_report(report: SignedGeoReport) -> bytes:
    return json.dumps(report.to_wire(), separators=(",", ":")).encode("utf-8")


def decode_report(raw: Union[bytes, str, dict]) -> SignedGeoReport:
    """
    Parse a report received from the network.

    Raises:
        MalformedPayload: if the bytes are not a well-formed report
    """
    try:
        if isinstance(raw, dict):
            return signed_report_adapter.validate_python(raw)
        return signed_report_adapter.validate_json(raw)
    except ValidationError as e:
        raise MalformedPayload(f"Malformed report: {e.error_count()} validation error(s)") from e
