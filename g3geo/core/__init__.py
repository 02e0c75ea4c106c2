"""
g3geo Core Package

Signing, verification, distance and caching primitives.
"""

from .codec import (
    KeyPair,
    generate_keypair,
    canonical_payload,
    sign_report,
    verify_report,
    encode_report,
    decode_report,
)
from .proximity import distance_meters, within_radius
from .region_cache import GeoRegionCache, region_key
from .validation import GeoReportValidator, ReportValidation

__all__ = [
    "KeyPair",
    "generate_keypair",
    "canonical_payload",
    "sign_report",
    "verify_report",
    "encode_report",
    "decode_report",
    "distance_meters",
    "within_radius",
    "GeoRegionCache",
    "region_key",
    "GeoReportValidator",
    "ReportValidation",
]
