"""
g3geo Core Data Models

This module defines the data structures exchanged between peers and held in
the local caches. Pydantic provides validation at the trust boundary: every
report that arrives from the network is parsed through these models before
anything else touches it.

Design Philosophy:
    - Signed reports are frozen; re-signing produces a new report
    - Wire names are camelCase (shared with non-Python peers), Python
      attributes are snake_case
    - Report payloads form a closed tagged union over three variants
    - All timestamps are integer milliseconds since the Unix epoch
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Optional, List, Union, Literal, Annotated

from pydantic import BaseModel, Field, ConfigDict, TypeAdapter
from pydantic.alias_generators import to_camel


REPORT_VERSION = "1.0.0"


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# =============================================================================
# ENUMS
# =============================================================================

class GeoReportType(str, Enum):
    """
    The three kinds of report a peer may publish.

    Each type has its own TTL and pub/sub topic.
    """
    HAZARD = "HAZARD"
    TRAFFIC_SPEED = "TRAFFIC_SPEED"
    BUSINESS_REVIEW = "BUSINESS_REVIEW"


class HazardType(str, Enum):
    """Road hazard categories."""
    POLICE = "police"
    ACCIDENT = "accident"
    ROAD_CLOSURE = "road_closure"
    CONSTRUCTION = "construction"
    WEATHER = "weather"
    SPEED_CAMERA = "speed_camera"
    DEBRIS = "debris"
    TRAFFIC_JAM = "traffic_jam"
    OTHER = "other"


class HazardSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TravelDirection(str, Enum):
    NORTHBOUND = "northbound"
    SOUTHBOUND = "southbound"
    EASTBOUND = "eastbound"
    WESTBOUND = "westbound"
    BOTH = "both"
    UNKNOWN = "unknown"


class PrivacyLevel(str, Enum):
    """
    Coordinate obfuscation strength.

    Mapping (maximum offset per axis, degrees):
        LOW: 0.0001 (~11 m)
        MEDIUM: 0.0005 (~55 m)
        HIGH: 0.001 (~111 m)
        MAXIMUM: 0.005 (~555 m)
    """
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    MAXIMUM = "maximum"


class IncidentSource(str, Enum):
    USER = "user"
    OFFICIAL = "official"
    SENSOR = "sensor"


# =============================================================================
# BASE MODEL
# =============================================================================

class WireModel(BaseModel):
    """Base for models that travel over the network as camelCase JSON."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict:
        """Dump to the camelCase dictionary shape other peers expect."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# LOCATION
# =============================================================================

class GeoLocation(WireModel):
    """
    A point-in-time position sample.

    Attributes:
        latitude: WGS84 latitude (-90 to 90)
        longitude: WGS84 longitude (-180 to 180)
        timestamp: When the sample was taken (epoch ms)
        accuracy: GPS accuracy in meters if available
        altitude: Altitude in meters if available
        heading: Heading in degrees if available
        speed: Speed if available
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    latitude: float = Field(..., ge=-90, le=90, description="WGS84 latitude")
    longitude: float = Field(..., ge=-180, le=180, description="WGS84 longitude")
    timestamp: int = Field(default_factory=now_ms, ge=0)
    accuracy: Optional[float] = Field(None, ge=0)
    altitude: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None

    def __str__(self) -> str:
        return f"({self.latitude:.6f}, {self.longitude:.6f})"


class BusinessLocation(WireModel):
    """Bare coordinates embedded in a business QR code."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


# =============================================================================
# REPORT PAYLOADS
# =============================================================================

class HazardData(WireModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    hazard_type: HazardType
    severity: HazardSeverity
    description: Optional[str] = None
    direction: Optional[TravelDirection] = None
    lane_affected: Optional[str] = None
    expires_at: Optional[int] = None


class TrafficData(WireModel):
    """
    A live speed sample for a stretch of road.

    Speed is km/h; congestion_level runs from 0 (free flow) to 1 (stopped).
    Range checks are applied by the report validator rather than here so
    that a bad sample from a peer is reported as a validation error instead
    of a parse failure.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    road_segment_id: Optional[str] = None
    speed: float
    free_flow_speed: Optional[float] = None
    congestion_level: float
    sample_count: int = 1
    direction: Optional[float] = None


class QrProof(WireModel):
    """Evidence copied from a business QR code into a review."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    business_public_key: str
    signed_timestamp: str
    signature: str
    valid_until: int


class ReviewData(WireModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    business_id: str
    business_name: str
    rating: int
    comment: Optional[str] = None
    qr_proof: QrProof
    categories: Optional[List[str]] = None
    photos: Optional[List[str]] = None


ReportPayload = Union[HazardData, TrafficData, ReviewData]


# =============================================================================
# SIGNED REPORTS
# =============================================================================

class SignedGeoReport(WireModel):
    """
    A report signed by its author.

    `signature` is a detached Ed25519 signature over the canonical payload
    built by `g3geo.core.codec.canonical_payload`, verifiable with
    `public_key` (both base64). Instances are immutable.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    id: str
    type: GeoReportType
    location: GeoLocation
    timestamp: int
    expires_at: int
    data: ReportPayload
    signature: str
    public_key: str
    version: str = REPORT_VERSION


class SignedHazardReport(SignedGeoReport):
    type: Literal[GeoReportType.HAZARD] = GeoReportType.HAZARD
    data: HazardData


class SignedTrafficReport(SignedGeoReport):
    type: Literal[GeoReportType.TRAFFIC_SPEED] = GeoReportType.TRAFFIC_SPEED
    data: TrafficData


class SignedReviewReport(SignedGeoReport):
    type: Literal[GeoReportType.BUSINESS_REVIEW] = GeoReportType.BUSINESS_REVIEW
    data: ReviewData


AnySignedReport = Annotated[
    Union[SignedHazardReport, SignedTrafficReport, SignedReviewReport],
    Field(discriminator="type"),
]

signed_report_adapter: TypeAdapter = TypeAdapter(AnySignedReport)


# =============================================================================
# LOCAL HAZARD / TRAFFIC MODELS
# =============================================================================

class HazardReport(WireModel):
    """
    A hazard as reported by a local driver, before it is cached.

    Attributes:
        type: Hazard category
        location: Where the hazard is
        timestamp: When it was reported (epoch ms)
        direction: Reporter heading in degrees
        confidence: Reporter confidence (0-1)
        additional_info: Free text
    """
    type: HazardType
    location: GeoLocation
    timestamp: int = Field(default_factory=now_ms)
    direction: float = Field(default=0.0)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    additional_info: str = ""


class StoredHazard(HazardReport):
    """
    Local cache projection of a hazard.

    Mutated in place by the region cache when peers corroborate it.
    """
    id: str
    expires_at: int
    verification_count: int = Field(default=1, ge=0)


class TrafficObservation(WireModel):
    """A raw speed observation from the local vehicle."""
    location: GeoLocation
    speed: float = Field(..., ge=0)
    timestamp: int = Field(default_factory=now_ms)
    road_type: str = "unknown"
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    heading: Optional[float] = None
    free_flow_speed: Optional[float] = None


class TrafficSample(WireModel):
    """
    A traffic sample as cached locally and exchanged over the session channel.

    Samples are advisory and short lived (5 minutes).
    """
    id: str
    location: GeoLocation
    timestamp: int
    expires_at: int
    session_id: str
    road_type: str = "unknown"
    confidence: float = 1.0
    encrypted: bool = True
    data: TrafficData


class TrafficIncident(WireModel):
    """Query-time view of a cached hazard relative to a point."""
    id: str
    type: HazardType
    location: GeoLocation
    severity: float
    description: str
    timestamp: int
    expires_at: int
    distance: float
    verified: bool
    verification_count: int
    source: IncidentSource = IncidentSource.USER


class RouteSegment(WireModel):
    start: GeoLocation
    end: GeoLocation
    speed: Optional[float] = None
    congestion: float = 0.0
    incidents: List[TrafficIncident] = Field(default_factory=list)
    has_data: bool = False


class RouteTraffic(WireModel):
    """
    Aggregated traffic along a route.

    `data_available` is False when no segment had live samples, which lets
    callers tell "no data" apart from "clear road".
    """
    segments: List[RouteSegment] = Field(default_factory=list)
    average_speed: Optional[float] = None
    congestion_level: float = 0.0
    data_available: bool = False


# =============================================================================
# BUSINESS QR MODELS
# =============================================================================

class BusinessQrData(WireModel):
    """
    Contents of a proof-of-presence QR code.

    `signature` covers `signed_timestamp`, a JSON blob embedding
    businessId, timestamp, validUntil and a nonce.
    """
    business_id: str = ""
    business_name: str = ""
    business_public_key: str = ""
    signed_timestamp: str = ""
    signature: str = ""
    valid_until: int = 0
    location: BusinessLocation


class QrGenerationConfig(WireModel):
    validity_duration_ms: int = Field(default=30 * 60 * 1000, gt=0)


class RegisteredBusinessKeys(WireModel):
    """Base64 export of a business keypair returned at registration."""
    public_key: str
    private_key: str
