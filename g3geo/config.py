"""
g3geo Configuration Module

Central configuration management with environment variable support.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Dict, Any
from enum import Enum

from .models import GeoReportType, PrivacyLevel


class Environment(Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass
class RedisConfig:
    """Redis connection configuration (hazard cache persistence)."""
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    ssl: bool = False

    max_connections: int = 20

    @property
    def url(self) -> str:
        """Build Redis URL."""
        protocol = "rediss" if self.ssl else "redis"
        auth = f":{self.password}@" if self.password else ""
        return f"{protocol}://{auth}{self.host}:{self.port}/{self.db}"

    @classmethod
    def from_env(cls) -> "RedisConfig":
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("REDIS_HOST", "localhost"),
            port=int(os.getenv("REDIS_PORT", "6379")),
            db=int(os.getenv("REDIS_DB", "0")),
            password=os.getenv("REDIS_PASSWORD"),
            ssl=os.getenv("REDIS_SSL", "false").lower() == "true",
            max_connections=int(os.getenv("REDIS_MAX_CONNECTIONS", "20")),
        )


@dataclass
class TransportConfig:
    """P2P relay and pub/sub topic configuration."""
    relay_url: Optional[str] = None
    relay_timeout_seconds: float = 10.0
    relay_poll_interval_seconds: float = 2.0
    peer_id: str = "anonymous"

    topic_hazard: str = "/g3zkp/geo/hazard/v1"
    topic_traffic: str = "/g3zkp/geo/traffic/v1"
    topic_review: str = "/g3zkp/business/review/v1"

    def topic_for(self, report_type: GeoReportType) -> str:
        """Pub/sub topic carrying reports of this type."""
        return {
            GeoReportType.HAZARD: self.topic_hazard,
            GeoReportType.TRAFFIC_SPEED: self.topic_traffic,
            GeoReportType.BUSINESS_REVIEW: self.topic_review,
        }[GeoReportType(report_type)]

    @classmethod
    def from_env(cls) -> "TransportConfig":
        """Load configuration from environment variables."""
        defaults = cls()
        return cls(
            relay_url=os.getenv("G3GEO_RELAY_URL"),
            relay_timeout_seconds=float(os.getenv("G3GEO_RELAY_TIMEOUT_SECONDS", "10")),
            relay_poll_interval_seconds=float(os.getenv("G3GEO_RELAY_POLL_INTERVAL_SECONDS", "2")),
            peer_id=os.getenv("G3GEO_PEER_ID", "anonymous"),
            topic_hazard=os.getenv("G3GEO_TOPIC_HAZARD", defaults.topic_hazard),
            topic_traffic=os.getenv("G3GEO_TOPIC_TRAFFIC", defaults.topic_traffic),
            topic_review=os.getenv("G3GEO_TOPIC_REVIEW", defaults.topic_review),
        )


@dataclass
class CacheConfig:
    """Regional cache and persistence configuration."""
    sweep_interval_seconds: float = 3600.0
    corroboration_bonus_ms: int = 10 * 60 * 1000
    storage_key: str = "g3zkp_hazards"
    keys_storage_key: str = "g3zkp_traffic_keys"

    # "memory" or "redis"
    persistence: str = "memory"

    @classmethod
    def from_env(cls) -> "CacheConfig":
        """Load configuration from environment variables."""
        return cls(
            sweep_interval_seconds=float(os.getenv("G3GEO_CACHE_SWEEP_INTERVAL_SECONDS", "3600")),
            corroboration_bonus_ms=int(os.getenv("G3GEO_CORROBORATION_BONUS_MS", "600000")),
            storage_key=os.getenv("G3GEO_HAZARD_STORAGE_KEY", "g3zkp_hazards"),
            keys_storage_key=os.getenv("G3GEO_KEYS_STORAGE_KEY", "g3zkp_traffic_keys"),
            persistence=os.getenv("G3GEO_PERSISTENCE", "memory").lower(),
        )


@dataclass
class TrafficConfig:
    """Traffic reporting and route aggregation configuration."""
    report_interval_seconds: float = 30.0
    min_speed_for_report_kmh: float = 5.0

    route_sample_segments: int = 10
    route_radius_meters: float = 500.0

    free_flow_speed_kmh: float = 50.0

    police_hazard_ttl_minutes: int = 30
    default_hazard_ttl_minutes: int = 60

    @classmethod
    def from_env(cls) -> "TrafficConfig":
        """Load configuration from environment variables."""
        return cls(
            report_interval_seconds=float(os.getenv("G3GEO_TRAFFIC_REPORT_INTERVAL_SECONDS", "30")),
            min_speed_for_report_kmh=float(os.getenv("G3GEO_TRAFFIC_MIN_SPEED_KMH", "5")),
            route_sample_segments=int(os.getenv("G3GEO_ROUTE_SAMPLE_SEGMENTS", "10")),
            route_radius_meters=float(os.getenv("G3GEO_ROUTE_RADIUS_METERS", "500")),
            free_flow_speed_kmh=float(os.getenv("G3GEO_FREE_FLOW_SPEED_KMH", "50")),
        )


@dataclass
class PrivacyConfig:
    """Coordinate obfuscation configuration."""
    level: PrivacyLevel = PrivacyLevel.MEDIUM
    location_obfuscation: bool = True
    cache_max_entries: int = 1000
    cache_evict_count: int = 500

    @classmethod
    def from_env(cls) -> "PrivacyConfig":
        """Load configuration from environment variables."""
        level_str = os.getenv("G3GEO_PRIVACY_LEVEL", "medium").lower()
        try:
            level = PrivacyLevel(level_str)
        except ValueError:
            level = PrivacyLevel.MEDIUM

        return cls(
            level=level,
            location_obfuscation=os.getenv("G3GEO_LOCATION_OBFUSCATION", "true").lower() == "true",
        )


@dataclass
class QrConfig:
    """Proof-of-presence QR configuration."""
    validity_duration_ms: int = 30 * 60 * 1000
    max_review_distance_meters: float = 500.0

    replay_max_age_ms: int = 60 * 60 * 1000
    replay_sweep_interval_seconds: float = 3600.0

    max_stored_reviews: int = 1000

    @classmethod
    def from_env(cls) -> "QrConfig":
        """Load configuration from environment variables."""
        return cls(
            validity_duration_ms=int(os.getenv("G3GEO_QR_VALIDITY_MS", str(30 * 60 * 1000))),
            max_review_distance_meters=float(os.getenv("G3GEO_QR_MAX_DISTANCE_METERS", "500")),
        )


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Structured logging
    json_format: bool = True

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        """Load configuration from environment variables."""
        return cls(
            level=os.getenv("LOG_LEVEL", "INFO"),
            json_format=os.getenv("LOG_JSON_FORMAT", "true").lower() == "true",
        )


@dataclass
class G3GeoConfig:
    """Master configuration for g3geo."""
    environment: Environment = Environment.DEVELOPMENT

    redis: RedisConfig = field(default_factory=RedisConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    traffic: TrafficConfig = field(default_factory=TrafficConfig)
    privacy: PrivacyConfig = field(default_factory=PrivacyConfig)
    qr: QrConfig = field(default_factory=QrConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls) -> "G3GeoConfig":
        """Load all configuration from environment variables."""
        env_str = os.getenv("ENVIRONMENT", "development").lower()
        try:
            environment = Environment(env_str)
        except ValueError:
            environment = Environment.DEVELOPMENT

        return cls(
            environment=environment,
            redis=RedisConfig.from_env(),
            transport=TransportConfig.from_env(),
            cache=CacheConfig.from_env(),
            traffic=TrafficConfig.from_env(),
            privacy=PrivacyConfig.from_env(),
            qr=QrConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )

    def validate(self) -> Dict[str, Any]:
        """
        Validate configuration and return any warnings/errors.

        Returns:
            Dictionary with 'valid' boolean and 'messages' list
        """
        messages = []
        valid = True

        if self.cache.persistence not in ("memory", "redis"):
            messages.append(f"ERROR: Unknown persistence backend '{self.cache.persistence}'")
            valid = False

        if self.cache.persistence == "redis" and not self.redis.host:
            messages.append("ERROR: Redis persistence selected but no Redis host configured")
            valid = False

        topics = (self.transport.topic_hazard, self.transport.topic_traffic, self.transport.topic_review)
        if len(set(topics)) != len(topics):
            messages.append("ERROR: Hazard, traffic and review topics must be distinct")
            valid = False

        if self.qr.replay_max_age_ms < self.qr.validity_duration_ms:
            messages.append("ERROR: Replay guard max age is shorter than QR validity")
            valid = False

        if self.environment == Environment.PRODUCTION:
            if not self.transport.relay_url:
                messages.append("WARNING: No relay URL configured in production")
            if not self.privacy.location_obfuscation:
                messages.append("WARNING: Location obfuscation disabled in production")

        return {"valid": valid, "messages": messages}
