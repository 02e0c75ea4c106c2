"""
g3geo Traffic Broadcast Coordinator

Main orchestrator for hazard and traffic reports on one peer.

Pipeline for a local report:
    1. Obfuscate the location (medium for traffic, high for hazards)
    2. Cache it in the regional cache
    3. Persist (hazards only)
    4. Emit to the session server, notify local listeners
    5. Sign and publish on the P2P hazard topic (hazards only)

Pipeline for a remote report:
    decode -> validate (fields, expiry, signature) -> project -> cache -> persist

Every network step is best effort: failures are logged and the local cache
stays authoritative for queries.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from .config import G3GeoConfig
from .core.codec import (
    KeyPair,
    decode_report,
    encode_report,
    generate_keypair,
    generate_report_id,
    report_ttl_ms,
    sign_report,
)
from .core.persistence import HazardStore, MemoryHazardStore, RedisHazardStore
from .core.proximity import midpoint
from .core.region_cache import GeoRegionCache
from .core.validation import GeoReportValidator
from .errors import MalformedPayload, PersistenceFailure
from .models import (
    GeoLocation,
    GeoReportType,
    HazardData,
    HazardReport,
    HazardSeverity,
    HazardType,
    PrivacyLevel,
    RouteSegment,
    RouteTraffic,
    SignedHazardReport,
    SignedTrafficReport,
    StoredHazard,
    TrafficData,
    TrafficIncident,
    TrafficObservation,
    TrafficSample,
    TravelDirection,
    now_ms,
)
from .privacy.obfuscator import PrivacyObfuscator
from .transport.base import P2PTransport, SessionChannel, best_effort, dispatch
from .transport.http_relay import HttpRelayTransport


logger = logging.getLogger(__name__)


MINUTE_MS = 60 * 1000
TRAFFIC_SAMPLE_TTL_MS = 5 * MINUTE_MS

INCIDENT_SEVERITY: Dict[HazardType, float] = {
    HazardType.ACCIDENT: 0.8,
    HazardType.POLICE: 0.4,
}
DEFAULT_INCIDENT_SEVERITY = 0.5

HAZARD_DESCRIPTIONS: Dict[HazardType, str] = {
    HazardType.POLICE: "Police reported ahead",
    HazardType.ACCIDENT: "Accident reported",
    HazardType.SPEED_CAMERA: "Speed camera ahead",
}
DEFAULT_HAZARD_DESCRIPTION = "Hazard reported"

# Confidence assumed for hazards learned from signed P2P reports
SEVERITY_CONFIDENCE: Dict[HazardSeverity, float] = {
    HazardSeverity.LOW: 0.3,
    HazardSeverity.MEDIUM: 0.55,
    HazardSeverity.HIGH: 0.8,
    HazardSeverity.CRITICAL: 0.95,
}

VERIFIED_THRESHOLD = 2

ObservationProvider = Callable[[], Optional[TrafficObservation]]
Listener = Callable[[Any], Any]


# =============================================================================
# PURE HELPERS
# =============================================================================

def congestion_from_speed(speed: float, free_flow_speed: float) -> float:
    """Congestion level (0 free flow, 1 stopped) from the speed ratio."""
    ratio = speed / free_flow_speed if free_flow_speed > 0 else 0.0
    if ratio >= 0.9:
        return 0.0
    if ratio >= 0.7:
        return 0.25
    if ratio >= 0.5:
        return 0.5
    if ratio >= 0.3:
        return 0.75
    return 1.0


def segment_congestion(average_speed: float, incidents: List[TrafficIncident]) -> float:
    """Congestion for a route segment with live speed data."""
    if average_speed < 20:
        congestion = 0.9
    elif average_speed < 40:
        congestion = 0.6
    elif average_speed < 60:
        congestion = 0.3
    else:
        congestion = 0.1
    for incident in incidents:
        congestion += incident.severity * 0.1
    return min(1.0, congestion)


def severity_from_confidence(confidence: float) -> HazardSeverity:
    if confidence > 0.7:
        return HazardSeverity.HIGH
    if confidence > 0.4:
        return HazardSeverity.MEDIUM
    return HazardSeverity.LOW


def direction_from_heading(heading: float) -> TravelDirection:
    heading = heading % 360
    if heading >= 315 or heading < 45:
        return TravelDirection.NORTHBOUND
    if heading < 135:
        return TravelDirection.EASTBOUND
    if heading < 225:
        return TravelDirection.SOUTHBOUND
    return TravelDirection.WESTBOUND


def hazard_ttl_ms(hazard_type: HazardType, police_minutes: int = 30, default_minutes: int = 60) -> int:
    minutes = police_minutes if hazard_type == HazardType.POLICE else default_minutes
    return minutes * MINUTE_MS


def to_incident(hazard: StoredHazard, distance: float) -> TrafficIncident:
    """Project a cached hazard into a query result."""
    return TrafficIncident(
        id=hazard.id,
        type=hazard.type,
        location=hazard.location,
        severity=INCIDENT_SEVERITY.get(hazard.type, DEFAULT_INCIDENT_SEVERITY),
        description=HAZARD_DESCRIPTIONS.get(hazard.type, DEFAULT_HAZARD_DESCRIPTION),
        timestamp=hazard.timestamp,
        expires_at=hazard.expires_at,
        distance=distance,
        verified=hazard.verification_count > VERIFIED_THRESHOLD,
        verification_count=hazard.verification_count,
    )


def hazard_from_signed(report: SignedHazardReport) -> StoredHazard:
    """Project a verified P2P hazard report into the local cache shape."""
    data = report.data
    expires_at = min(report.expires_at, report.timestamp + report_ttl_ms(GeoReportType.HAZARD))
    if data.expires_at is not None:
        expires_at = min(expires_at, data.expires_at)
    return StoredHazard(
        id=report.id,
        type=data.hazard_type,
        location=report.location,
        timestamp=report.timestamp,
        direction=report.location.heading or 0.0,
        confidence=SEVERITY_CONFIDENCE[data.severity],
        additional_info=data.description or "",
        expires_at=expires_at,
        verification_count=1,
    )


def sample_from_signed(report: SignedTrafficReport) -> TrafficSample:
    """Project a verified P2P traffic report into the local cache shape."""
    return TrafficSample(
        id=report.id,
        location=report.location,
        timestamp=report.timestamp,
        expires_at=min(report.expires_at, report.timestamp + TRAFFIC_SAMPLE_TTL_MS),
        session_id=f"peer_{report.public_key[:12]}",
        data=report.data,
    )


def _new_session_id(now: int) -> str:
    return f"session_{now}_{secrets.token_hex(5)[:9]}"


# =============================================================================
# COORDINATOR
# =============================================================================

class TrafficBroadcastCoordinator:
    """
    Hazard and traffic reporting for a single peer.

    Example:
        coordinator = TrafficBroadcastCoordinator(transport=transport, channel=channel)
        await coordinator.start()

        hazard_id = await coordinator.report_hazard(HazardReport(
            type=HazardType.POLICE, location=here, confidence=0.9,
        ))
        incidents = await coordinator.get_nearby_incidents(here, 1000)

        await coordinator.close()
    """

    def __init__(
        self,
        transport: Optional[P2PTransport] = None,
        channel: Optional[SessionChannel] = None,
        obfuscator: Optional[PrivacyObfuscator] = None,
        hazard_cache: Optional[GeoRegionCache[StoredHazard]] = None,
        traffic_cache: Optional[GeoRegionCache[TrafficSample]] = None,
        store: Optional[HazardStore] = None,
        keypair: Optional[KeyPair] = None,
        clock: Callable[[], int] = now_ms,
        config: Optional[G3GeoConfig] = None,
    ):
        """
        Args:
            transport: P2P pub/sub transport (None disables P2P)
            channel: Session server channel (None disables session events)
            obfuscator: Coordinate fuzzer, built from config when omitted
            hazard_cache: Regional hazard cache
            traffic_cache: Regional traffic sample cache
            store: Hazard persistence backend (in-memory when omitted)
            keypair: Signing key for P2P hazard reports (loaded from the store,
                or generated and persisted there, when omitted)
            clock: Millisecond clock, injectable for tests
            config: Settings; defaults are used when omitted
        """
        self.config = config or G3GeoConfig()
        self._clock = clock
        self._transport = transport
        self._channel = channel

        privacy = self.config.privacy
        self._obfuscator = obfuscator or PrivacyObfuscator(
            default_level=privacy.level,
            enabled=privacy.location_obfuscation,
            cache_max_entries=privacy.cache_max_entries,
            cache_evict_count=privacy.cache_evict_count,
        )

        sweep = self.config.cache.sweep_interval_seconds
        self._hazards: GeoRegionCache[StoredHazard] = hazard_cache or GeoRegionCache(
            name="hazard", clock=clock, sweep_interval_seconds=sweep
        )
        self._traffic: GeoRegionCache[TrafficSample] = traffic_cache or GeoRegionCache(
            name="traffic", clock=clock, sweep_interval_seconds=sweep
        )
        self._store = store or MemoryHazardStore()
        self._keypair = keypair or generate_keypair()
        self._keypair_injected = keypair is not None
        self._validator = GeoReportValidator(clock=clock)

        self._listeners: Dict[str, List[Listener]] = {}
        self._session_id = _new_session_id(clock())
        self._periodic_task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: G3GeoConfig,
        channel: Optional[SessionChannel] = None,
        **kwargs,
    ) -> "TrafficBroadcastCoordinator":
        """
        Build a coordinator with backends chosen by configuration.

        Uses Redis persistence when `cache.persistence == "redis"` and the
        HTTP relay transport when `transport.relay_url` is set.
        """
        if "store" not in kwargs and config.cache.persistence == "redis":
            kwargs["store"] = RedisHazardStore(
                redis_url=config.redis.url,
                storage_key=config.cache.storage_key,
                keys_storage_key=config.cache.keys_storage_key,
                max_connections=config.redis.max_connections,
            )
        if "transport" not in kwargs and config.transport.relay_url:
            kwargs["transport"] = HttpRelayTransport(
                config.transport.relay_url,
                peer_id=config.transport.peer_id,
                timeout_seconds=config.transport.relay_timeout_seconds,
                poll_interval_seconds=config.transport.relay_poll_interval_seconds,
            )
        return cls(channel=channel, config=config, **kwargs)

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def public_key_b64(self) -> str:
        return self._keypair.public_key_b64

    @property
    def hazard_cache(self) -> GeoRegionCache[StoredHazard]:
        return self._hazards

    @property
    def traffic_cache(self) -> GeoRegionCache[TrafficSample]:
        return self._traffic

    def is_connected(self) -> bool:
        return self._channel is not None and self._channel.connected

    def stats(self) -> Dict[str, Any]:
        return {
            "hazards": len(self._hazards),
            "traffic_samples": len(self._traffic),
            "hazard_regions": self._hazards.bucket_count,
            "traffic_regions": self._traffic.bucket_count,
            "session_id": self._session_id,
            "connected": self.is_connected(),
            "periodic_reporting": self._periodic_task is not None,
        }

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Load persisted hazards, hook up inbound handlers and start sweeps."""
        if self._started:
            return

        try:
            persisted = await self._store.load()
            loaded = self._hazards.load(persisted)
            logger.info(f"Loaded {loaded} persisted hazards ({len(persisted) - loaded} expired)")
        except PersistenceFailure as e:
            logger.warning(f"Could not load persisted hazards, starting empty: {e}")

        if not self._keypair_injected:
            await self._load_identity()

        if self._channel is not None:
            self._channel.on("hazard_broadcast", self._on_hazard_broadcast)
            self._channel.on("hazard_verified", self._on_hazard_verified)
            self._channel.on("traffic_update", self._on_traffic_update)
            self._channel.on("nearby_hazards", self._on_nearby_hazards)

        if self._transport is not None:
            if isinstance(self._transport, HttpRelayTransport) and not self._transport.is_initialized():
                await self._transport.connect()
            if self._transport.is_initialized():
                await self._transport.subscribe(
                    self.config.transport.topic_for(GeoReportType.HAZARD), self._on_hazard_message
                )
                await self._transport.subscribe(
                    self.config.transport.topic_for(GeoReportType.TRAFFIC_SPEED), self._on_traffic_message
                )
            else:
                logger.info("P2P transport not initialized, P2P reports disabled")

        self._hazards.start()
        self._traffic.start()
        self._started = True
        logger.info(f"Traffic coordinator started (session {self._session_id})")

    async def _load_identity(self) -> None:
        """Reuse the persisted reporting keypair, or persist the generated one."""
        try:
            stored = await self._store.load_keypair()
        except PersistenceFailure as e:
            logger.warning(f"Could not load reporting keypair, using an ephemeral one: {e}")
            return

        if stored is not None:
            self._keypair = stored
            logger.info(f"Loaded reporting identity {stored.public_key_b64[:12]}")
            return

        try:
            await self._store.save_keypair(self._keypair)
        except PersistenceFailure as e:
            logger.warning(f"Could not persist reporting keypair: {e}")

    async def close(self) -> None:
        """Stop timers and release backends."""
        await self.stop_periodic_reporting()
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._pending.clear()

        await self._hazards.close()
        await self._traffic.close()
        await self._store.close()
        if self._transport is not None:
            await self._transport.close()
        self._started = False
        logger.info("Traffic coordinator closed")

    # =========================================================================
    # LISTENERS
    # =========================================================================

    def subscribe(self, event: str, callback: Listener) -> Callable[[], None]:
        """
        Register a local listener.

        Returns:
            A function that removes the listener
        """
        self._listeners.setdefault(event, []).append(callback)

        def unsubscribe() -> None:
            listeners = self._listeners.get(event, [])
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    async def _notify(self, event: str, data: Any) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                await dispatch(callback, data)
            except Exception as e:
                logger.error(f"Listener for {event} failed: {e}", exc_info=True)

    # =========================================================================
    # NETWORK HELPERS
    # =========================================================================

    async def _emit(self, event: str, payload: Any) -> bool:
        if not self.is_connected():
            return False
        result = await best_effort(self._channel.emit(event, payload), f"emit {event}")
        return result.ok

    def _emit_in_background(self, event: str, payload: Any) -> None:
        if not self.is_connected():
            return
        task = asyncio.get_running_loop().create_task(self._emit(event, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self) -> None:
        try:
            await self._store.save(self._hazards.entries())
        except PersistenceFailure as e:
            logger.warning(f"Hazard persistence failed, continuing in memory: {e}")

    # =========================================================================
    # TRAFFIC
    # =========================================================================

    async def report_traffic(self, observation: TrafficObservation) -> TrafficSample:
        """Cache and share a speed observation from this vehicle."""
        now = self._clock()
        location = self._obfuscator.obfuscate(observation.location, PrivacyLevel.MEDIUM)
        free_flow = observation.free_flow_speed or self.config.traffic.free_flow_speed_kmh

        sample = TrafficSample(
            id=generate_report_id(GeoReportType.TRAFFIC_SPEED, now),
            location=location,
            timestamp=observation.timestamp,
            expires_at=observation.timestamp + TRAFFIC_SAMPLE_TTL_MS,
            session_id=self._session_id,
            road_type=observation.road_type,
            confidence=observation.confidence,
            data=TrafficData(
                speed=observation.speed,
                free_flow_speed=free_flow,
                congestion_level=congestion_from_speed(observation.speed, free_flow),
                direction=observation.heading,
            ),
        )
        self._traffic.insert(sample)

        await self._emit("traffic_report", sample.to_wire())
        await self._notify("traffic_report", sample)
        return sample

    def _traffic_near(self, center: GeoLocation, radius_meters: float) -> List[TrafficSample]:
        return [sample for sample, _ in self._traffic.query(center, radius_meters)]

    # =========================================================================
    # HAZARDS
    # =========================================================================

    async def report_hazard(self, report: HazardReport) -> str:
        """
        Report a hazard seen by this driver.

        Returns:
            The new hazard id
        """
        traffic = self.config.traffic
        location = self._obfuscator.obfuscate(report.location, PrivacyLevel.HIGH)
        hazard = StoredHazard(
            id=generate_report_id(GeoReportType.HAZARD, report.timestamp),
            type=report.type,
            location=location,
            timestamp=report.timestamp,
            direction=report.direction,
            confidence=report.confidence,
            additional_info=report.additional_info,
            expires_at=self._clock() + hazard_ttl_ms(
                report.type,
                traffic.police_hazard_ttl_minutes,
                traffic.default_hazard_ttl_minutes,
            ),
            verification_count=1,
        )

        self._hazards.insert(hazard)
        await self._persist()
        await self._emit("hazard_report", hazard.to_wire())
        await self._notify("hazard_report", hazard)
        await self._publish_hazard(hazard)

        logger.info(
            f"Reported {hazard.type.value} hazard {hazard.id}",
            extra={"report_id": hazard.id, "report_type": GeoReportType.HAZARD.value},
        )
        return hazard.id

    async def _publish_hazard(self, hazard: StoredHazard) -> bool:
        if self._transport is None or not self._transport.is_initialized():
            logger.debug("P2P not available, skipping hazard broadcast")
            return False

        location = hazard.location.model_copy(update={
            "timestamp": hazard.timestamp,
            "heading": hazard.direction,
        })
        data = HazardData(
            hazard_type=hazard.type,
            severity=severity_from_confidence(hazard.confidence),
            description=hazard.additional_info or None,
            direction=direction_from_heading(hazard.direction),
            expires_at=hazard.expires_at,
        )
        signed = sign_report(
            GeoReportType.HAZARD,
            location,
            data,
            self._keypair.private_key,
            clock=self._clock,
        )
        topic = self.config.transport.topic_for(GeoReportType.HAZARD)
        result = await best_effort(
            self._transport.publish(topic, encode_report(signed)), "publish hazard"
        )
        if result:
            logger.info(
                f"Hazard broadcast via P2P: {signed.id}",
                extra={"report_id": signed.id, "topic": topic},
            )
        return result.ok

    async def get_nearby_incidents(
        self, location: GeoLocation, radius_meters: float
    ) -> List[TrafficIncident]:
        """
        Cached hazards within the radius, nearest first.

        Also asks the session server for hazards in the area; its reply
        arrives later as `nearby_hazards` and is merged into the cache.
        """
        self._emit_in_background(
            "get_nearby_hazards",
            {"location": location.to_wire(), "radius": radius_meters},
        )
        self._hazards.sweep()
        self._traffic.sweep()
        return self._incidents_near(location, radius_meters)

    def _incidents_near(self, location: GeoLocation, radius_meters: float) -> List[TrafficIncident]:
        return [
            to_incident(hazard, distance)
            for hazard, distance in self._hazards.query(location, radius_meters)
        ]

    async def verify_incident(self, incident_id: str) -> Optional[StoredHazard]:
        """
        Corroborate a cached hazard.

        Returns:
            The updated hazard, or None if it is not cached
        """
        hazard = self._hazards.extend_on_corroboration(
            incident_id, self.config.cache.corroboration_bonus_ms
        )
        if hazard is None:
            logger.debug(f"Cannot verify unknown incident {incident_id}")
            return None

        await self._persist()
        await self._emit("hazard_verify", {"hazardId": incident_id})
        await self._notify(
            "hazard_verified", {"id": incident_id, "count": hazard.verification_count}
        )
        return hazard

    # =========================================================================
    # ROUTES
    # =========================================================================

    async def get_route_traffic(self, points: List[GeoLocation]) -> RouteTraffic:
        """
        Aggregate incidents and live speeds along a route.

        The route is split into about `route_sample_segments` segments; each
        is judged by what lies within `route_radius_meters` of its midpoint.
        Only the local cache is consulted.
        """
        traffic = self.config.traffic
        radius = traffic.route_radius_meters
        stride = max(1, len(points) // traffic.route_sample_segments)

        self._hazards.sweep()
        self._traffic.sweep()

        segments: List[RouteSegment] = []
        for i in range(0, len(points) - 1, stride):
            start = points[i]
            end = points[min(i + stride, len(points) - 1)]
            center = midpoint(start, end)

            incidents = self._incidents_near(center, radius)
            samples = self._traffic_near(center, radius)

            if samples:
                speed = sum(s.data.speed for s in samples) / len(samples)
                congestion = segment_congestion(speed, incidents)
            else:
                speed = None
                congestion = 0.3 if incidents else 0.0

            segments.append(RouteSegment(
                start=start,
                end=end,
                speed=speed,
                congestion=congestion,
                incidents=incidents,
                has_data=bool(samples),
            ))

        with_data = [s.speed for s in segments if s.has_data]
        return RouteTraffic(
            segments=segments,
            average_speed=sum(with_data) / len(with_data) if with_data else None,
            congestion_level=(
                sum(s.congestion for s in segments) / len(segments) if segments else 0.0
            ),
            data_available=bool(with_data),
        )

    # =========================================================================
    # PERIODIC REPORTING
    # =========================================================================

    async def report_current_traffic(self, provider: ObservationProvider) -> Optional[TrafficSample]:
        """
        One periodic tick: re-report the provider's latest observation.

        Skipped when there is no observation or the vehicle is slower than
        the minimum reporting speed.
        """
        observation = provider()
        if observation is None:
            return None
        if observation.speed < self.config.traffic.min_speed_for_report_kmh:
            return None

        now = self._clock()
        fresh = observation.model_copy(update={
            "timestamp": now,
            "location": observation.location.model_copy(update={"timestamp": now}),
        })
        return await self.report_traffic(fresh)

    async def _periodic_loop(self, provider: ObservationProvider) -> None:
        interval = self.config.traffic.report_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.report_current_traffic(provider)
            except (ValidationError, MalformedPayload) as e:
                logger.warning(f"Periodic traffic report skipped: {e}")

    def start_periodic_reporting(self, provider: ObservationProvider) -> None:
        """Report the latest observation every `report_interval_seconds`."""
        if self._periodic_task is not None and not self._periodic_task.done():
            self._periodic_task.cancel()
        self._periodic_task = asyncio.get_running_loop().create_task(
            self._periodic_loop(provider)
        )

    async def stop_periodic_reporting(self) -> None:
        if self._periodic_task is None:
            return
        self._periodic_task.cancel()
        try:
            await self._periodic_task
        except asyncio.CancelledError:
            pass
        self._periodic_task = None

    # =========================================================================
    # INBOUND: SESSION CHANNEL
    # =========================================================================

    def _parse_hazard(self, payload: Any) -> Optional[StoredHazard]:
        try:
            return StoredHazard.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Dropping malformed hazard from session server: {e.error_count()} error(s)")
            return None

    async def _on_hazard_broadcast(self, payload: Any) -> None:
        hazard = self._parse_hazard(payload)
        if hazard is None:
            return
        self._hazards.insert(hazard)
        await self._persist()
        await self._notify("hazard_received", hazard)

    async def _on_nearby_hazards(self, payload: Any) -> None:
        if not isinstance(payload, list):
            logger.warning("Dropping nearby_hazards payload that is not a list")
            return
        for item in payload:
            hazard = self._parse_hazard(item)
            if hazard is not None:
                self._hazards.insert(hazard)
        await self._persist()

    async def _on_hazard_verified(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            logger.warning("Dropping malformed hazard_verified payload")
            return
        hazard_id = payload.get("id")
        count = payload.get("count")
        if not isinstance(hazard_id, str) or isinstance(count, bool) or not isinstance(count, int):
            logger.warning("Dropping malformed hazard_verified payload")
            return

        if self._hazards.extend_on_corroboration(
            hazard_id, self.config.cache.corroboration_bonus_ms, count=count
        ) is None:
            return
        await self._persist()
        await self._notify("hazard_verified", {"id": hazard_id, "count": count})

    async def _on_traffic_update(self, payload: Any) -> None:
        try:
            sample = TrafficSample.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Dropping malformed traffic update: {e.error_count()} error(s)")
            return
        self._traffic.insert(sample)
        await self._notify("traffic_update", sample)

    # =========================================================================
    # INBOUND: P2P TOPICS
    # =========================================================================

    def _accept_signed(self, raw: bytes, expected: type):
        try:
            report = decode_report(raw)
        except MalformedPayload as e:
            logger.warning(f"Dropping malformed P2P report: {e}")
            return None

        if not isinstance(report, expected):
            logger.warning(
                f"Dropping {report.type.value} report {report.id} from wrong topic",
                extra={"report_id": report.id, "report_type": report.type.value},
            )
            return None

        validation = self._validator.validate(report)
        if not validation.is_valid:
            logger.warning(
                f"Rejected P2P report {report.id}: {', '.join(validation.errors)}",
                extra={
                    "report_id": report.id,
                    "report_type": report.type.value,
                    "error_kind": validation.error_kind,
                },
            )
            return None
        return report

    async def _on_hazard_message(self, raw: bytes) -> None:
        report = self._accept_signed(raw, SignedHazardReport)
        if report is None:
            return
        hazard = hazard_from_signed(report)
        self._hazards.insert(hazard)
        await self._persist()
        await self._notify("hazard_received", hazard)

    async def _on_traffic_message(self, raw: bytes) -> None:
        report = self._accept_signed(raw, SignedTrafficReport)
        if report is None:
            return
        sample = sample_from_signed(report)
        self._traffic.insert(sample)
        await self._notify("traffic_update", sample)
