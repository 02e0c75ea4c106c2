"""
g3geo Test - Traffic Broadcast Coordinator

Scenario: a driver reports police at (51.5, -0.1). The hazard shows up in
nearby incident queries straight away and is gone 31 minutes later.

Also covers corroboration, P2P propagation between two peers over a
loopback hub, session server events, persistence and route aggregation.
"""

import asyncio
import json
import logging

import pytest

from g3geo.config import G3GeoConfig, TrafficConfig, TransportConfig
from g3geo.coordinator import (
    TrafficBroadcastCoordinator,
    congestion_from_speed,
    direction_from_heading,
    hazard_from_signed,
    hazard_ttl_ms,
    segment_congestion,
    severity_from_confidence,
    to_incident,
)
from g3geo.core.codec import decode_report, encode_report, sign_report, topic_for_type
from g3geo.core.persistence import MemoryHazardStore, RedisHazardStore, dump_hazards
from g3geo.core.proximity import distance_meters
from g3geo.errors import ErrorKind, PersistenceFailure
from g3geo.models import (
    GeoLocation,
    GeoReportType,
    HazardData,
    HazardReport,
    HazardSeverity,
    HazardType,
    PrivacyLevel,
    StoredHazard,
    TrafficData,
    TrafficObservation,
    TrafficSample,
    TravelDirection,
)
from g3geo.privacy.obfuscator import OFFSETS, PrivacyObfuscator
from g3geo.transport.base import LoopbackHub, LoopbackSessionChannel, LoopbackTransport
from g3geo.transport.http_relay import HttpRelayTransport


MINUTE_MS = 60 * 1000
POLICE_SPOT = (51.5, -0.1)


# =============================================================================
# TEST FIXTURES
# =============================================================================

class FailingStore(MemoryHazardStore):
    """Store whose backend is down."""

    async def load(self):
        raise PersistenceFailure("backend down")

    async def save(self, hazards):
        raise PersistenceFailure("backend down")

    async def load_keypair(self):
        raise PersistenceFailure("backend down")

    async def save_keypair(self, keypair):
        raise PersistenceFailure("backend down")


def at(latitude, longitude, clock):
    return GeoLocation(latitude=latitude, longitude=longitude, timestamp=clock())


def hazard_report(clock, hazard_type=HazardType.POLICE, location=POLICE_SPOT, confidence=0.9):
    return HazardReport(
        type=hazard_type,
        location=at(*location, clock),
        timestamp=clock(),
        direction=10.0,
        confidence=confidence,
        additional_info="Speed trap",
    )


def make_peer(hub, peer_id, clock, store=None, config=None):
    return TrafficBroadcastCoordinator(
        transport=LoopbackTransport(hub, peer_id),
        channel=LoopbackSessionChannel(),
        obfuscator=PrivacyObfuscator(session_salt=f"salt-{peer_id}"),
        store=store or MemoryHazardStore(),
        clock=clock,
        config=config,
    )


@pytest.fixture
def hub():
    return LoopbackHub()


@pytest.fixture
async def coordinator(hub, clock):
    peer = make_peer(hub, "peer-a", clock)
    await peer.start()
    yield peer
    await peer.close()


@pytest.fixture
async def remote(hub, clock):
    peer = make_peer(hub, "peer-b", clock)
    await peer.start()
    yield peer
    await peer.close()


# =============================================================================
# SCENARIO
# =============================================================================

class TestPoliceHazardScenario:

    @pytest.mark.asyncio
    async def test_police_hazard_visible_then_expires(self, coordinator, clock):
        hazard_id = await coordinator.report_hazard(hazard_report(clock))
        center = at(*POLICE_SPOT, clock)

        incidents = await coordinator.get_nearby_incidents(center, 1000)

        assert [i.id for i in incidents] == [hazard_id]
        incident = incidents[0]
        assert incident.type == HazardType.POLICE
        assert incident.severity == 0.4
        assert incident.description == "Police reported ahead"
        assert incident.verification_count == 1
        assert not incident.verified
        # Reported location is fuzzed at the high privacy level
        assert incident.distance < 200

        clock.advance(minutes=31)
        assert await coordinator.get_nearby_incidents(center, 1000) == []

    @pytest.mark.asyncio
    async def test_distance_is_zero_at_cached_location(self, coordinator, clock):
        hazard_id = await coordinator.report_hazard(hazard_report(clock))
        cached = coordinator.hazard_cache.find(hazard_id)

        incidents = await coordinator.get_nearby_incidents(cached.location, 1000)

        assert incidents[0].distance == 0.0


# =============================================================================
# HAZARDS
# =============================================================================

class TestReportHazard:

    @pytest.mark.asyncio
    async def test_location_obfuscated_high(self, coordinator, clock):
        hazard_id = await coordinator.report_hazard(hazard_report(clock))
        cached = coordinator.hazard_cache.find(hazard_id)

        assert abs(cached.location.latitude - POLICE_SPOT[0]) <= OFFSETS[PrivacyLevel.HIGH]
        assert abs(cached.location.longitude - POLICE_SPOT[1]) <= OFFSETS[PrivacyLevel.HIGH]

    @pytest.mark.asyncio
    async def test_non_police_lives_an_hour(self, coordinator, clock):
        await coordinator.report_hazard(hazard_report(clock, HazardType.ACCIDENT))
        center = at(*POLICE_SPOT, clock)

        clock.advance(minutes=59)
        incidents = await coordinator.get_nearby_incidents(center, 1000)
        assert incidents[0].severity == 0.8
        assert incidents[0].description == "Accident reported"

        clock.advance(minutes=2)
        assert await coordinator.get_nearby_incidents(center, 1000) == []

    @pytest.mark.asyncio
    async def test_emits_notifies_and_persists(self, coordinator, clock):
        seen = []
        coordinator.subscribe("hazard_report", seen.append)

        hazard_id = await coordinator.report_hazard(hazard_report(clock))

        event, payload = coordinator._channel.emitted[-1]
        assert event == "hazard_report"
        assert payload["id"] == hazard_id
        assert payload["verificationCount"] == 1
        assert [h.id for h in seen] == [hazard_id]
        assert json.loads(coordinator._store.raw)[0]["id"] == hazard_id

    @pytest.mark.asyncio
    async def test_nearby_query_asks_session_server(self, coordinator, clock):
        await coordinator.get_nearby_incidents(at(*POLICE_SPOT, clock), 750)
        await asyncio.sleep(0)

        event, payload = coordinator._channel.emitted[-1]
        assert event == "get_nearby_hazards"
        assert payload["radius"] == 750

    @pytest.mark.asyncio
    async def test_works_without_session_server(self, hub, clock):
        peer = make_peer(hub, "offline", clock)
        peer._channel.set_connected(False)
        await peer.start()

        hazard_id = await peer.report_hazard(hazard_report(clock))

        assert peer.hazard_cache.find(hazard_id) is not None
        assert peer._channel.emitted == []
        await peer.close()

    @pytest.mark.asyncio
    async def test_persistence_failure_is_not_fatal(self, hub, clock):
        peer = make_peer(hub, "no-disk", clock, store=FailingStore())
        await peer.start()

        hazard_id = await peer.report_hazard(hazard_report(clock))

        assert peer.hazard_cache.find(hazard_id) is not None
        await peer.close()


class TestVerifyIncident:

    @pytest.mark.asyncio
    async def test_corroboration_extends_lifetime(self, coordinator, clock):
        hazard_id = await coordinator.report_hazard(hazard_report(clock))
        before = coordinator.hazard_cache.find(hazard_id).expires_at
        verified = []
        coordinator.subscribe("hazard_verified", verified.append)

        hazard = await coordinator.verify_incident(hazard_id)

        assert hazard.verification_count == 2
        assert hazard.expires_at == before + 10 * MINUTE_MS
        assert coordinator._channel.emitted[-1] == ("hazard_verify", {"hazardId": hazard_id})
        assert verified == [{"id": hazard_id, "count": 2}]
        assert json.loads(coordinator._store.raw)[0]["verificationCount"] == 2

    @pytest.mark.asyncio
    async def test_corroborated_police_outlives_base_ttl(self, coordinator, clock):
        hazard_id = await coordinator.report_hazard(hazard_report(clock))
        await coordinator.verify_incident(hazard_id)
        await coordinator.verify_incident(hazard_id)
        center = at(*POLICE_SPOT, clock)

        clock.advance(minutes=45)
        incidents = await coordinator.get_nearby_incidents(center, 1000)

        assert incidents[0].verification_count == 3
        assert incidents[0].verified

        clock.advance(minutes=6)
        assert await coordinator.get_nearby_incidents(center, 1000) == []

    @pytest.mark.asyncio
    async def test_unknown_incident(self, coordinator):
        assert await coordinator.verify_incident("missing") is None


# =============================================================================
# P2P PROPAGATION
# =============================================================================

class TestPeerToPeer:

    @pytest.mark.asyncio
    async def test_hazard_reaches_remote_peer(self, coordinator, remote, clock, hub):
        received = []
        remote.subscribe("hazard_received", received.append)

        await coordinator.report_hazard(hazard_report(clock))

        assert hub.published[-1][0] == topic_for_type(GeoReportType.HAZARD)
        assert len(received) == 1
        hazard = received[0]
        assert hazard.type == HazardType.POLICE
        assert hazard.expires_at == clock() + 30 * MINUTE_MS
        assert hazard.additional_info == "Speed trap"
        incidents = await remote.get_nearby_incidents(hazard.location, 10)
        assert incidents[0].id == hazard.id

    @pytest.mark.asyncio
    async def test_forged_hazard_dropped(self, remote, clock, hub, keypair, other_keypair):
        report = sign_report(
            GeoReportType.HAZARD,
            at(*POLICE_SPOT, clock),
            HazardData(hazard_type=HazardType.DEBRIS, severity=HazardSeverity.LOW),
            keypair.private_key,
            clock=clock,
        )
        forged = report.model_copy(update={"public_key": other_keypair.public_key_b64})
        sender = LoopbackTransport(hub, "mallory")

        await sender.publish(topic_for_type(GeoReportType.HAZARD), encode_report(forged))
        await sender.publish(topic_for_type(GeoReportType.HAZARD), b"not a report")

        assert len(remote.hazard_cache) == 0

    @pytest.mark.asyncio
    async def test_stretched_expiry_dropped(self, remote, clock, hub, keypair):
        report = sign_report(
            GeoReportType.HAZARD,
            at(*POLICE_SPOT, clock),
            HazardData(hazard_type=HazardType.ACCIDENT, severity=HazardSeverity.HIGH),
            keypair.private_key,
            clock=clock,
        )
        stretched = report.model_copy(update={"expires_at": clock() + 1000 * 60 * MINUTE_MS})

        await LoopbackTransport(hub, "x").publish(topic_for_type(GeoReportType.HAZARD), encode_report(stretched))
        clock.advance(minutes=24 * 60)

        assert len(remote.hazard_cache) == 0
        assert await remote.get_nearby_incidents(at(*POLICE_SPOT, clock), 1000) == []

    @pytest.mark.asyncio
    async def test_report_on_wrong_topic_dropped(self, remote, clock, hub, keypair):
        report = sign_report(
            GeoReportType.TRAFFIC_SPEED,
            at(*POLICE_SPOT, clock),
            TrafficData(speed=30.0, congestion_level=0.5),
            keypair.private_key,
            clock=clock,
        )

        await LoopbackTransport(hub, "x").publish(topic_for_type(GeoReportType.HAZARD), encode_report(report))

        assert len(remote.hazard_cache) == 0
        assert len(remote.traffic_cache) == 0

    @pytest.mark.asyncio
    async def test_signed_traffic_cached(self, remote, clock, hub, keypair):
        report = sign_report(
            GeoReportType.TRAFFIC_SPEED,
            at(*POLICE_SPOT, clock),
            TrafficData(speed=30.0, congestion_level=0.5),
            keypair.private_key,
            clock=clock,
        )

        await LoopbackTransport(hub, "x").publish(
            topic_for_type(GeoReportType.TRAFFIC_SPEED), encode_report(report)
        )

        sample = remote.traffic_cache.find(report.id)
        assert sample.data.speed == 30.0
        assert sample.expires_at == clock() + 5 * MINUTE_MS

    @pytest.mark.asyncio
    async def test_uninitialized_transport_skips_publish(self, hub, clock):
        peer = TrafficBroadcastCoordinator(
            transport=LoopbackTransport(hub, "cold", initialized=False), clock=clock,
        )
        await peer.start()

        await peer.report_hazard(hazard_report(clock))

        assert hub.published == []
        await peer.close()

    @pytest.mark.asyncio
    async def test_configured_topics(self, hub, clock):
        config = G3GeoConfig(transport=TransportConfig(topic_hazard="/fleet/hazard/v2"))
        sender = make_peer(hub, "fleet-a", clock, config=config)
        receiver = make_peer(hub, "fleet-b", clock, config=config)
        await sender.start()
        await receiver.start()

        await sender.report_hazard(hazard_report(clock))

        assert hub.published[-1][0] == "/fleet/hazard/v2"
        assert len(receiver.hazard_cache) == 1
        await sender.close()
        await receiver.close()

    @pytest.mark.asyncio
    async def test_rejection_log_carries_report_fields(self, remote, clock, hub, keypair, other_keypair, caplog):
        report = sign_report(
            GeoReportType.HAZARD,
            at(*POLICE_SPOT, clock),
            HazardData(hazard_type=HazardType.DEBRIS, severity=HazardSeverity.LOW),
            keypair.private_key,
            clock=clock,
        )
        forged = report.model_copy(update={"public_key": other_keypair.public_key_b64})

        with caplog.at_level(logging.WARNING, logger="g3geo.coordinator"):
            await LoopbackTransport(hub, "mallory").publish(
                topic_for_type(GeoReportType.HAZARD), encode_report(forged)
            )

        record = next(r for r in caplog.records if r.getMessage().startswith("Rejected P2P report"))
        assert record.report_id == report.id
        assert record.report_type == "HAZARD"
        assert record.error_kind == ErrorKind.SIGNATURE_INVALID


# =============================================================================
# SESSION SERVER EVENTS
# =============================================================================

class TestSessionEvents:

    def stored(self, clock, hazard_id="srv-1", count=1):
        return StoredHazard(
            id=hazard_id,
            type=HazardType.CONSTRUCTION,
            location=at(51.51, -0.12, clock),
            timestamp=clock(),
            expires_at=clock() + 60 * MINUTE_MS,
            verification_count=count,
        )

    @pytest.mark.asyncio
    async def test_hazard_broadcast(self, coordinator, clock):
        received = []
        coordinator.subscribe("hazard_received", received.append)

        await coordinator._channel.receive("hazard_broadcast", self.stored(clock).to_wire())

        assert coordinator.hazard_cache.find("srv-1") is not None
        assert [h.id for h in received] == ["srv-1"]
        assert json.loads(coordinator._store.raw)[0]["id"] == "srv-1"

    @pytest.mark.asyncio
    async def test_nearby_hazards(self, coordinator, clock):
        payload = [self.stored(clock, "a").to_wire(), {"id": "broken"}, self.stored(clock, "b").to_wire()]

        await coordinator._channel.receive("nearby_hazards", payload)

        assert {h.id for h in coordinator.hazard_cache} == {"a", "b"}

    @pytest.mark.asyncio
    async def test_hazard_verified_sets_peer_count(self, coordinator, clock):
        hazard = self.stored(clock)
        await coordinator._channel.receive("hazard_broadcast", hazard.to_wire())

        await coordinator._channel.receive("hazard_verified", {"id": "srv-1", "count": 5})

        cached = coordinator.hazard_cache.find("srv-1")
        assert cached.verification_count == 5
        assert cached.expires_at == hazard.expires_at + 10 * MINUTE_MS

    @pytest.mark.asyncio
    async def test_traffic_update(self, coordinator, clock):
        sample = TrafficSample(
            id="t-1",
            location=at(51.5, -0.1, clock),
            timestamp=clock(),
            expires_at=clock() + 5 * MINUTE_MS,
            session_id="session_x",
            data=TrafficData(speed=12.0, congestion_level=0.9),
        )

        await coordinator._channel.receive("traffic_update", sample.to_wire())

        assert coordinator.traffic_cache.find("t-1").data.speed == 12.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event,payload", [
        ("hazard_broadcast", {"id": "x"}),
        ("hazard_broadcast", "garbage"),
        ("nearby_hazards", {"not": "a list"}),
        ("hazard_verified", {"id": "srv-1"}),
        ("hazard_verified", {"id": "srv-1", "count": True}),
        ("traffic_update", {"id": "t"}),
    ])
    async def test_malformed_events_dropped(self, coordinator, event, payload):
        await coordinator._channel.receive(event, payload)

        assert len(coordinator.hazard_cache) == 0
        assert len(coordinator.traffic_cache) == 0


# =============================================================================
# PERSISTENCE ON START
# =============================================================================

class TestStartup:

    @pytest.mark.asyncio
    async def test_loads_persisted_hazards_skipping_expired(self, hub, clock):
        def stored(hazard_id, expires_in):
            return StoredHazard(
                id=hazard_id,
                type=HazardType.WEATHER,
                location=at(51.5, -0.1, clock),
                timestamp=clock(),
                expires_at=clock() + expires_in,
            )

        store = MemoryHazardStore(initial=dump_hazards([stored("live", MINUTE_MS), stored("dead", -1)]))
        peer = make_peer(hub, "restart", clock, store=store)

        await peer.start()

        assert [h.id for h in peer.hazard_cache] == ["live"]
        await peer.close()

    @pytest.mark.asyncio
    async def test_unreadable_store_starts_empty(self, hub, clock):
        peer = make_peer(hub, "broken", clock, store=FailingStore())

        await peer.start()

        assert len(peer.hazard_cache) == 0
        await peer.close()

    @pytest.mark.asyncio
    async def test_reporting_identity_survives_restart(self, hub, clock):
        store = MemoryHazardStore()
        first = make_peer(hub, "before", clock, store=store)
        await first.start()
        identity = first.public_key_b64
        await first.close()

        second = make_peer(hub, "after", clock, store=store)
        await second.start()
        await second.report_hazard(hazard_report(clock))

        assert second.public_key_b64 == identity
        assert decode_report(hub.published[-1][2]).public_key == identity
        await second.close()

    @pytest.mark.asyncio
    async def test_injected_keypair_is_not_replaced(self, hub, clock, keypair, other_keypair):
        store = MemoryHazardStore()
        await store.save_keypair(other_keypair)
        peer = TrafficBroadcastCoordinator(store=store, keypair=keypair, clock=clock)

        await peer.start()

        assert peer.public_key_b64 == keypair.public_key_b64
        assert (await store.load_keypair()).public_key_b64 == other_keypair.public_key_b64
        await peer.close()

    @pytest.mark.asyncio
    async def test_unreadable_keypair_falls_back_to_ephemeral(self, hub, clock):
        peer = make_peer(hub, "keyless", clock, store=FailingStore())
        generated = peer.public_key_b64

        await peer.start()

        assert peer.public_key_b64 == generated
        await peer.close()


# =============================================================================
# TRAFFIC
# =============================================================================

class TestTraffic:

    def observation(self, clock, speed=30.0, free_flow=None):
        return TrafficObservation(
            location=at(51.5, -0.1, clock),
            speed=speed,
            timestamp=clock(),
            road_type="primary",
            confidence=0.9,
            heading=90.0,
            free_flow_speed=free_flow,
        )

    @pytest.mark.asyncio
    async def test_report_traffic(self, coordinator, clock):
        seen = []
        coordinator.subscribe("traffic_report", seen.append)

        sample = await coordinator.report_traffic(self.observation(clock))

        assert sample.session_id == coordinator.session_id
        assert sample.encrypted is True
        assert sample.expires_at == clock() + 5 * MINUTE_MS
        assert sample.data.congestion_level == 0.5
        assert sample.data.direction == 90.0
        assert abs(sample.location.latitude - 51.5) <= OFFSETS[PrivacyLevel.MEDIUM]
        assert coordinator.traffic_cache.find(sample.id) is sample
        assert coordinator._channel.emitted[-1][0] == "traffic_report"
        assert seen == [sample]

    @pytest.mark.asyncio
    async def test_samples_expire_after_five_minutes(self, coordinator, clock):
        await coordinator.report_traffic(self.observation(clock))

        clock.advance(minutes=5)
        await coordinator.get_nearby_incidents(at(51.5, -0.1, clock), 100)

        assert len(coordinator.traffic_cache) == 0

    @pytest.mark.asyncio
    async def test_periodic_tick_respects_min_speed(self, coordinator, clock):
        slow = self.observation(clock, speed=3.0)

        assert await coordinator.report_current_traffic(lambda: slow) is None
        assert await coordinator.report_current_traffic(lambda: None) is None

    @pytest.mark.asyncio
    async def test_periodic_tick_refreshes_timestamp(self, coordinator, clock):
        stale = self.observation(clock, speed=40.0)
        clock.advance(minutes=3)

        sample = await coordinator.report_current_traffic(lambda: stale)

        assert sample.timestamp == clock()
        assert sample.location.timestamp == clock()

    @pytest.mark.asyncio
    async def test_periodic_reporting_loop(self, hub, clock):
        config = G3GeoConfig(traffic=TrafficConfig(report_interval_seconds=0.01))
        peer = make_peer(hub, "driver", clock, config=config)
        await peer.start()
        obs = self.observation(clock, speed=40.0)

        peer.start_periodic_reporting(lambda: obs)
        assert peer.stats()["periodic_reporting"]
        await asyncio.sleep(0.05)
        await peer.stop_periodic_reporting()

        assert len(peer.traffic_cache) >= 1
        assert not peer.stats()["periodic_reporting"]
        await peer.close()


# =============================================================================
# ROUTES
# =============================================================================

def route(clock, count=11, step=0.001):
    return [at(51.5 + i * step, -0.1, clock) for i in range(count)]


def cached_sample(sample_id, latitude, speed, clock):
    return TrafficSample(
        id=sample_id,
        location=at(latitude, -0.1, clock),
        timestamp=clock(),
        expires_at=clock() + 5 * MINUTE_MS,
        session_id="s",
        data=TrafficData(speed=speed, congestion_level=0.5),
    )


def cached_hazard(hazard_id, latitude, hazard_type, clock):
    return StoredHazard(
        id=hazard_id,
        type=hazard_type,
        location=at(latitude, -0.1, clock),
        timestamp=clock(),
        expires_at=clock() + 60 * MINUTE_MS,
    )


class TestRouteTraffic:

    @pytest.mark.asyncio
    async def test_no_data(self, coordinator, clock):
        result = await coordinator.get_route_traffic(route(clock))

        assert len(result.segments) == 10
        assert not result.data_available
        assert result.average_speed is None
        assert result.congestion_level == 0.0
        assert all(not s.has_data and s.speed is None for s in result.segments)

    @pytest.mark.asyncio
    async def test_incident_without_speed_data(self, coordinator, clock):
        coordinator.hazard_cache.insert(cached_hazard("h", 51.5005, HazardType.DEBRIS, clock))

        result = await coordinator.get_route_traffic(route(clock))

        first = result.segments[0]
        assert not first.has_data
        assert first.congestion == 0.3
        assert [i.id for i in first.incidents] == ["h"]
        assert result.segments[-1].congestion == 0.0
        assert not result.data_available

    @pytest.mark.asyncio
    async def test_speed_and_incidents(self, coordinator, clock):
        coordinator.traffic_cache.insert(cached_sample("t1", 51.5005, 30.0, clock))
        coordinator.traffic_cache.insert(cached_sample("t2", 51.5005, 10.0, clock))
        coordinator.hazard_cache.insert(cached_hazard("h", 51.5005, HazardType.ACCIDENT, clock))

        result = await coordinator.get_route_traffic(route(clock))

        first = result.segments[0]
        assert first.has_data
        assert first.speed == pytest.approx(20.0)
        assert first.congestion == pytest.approx(0.6 + 0.08)
        assert not result.segments[-1].has_data
        assert result.data_available
        assert result.average_speed == pytest.approx(20.0)

    @pytest.mark.asyncio
    async def test_stride_for_long_route(self, coordinator, clock):
        result = await coordinator.get_route_traffic(route(clock, count=25, step=0.0001))

        assert len(result.segments) == 12
        assert result.segments[-1].end == route(clock, count=25, step=0.0001)[-1]

    @pytest.mark.asyncio
    async def test_degenerate_routes(self, coordinator, clock):
        for points in ([], route(clock, count=1)):
            result = await coordinator.get_route_traffic(points)
            assert result.segments == []
            assert result.congestion_level == 0.0
            assert not result.data_available


# =============================================================================
# LISTENERS, STATS, WIRING
# =============================================================================

class TestCoordinatorMisc:

    @pytest.mark.asyncio
    async def test_unsubscribe(self, coordinator, clock):
        seen = []
        unsubscribe = coordinator.subscribe("hazard_report", seen.append)
        unsubscribe()
        unsubscribe()

        await coordinator.report_hazard(hazard_report(clock))

        assert seen == []

    @pytest.mark.asyncio
    async def test_listener_errors_are_contained(self, coordinator, clock):
        def broken(_):
            raise RuntimeError("listener bug")

        seen = []
        coordinator.subscribe("hazard_report", broken)
        coordinator.subscribe("hazard_report", seen.append)

        await coordinator.report_hazard(hazard_report(clock))

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_stats(self, coordinator, clock):
        await coordinator.report_hazard(hazard_report(clock))
        await coordinator.report_traffic(TrafficObservation(location=at(40.0, -3.7, clock), speed=50, timestamp=clock()))

        stats = coordinator.stats()

        assert stats["hazards"] == 1
        assert stats["traffic_samples"] == 1
        assert stats["session_id"].startswith("session_")
        assert stats["connected"]

    def test_from_config_selects_backends(self):
        config = G3GeoConfig()
        config.cache.persistence = "redis"
        config.transport.relay_url = "http://relay.test"

        peer = TrafficBroadcastCoordinator.from_config(config)

        assert isinstance(peer._store, RedisHazardStore)
        assert isinstance(peer._transport, HttpRelayTransport)

    def test_from_config_defaults(self):
        peer = TrafficBroadcastCoordinator.from_config(G3GeoConfig())

        assert isinstance(peer._store, MemoryHazardStore)
        assert peer._transport is None


# =============================================================================
# PURE HELPERS
# =============================================================================

class TestHelpers:

    @pytest.mark.parametrize("speed,expected", [
        (50, 0.0), (45, 0.0), (40, 0.25), (35, 0.25), (25, 0.5), (15, 0.75), (10, 1.0), (0, 1.0),
    ])
    def test_congestion_from_speed(self, speed, expected):
        assert congestion_from_speed(speed, 50) == expected

    def test_congestion_without_free_flow(self):
        assert congestion_from_speed(30, 0) == 1.0

    @pytest.mark.parametrize("speed,expected", [(10, 0.9), (30, 0.6), (50, 0.3), (80, 0.1)])
    def test_segment_congestion(self, speed, expected):
        assert segment_congestion(speed, []) == expected

    def test_segment_congestion_capped(self, clock):
        incident = to_incident(cached_hazard("h", 51.5, HazardType.ACCIDENT, clock), 0.0)
        assert segment_congestion(10, [incident] * 5) == 1.0

    @pytest.mark.parametrize("confidence,expected", [
        (0.9, HazardSeverity.HIGH), (0.7, HazardSeverity.MEDIUM), (0.5, HazardSeverity.MEDIUM),
        (0.4, HazardSeverity.LOW), (0.0, HazardSeverity.LOW),
    ])
    def test_severity_from_confidence(self, confidence, expected):
        assert severity_from_confidence(confidence) == expected

    @pytest.mark.parametrize("heading,expected", [
        (0, TravelDirection.NORTHBOUND), (44.9, TravelDirection.NORTHBOUND), (315, TravelDirection.NORTHBOUND),
        (45, TravelDirection.EASTBOUND), (134, TravelDirection.EASTBOUND),
        (135, TravelDirection.SOUTHBOUND), (224, TravelDirection.SOUTHBOUND),
        (225, TravelDirection.WESTBOUND), (314, TravelDirection.WESTBOUND),
    ])
    def test_direction_from_heading(self, heading, expected):
        assert direction_from_heading(heading) == expected

    def test_hazard_ttl(self):
        assert hazard_ttl_ms(HazardType.POLICE) == 30 * MINUTE_MS
        assert hazard_ttl_ms(HazardType.SPEED_CAMERA) == 60 * MINUTE_MS

    def test_incident_projection(self, clock):
        hazard = cached_hazard("h", 51.5, HazardType.SPEED_CAMERA, clock)
        hazard.verification_count = 3

        incident = to_incident(hazard, 12.5)

        assert incident.severity == 0.5
        assert incident.description == "Speed camera ahead"
        assert incident.verified
        assert incident.distance == 12.5
        assert to_incident(cached_hazard("w", 51.5, HazardType.WEATHER, clock), 0).description == "Hazard reported"

    def test_signed_hazard_lifetime_is_clamped(self, clock, keypair):
        report = sign_report(
            GeoReportType.HAZARD,
            at(*POLICE_SPOT, clock),
            HazardData(
                hazard_type=HazardType.ACCIDENT,
                severity=HazardSeverity.HIGH,
                expires_at=clock() + 500 * 60 * MINUTE_MS,
            ),
            keypair.private_key,
            clock=clock,
        )
        stretched = report.model_copy(update={"expires_at": clock() + 1000 * 60 * MINUTE_MS})

        assert hazard_from_signed(stretched).expires_at == report.timestamp + 60 * MINUTE_MS
