"""
g3geo - pytest Configuration

Shared fixtures and configuration for all tests.
"""

import pytest


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires external services)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection based on markers."""
    # Skip integration tests by default unless explicitly requested
    if not config.getoption("--run-integration", default=False):
        skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="run integration tests that require external services (Redis, relay)"
    )


# =============================================================================
# CLOCK
# =============================================================================

# 2024-01-01T00:00:00Z
BASE_TIME_MS = 1_704_067_200_000


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start_ms: int = BASE_TIME_MS):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 0, *, seconds: float = 0, minutes: float = 0) -> int:
        self.now += int(ms + seconds * 1000 + minutes * 60 * 1000)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


# =============================================================================
# DOMAIN FIXTURES
# =============================================================================

@pytest.fixture
def sample_location(clock):
    """Create a sample GeoLocation for testing (London, 51.5074, -0.1278)."""
    from g3geo.models import GeoLocation
    return GeoLocation(latitude=51.5074, longitude=-0.1278, timestamp=clock())


@pytest.fixture
def business_location(clock):
    """Create a business location for QR tests (central Paris)."""
    from g3geo.models import GeoLocation
    return GeoLocation(latitude=48.8566, longitude=2.3522, timestamp=clock())


@pytest.fixture
def keypair():
    from g3geo.core.codec import generate_keypair
    return generate_keypair()


@pytest.fixture
def other_keypair():
    from g3geo.core.codec import generate_keypair
    return generate_keypair()


# =============================================================================
# CONFIGURATION FIXTURES
# =============================================================================

@pytest.fixture
def test_config():
    """Create a test configuration."""
    from g3geo.config import G3GeoConfig, Environment

    return G3GeoConfig(
        environment=Environment.DEVELOPMENT,
    )
