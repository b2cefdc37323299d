import pytest
import structlog

from cipherroom.relay.coordinator import SessionCoordinator
from cipherroom.relay.ratelimit import RateLimiter
from cipherroom.relay.sessions import SessionRegistry

class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float):
        self.t += seconds

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def logger():
    return structlog.get_logger()

@pytest.fixture
def registry(logger, clock):
    return SessionRegistry(logger, clock=clock)

@pytest.fixture
def limiter(logger, clock):
    return RateLimiter(logger, clock=clock)

@pytest.fixture
def coordinator(registry, limiter, logger):
    return SessionCoordinator(registry, limiter, logger)
