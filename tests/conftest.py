import pytest

from core.config import Settings
from core.registry import PendingEntry
from core.relay import Relay
from fakes import PAY_TO, FakeAdapter, FakeClock, FakeFacilitator, FakeWorker


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        public_base_url="https://relay.test",
        pay_to=PAY_TO,
        delivery_timeout=0.05,
        delivery_retry_delay=0.01,
    )


@pytest.fixture
def facilitator():
    return FakeFacilitator()


@pytest.fixture
def worker():
    return FakeWorker()


@pytest.fixture
def relay(settings, facilitator, worker, clock):
    relay = Relay(settings, facilitator=facilitator, worker=worker, clock=clock)
    relay.attach(FakeAdapter("telegram"))
    relay.attach(FakeAdapter("discord"))
    return relay


@pytest.fixture
def register(relay, clock):
    """Put a pending entry straight into a platform registry."""

    def _register(token="42:1:abc", *, platform="telegram", parameters=None, prompt_message_id=None, ttl=1800):
        entry = PendingEntry(
            token=token,
            platform=platform,
            conversation_id="42",
            parameters=parameters if parameters is not None else {"lookbackMinutes": 60},
            created_at=clock(),
            expires_at=clock() + ttl,
            prompt_message_id=prompt_message_id,
        )
        relay.pending[platform].put(token, entry)
        return entry

    return _register
