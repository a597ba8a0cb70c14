"""Shared fixtures for bounty_sync tests."""

from __future__ import annotations

import pytest
from pytest_metadata.plugin import metadata_key

from bounty_sync.archival.sweeper import ArchivalSweeper
from bounty_sync.models.config import ArchiveConfig, SyncConfig
from bounty_sync.mutators import LocalMutators
from bounty_sync.storage.sqlite import SQLiteJobStore
from bounty_sync.sync.reconciler import Reconciler

from tests.factories import NOW
from tests.mocks import CONTRACT, MockChain, MockMetadata, MockPinService


class FakeClock:
    """Injectable clock returning a settable unix time."""

    def __init__(self, now: int = NOW) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


# ── Report metadata ──────────────────────────────────────────────


def pytest_configure(config):
    """Add the test chain info to the report Environment table."""
    meta = config.stash.setdefault(metadata_key, {})
    meta["Escrow Contract"] = CONTRACT
    meta["Chain"] = "mocked"


def make_test_config(**overrides) -> SyncConfig:
    """Build a SyncConfig suitable for testing."""
    defaults = dict(
        rpc_url="http://127.0.0.1:8545",
        contract_address=CONTRACT,
        aggregator_address="0x" + "0a" * 20,
        interval_minutes=0.01,
        gateways=["http://127.0.0.1:9301"],
        gateway_timeout=2,
        pinning_base_url="http://127.0.0.1:9302",
        pin_service_token="test-token",
        db_path=":memory:",
        archive=ArchiveConfig(rate_limit_ms=0),
    )
    defaults.update(overrides)
    return SyncConfig(**defaults)


@pytest.fixture
def test_config():
    """Default SyncConfig for tests."""
    return make_test_config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def store():
    """Initialized in-memory SQLiteJobStore."""
    s = SQLiteJobStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def chain():
    return MockChain()


@pytest.fixture
def metadata():
    return MockMetadata()


@pytest.fixture
def pins():
    return MockPinService()


@pytest.fixture
def reconciler(store, chain, metadata, clock):
    return Reconciler(store, chain, metadata, max_consecutive_errors=3, clock=clock)


@pytest.fixture
def sweeper(store, pins, clock):
    return ArchivalSweeper(store, pins, ArchiveConfig(rate_limit_ms=0), clock=clock)


@pytest.fixture
def mutators(store, chain, clock):
    return LocalMutators(store, chain, clock=clock)
