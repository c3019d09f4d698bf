"""
Pytest configuration and shared fixtures for the quick tab sync tests.

This file contains:
- Small, fast timing configs for engines and monitors
- Backend and identity fixtures
- The ``eventually`` helper for waiting on asynchronous convergence
"""

import asyncio
from pathlib import Path

import pytest

from quicktab_sync.core.config import (
    BackoffConfig,
    CoordinatorConfig,
    HeartbeatConfig,
    LedgerConfig,
    OutboxConfig,
    SyncEngineConfig,
    WriteCoordinatorConfig,
)
from quicktab_sync.core.models import ContextIdentity, ContextKind
from quicktab_sync.core.state_store import InMemoryBackend

project_root = Path(__file__).parent.parent

STORAGE_KEY = "quick_tabs_test"


def fast_heartbeat(**overrides) -> HeartbeatConfig:
    values = dict(
        interval=0.05,
        timeout=0.02,
        host_idle_window=1.0,
        circuit_failure_threshold=2,
        failure_window=1.0,
        probe_base_delay=0.01,
        probe_max_delay=0.05,
    )
    values.update(overrides)
    return HeartbeatConfig(**values)


def fast_writes(**overrides) -> WriteCoordinatorConfig:
    values = dict(
        write_timeout=1.0,
        lane_capacity=64,
        commit_history=64,
        retry=BackoffConfig(max_attempts=3, base_delay=0.001, max_delay=0.004),
    )
    values.update(overrides)
    return WriteCoordinatorConfig(**values)


def fast_ledger(**overrides) -> LedgerConfig:
    values = dict(conflict_max_attempts=10, conflict_base_delay=0.001, conflict_max_delay=0.01)
    values.update(overrides)
    return LedgerConfig(**values)


@pytest.fixture(scope="session")
def project_root_path():
    """Return the project root directory path."""
    return project_root


@pytest.fixture
def backend():
    """Shared in-process store, as seen by every context in one test."""
    return InMemoryBackend()


@pytest.fixture
def engine_config():
    """Engine config with millisecond-scale timings."""
    return SyncEngineConfig(
        storage_key=STORAGE_KEY,
        writes=fast_writes(),
        ledger=fast_ledger(),
        heartbeat=fast_heartbeat(),
        outbox=OutboxConfig(max_size=10, ttl_seconds=5.0),
        warn_on_suspicious_drop=True,
    )


@pytest.fixture
def heartbeat_config():
    return fast_heartbeat()


@pytest.fixture
def write_config():
    return fast_writes()


@pytest.fixture
def ledger_config():
    return fast_ledger()


@pytest.fixture
def coordinator_config(tmp_path):
    return CoordinatorConfig(
        host="127.0.0.1",
        port=0,
        orphan_grace_seconds=0.05,
        peer_idle_timeout=0,
        state_dir=tmp_path,
    )


@pytest.fixture
def page_identity():
    return ContextIdentity("7", "firefox-default", ContextKind.PAGE)


@pytest.fixture
def other_page_identity():
    return ContextIdentity("8", "firefox-default", ContextKind.PAGE)


@pytest.fixture
def eventually():
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""

    async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if predicate():
                return True
            await asyncio.sleep(interval)
        return bool(predicate())

    return wait_until


def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def pytest_report_header(config):
    """Add custom header to pytest report."""
    return [
        "Quick Tab Sync Test Suite",
        f"Project Root: {project_root}",
    ]
