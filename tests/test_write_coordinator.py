"""Tests for priority lanes, deadlines, retries and failure kinds."""

import asyncio

import pytest

from quicktab_sync.core.config import BackoffConfig, WriteCoordinatorConfig
from quicktab_sync.core.errors import TransientBackendError
from quicktab_sync.core.models import (
    ContextIdentity,
    WriteFailureKind,
    WritePriority,
    WriteStatus,
)
from quicktab_sync.core.operations import parse_operation, to_intent
from quicktab_sync.core.revision_ledger import RevisionLedger
from quicktab_sync.core.state_store import InMemoryBackend, ReplicatedStateStore
from quicktab_sync.core.write_coordinator import WriteCoordinator

NAMESPACE = "firefox-default"


class GatedBackend(InMemoryBackend):
    """Backend whose writes wait until the gate opens."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.gate = asyncio.Event()
        self.gate.set()

    async def set(self, key, record):
        await self.gate.wait()
        await super().set(key, record)


class FlakyBackend(InMemoryBackend):
    """Backend that fails the first ``failures`` writes."""

    def __init__(self, failures, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures
        self.attempts = 0

    async def set(self, key, record):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise TransientBackendError("backend busy", operation="set")
        await super().set(key, record)


def _intent(op, entity_id="qt-1", **payload):
    request = {"op": op, "entityId": entity_id}
    if payload:
        request["payload"] = payload
    return to_intent(parse_operation(request))


def _create(entity_id="qt-1"):
    return _intent("create", entity_id, url=f"https://example.com/{entity_id}")


def _coordinator(backend, write_config, ledger_config, context_id="7"):
    identity = ContextIdentity(context_id, NAMESPACE)
    store = ReplicatedStateStore(backend, "writes")
    ledger = RevisionLedger(context_id, ledger_config)
    return WriteCoordinator(store, ledger, identity, config=write_config)


@pytest.mark.asyncio
class TestWrites:
    async def test_create_commits_and_stamps_owner(self, backend, write_config, ledger_config):
        coordinator = _coordinator(backend, write_config, ledger_config)
        await coordinator.start()

        result = await coordinator.submit(_create())

        assert result.status == WriteStatus.COMPLETED
        assert result.revision == 1
        assert result.attempts == 1
        entity = (await coordinator.store.get()).get("qt-1")
        assert entity.owner_context_id == "7"
        assert entity.owner_namespace_id == NAMESPACE
        assert entity.revision == 1
        await coordinator.stop()

    async def test_each_accepted_write_adds_one_revision(self, backend, write_config, ledger_config):
        coordinator = _coordinator(backend, write_config, ledger_config)
        await coordinator.start()

        results = [await coordinator.submit(_create())]
        for left in (10, 20, 30):
            results.append(await coordinator.submit(_intent("move", left=left, top=0)))

        assert [r.revision for r in results] == [1, 2, 3, 4]
        assert len({r.save_id for r in results}) == 4
        await coordinator.stop()

    async def test_high_priority_overtakes_queued_moves(self, backend, write_config, ledger_config):
        coordinator = _coordinator(backend, write_config, ledger_config)
        await coordinator.start()
        await coordinator.submit(_create())
        await coordinator.submit(_intent("minimize"))

        order = []
        futures = []
        for i in range(3):
            future = coordinator.enqueue(_intent("move", left=i, top=i))
            future.add_done_callback(lambda f, i=i: order.append(f"move-{i}"))
            futures.append(future)
        restore = coordinator.enqueue(_intent("restore"))
        restore.add_done_callback(lambda f: order.append("restore"))
        futures.append(restore)

        results = await asyncio.gather(*futures)

        assert order == ["restore", "move-0", "move-1", "move-2"]
        assert restore.result().revision < min(r.revision for r in results[:3])
        assert all(r.succeeded for r in results)
        await coordinator.stop()

    async def test_missing_entity_is_not_found(self, backend, write_config, ledger_config):
        coordinator = _coordinator(backend, write_config, ledger_config)

        result = await coordinator.submit(_intent("move", "ghost", left=1, top=1))

        assert result.failure == WriteFailureKind.NOT_FOUND
        assert result.entity_id == "ghost"
        assert backend.total_sets == 0
        await coordinator.stop()

    async def test_ownership_rechecked_at_commit(self, backend, write_config, ledger_config):
        owner = _coordinator(backend, write_config, ledger_config, "7")
        intruder = _coordinator(backend, write_config, ledger_config, "8")
        await owner.submit(_create())

        result = await intruder.submit(_intent("close"))

        assert result.status == WriteStatus.FAILED
        assert result.failure == WriteFailureKind.OWNERSHIP_DENIED
        assert result.attempts == 1
        assert (await owner.store.get()).get("qt-1") is not None
        await owner.stop()
        await intruder.stop()


@pytest.mark.asyncio
class TestFailures:
    async def test_transient_errors_retry_with_backoff(self, write_config, ledger_config):
        backend = FlakyBackend(failures=2)
        coordinator = _coordinator(backend, write_config, ledger_config)

        result = await coordinator.submit(_create())

        assert result.succeeded
        assert result.attempts == 3
        assert backend.attempts == 3
        await coordinator.stop()

    async def test_transient_errors_exhaust(self, write_config, ledger_config):
        backend = FlakyBackend(failures=10)
        coordinator = _coordinator(backend, write_config, ledger_config)

        result = await coordinator.submit(_create())

        assert result.failure == WriteFailureKind.BACKEND_ERROR
        assert result.attempts == write_config.retry.max_attempts
        assert "backend busy" in result.reason
        await coordinator.stop()

    async def test_quota_fails_immediately(self, write_config, ledger_config):
        backend = InMemoryBackend(quota_bytes=64)
        coordinator = _coordinator(backend, write_config, ledger_config)

        result = await coordinator.submit(_create())

        assert result.failure == WriteFailureKind.QUOTA_EXCEEDED
        assert result.attempts == 1
        assert backend.total_sets == 0
        await coordinator.stop()

    async def test_invalid_delta_is_reported(self, backend, write_config, ledger_config):
        coordinator = _coordinator(backend, write_config, ledger_config)
        await coordinator.submit(_create())
        intent = _intent("move", left=1, top=2)
        object.__setattr__(intent.delta, "changes", {"no_such_field": 1})

        result = await coordinator.submit(intent)

        assert result.failure == WriteFailureKind.INVALID
        await coordinator.stop()


@pytest.mark.asyncio
class TestDeadlines:
    async def test_stuck_write_times_out_without_blocking_forever(self, ledger_config):
        backend = GatedBackend()
        config = WriteCoordinatorConfig(
            write_timeout=0.1,
            retry=BackoffConfig(max_attempts=1, base_delay=0.0, max_delay=0.0),
        )
        coordinator = _coordinator(backend, config, ledger_config)
        await coordinator.submit(_create())
        backend.gate.clear()

        in_flight = coordinator.enqueue(_intent("move", left=1, top=1))
        await asyncio.sleep(0.01)
        queued = coordinator.enqueue(_intent("focus"))

        first, second = await asyncio.wait_for(asyncio.gather(in_flight, queued), timeout=1.0)

        assert first.failure == WriteFailureKind.TIMEOUT
        assert second.failure == WriteFailureKind.TIMEOUT
        assert coordinator.total_evicted == 2

        backend.gate.set()
        await coordinator.stop()
        assert coordinator.total_late >= 1
        assert (await coordinator.store.get()).get("qt-1").position.left == 1

    async def test_timed_out_write_never_overwrites_a_later_one(self, ledger_config):
        backend = GatedBackend()
        config = WriteCoordinatorConfig(
            write_timeout=0.1,
            retry=BackoffConfig(max_attempts=1, base_delay=0.0, max_delay=0.0),
        )
        coordinator = _coordinator(backend, config, ledger_config)
        await coordinator.submit(_create())
        backend.gate.clear()

        first = await coordinator.submit(_intent("move", left=1, top=1))
        assert first.failure == WriteFailureKind.TIMEOUT

        later = coordinator.enqueue(_intent("move", left=99, top=99))
        await asyncio.sleep(0.01)
        backend.gate.set()
        second = await later
        await coordinator.stop()

        assert second.succeeded
        entity = (await coordinator.store.get()).get("qt-1")
        assert entity.position.left == 99
        assert entity.position.top == 99

    async def test_timed_out_write_makes_no_further_attempts(self, ledger_config):
        backend = FlakyBackend(failures=10)
        config = WriteCoordinatorConfig(
            write_timeout=0.1,
            retry=BackoffConfig(max_attempts=5, base_delay=0.2, max_delay=0.2),
        )
        coordinator = _coordinator(backend, config, ledger_config)

        result = await coordinator.submit(_create())
        assert result.failure == WriteFailureKind.TIMEOUT

        await coordinator.stop()

        assert backend.attempts == 1
        assert coordinator.total_abandoned == 1
        assert coordinator.total_late == 0
        assert coordinator.ledger.total_abandoned == 1
        assert await coordinator.store.get() is None

    async def test_queued_intent_can_be_cancelled(self, ledger_config, write_config):
        backend = GatedBackend()
        coordinator = _coordinator(backend, write_config, ledger_config)
        await coordinator.submit(_create())
        backend.gate.clear()

        in_flight = coordinator.enqueue(_intent("move", left=5, top=5))
        await asyncio.sleep(0.01)
        intent = _intent("resize", width=300, height=200)
        queued = coordinator.enqueue(intent)

        assert coordinator.in_flight is not None
        assert not coordinator.cancel(coordinator.in_flight.intent_id)
        assert coordinator.cancel(intent.intent_id)
        assert (await queued).status == WriteStatus.CANCELLED

        backend.gate.set()
        assert (await in_flight).succeeded
        await coordinator.stop()

    async def test_stop_cancels_queued_intents(self, backend, write_config, ledger_config):
        coordinator = _coordinator(backend, write_config, ledger_config)
        await coordinator.stop()

        result = await coordinator.submit(_create())

        assert result.status == WriteStatus.CANCELLED

    async def test_full_lane_rejects(self, backend, ledger_config):
        config = WriteCoordinatorConfig(lane_capacity=1)
        coordinator = _coordinator(backend, config, ledger_config)

        first = coordinator.enqueue(_create("a"))
        second = coordinator.enqueue(_create("b"))

        assert second.done()
        assert second.result().failure == WriteFailureKind.BACKEND_ERROR
        assert (await first).succeeded
        assert coordinator.get_stats()["lanes"][WritePriority.MEDIUM.name] == 0
        await coordinator.stop()
