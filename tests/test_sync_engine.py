"""End-to-end tests for contexts sharing one store."""

import asyncio

import pytest

from quicktab_sync.core.entity_events import EntityEvent
from quicktab_sync.core.models import (
    ContextIdentity,
    ContextKind,
    DeltaKind,
    EntityDelta,
    Position,
    StateSnapshot,
    WriteFailureKind,
)
from quicktab_sync.core.sync_engine import SyncEngine, delta_reflected

NAMESPACE = "firefox-default"


def _create(entity_id="qt-1", **payload):
    payload.setdefault("url", f"https://example.com/{entity_id}")
    return {"op": "create", "entityId": entity_id, "payload": payload}


def _move(entity_id, left, top):
    return {"op": "move", "entityId": entity_id, "payload": {"left": left, "top": top}}


class Recorder:
    """Collects entity events for one engine."""

    def __init__(self, engine):
        self.events = []
        for event in EntityEvent:
            engine.on(event, self._listener(event))

    def _listener(self, event):
        def record(entity, reason):
            self.events.append((event, entity.id, reason))
        return record

    def of(self, event):
        return [(entity_id, reason) for kind, entity_id, reason in self.events if kind == event]


class Contexts:
    """Starts engines on the shared backend and closes them afterwards."""

    def __init__(self, backend, config):
        self.backend = backend
        self.config = config
        self.engines = []

    async def start(self, context_id="7", namespace_id=NAMESPACE, kind=ContextKind.PAGE):
        engine = SyncEngine(
            ContextIdentity(context_id, namespace_id, kind), self.backend, config=self.config
        )
        await engine.start()
        self.engines.append(engine)
        return engine

    async def coordinator(self):
        return await self.start("coordinator", None, ContextKind.COORDINATOR)

    async def settle(self):
        await self.backend.drain()

    async def close(self):
        for engine in self.engines:
            await engine.close()


@pytest.fixture
def contexts(backend, engine_config):
    return Contexts(backend, engine_config)


@pytest.mark.asyncio
class TestLocalWrites:
    async def test_create_emits_and_is_visible_to_other_contexts(self, contexts):
        page = await contexts.start("7")
        other = await contexts.start("8")
        recorder = Recorder(page)

        result = await page.submit(_create())
        await contexts.settle()

        assert result.succeeded
        assert recorder.of(EntityEvent.CREATED) == [("qt-1", "local create")]
        assert page.get_entity("qt-1").owner_context_id == "7"
        assert other.entities == {}
        assert other.snapshot.get("qt-1") is not None
        assert other.ledger.applied_revision == 1
        await contexts.close()

    async def test_concurrent_creates_converge(self, contexts):
        first = await contexts.start("7")
        second = await contexts.start("8")

        results = await asyncio.gather(
            first.submit(_create("qt-a")), second.submit(_create("qt-b"))
        )
        await contexts.settle()

        assert all(r.succeeded for r in results)
        assert sorted(r.revision for r in results) == [1, 2]
        snapshot = await first.store.get()
        assert set(snapshot.entities) == {"qt-a", "qt-b"}
        assert snapshot.revision == 2
        assert set(first.entities) == {"qt-a"}
        assert set(second.entities) == {"qt-b"}
        await contexts.close()

    async def test_close_removes_from_working_set(self, contexts):
        page = await contexts.start("7")
        recorder = Recorder(page)
        await page.submit(_create())

        result = await page.submit({"op": "close", "entityId": "qt-1"})

        assert result.succeeded
        assert page.entities == {}
        assert recorder.of(EntityEvent.REMOVED) == [("qt-1", "local close")]
        await contexts.close()

    async def test_invalid_request_never_reaches_the_store(self, contexts, backend):
        page = await contexts.start("7")

        result = await page.submit({"op": "explode", "entityId": "qt-1"})

        assert result.failure == WriteFailureKind.INVALID
        assert backend.total_sets == 0
        await contexts.close()

    async def test_foreign_entity_is_denied(self, contexts):
        owner = await contexts.start("7")
        other = await contexts.start("8")
        await owner.submit(_create())
        await contexts.settle()

        result = await other.submit(_move("qt-1", 5, 5))

        assert result.failure == WriteFailureKind.OWNERSHIP_DENIED
        assert owner.get_entity("qt-1").position == Position(0, 0)
        await contexts.close()


@pytest.mark.asyncio
class TestIdentity:
    async def test_unresolved_identity_cannot_write_until_resolved(self, contexts):
        page = await contexts.start(None)

        denied = await page.submit(_create())
        assert denied.failure == WriteFailureKind.OWNERSHIP_DENIED

        await page.resolve_identity("7")
        result = await page.submit(_create())

        assert result.succeeded
        assert page.get_entity("qt-1").owner_context_id == "7"
        assert page.get_entity("qt-1").owner_namespace_id == NAMESPACE
        await contexts.close()

    async def test_resolving_identity_hydrates_owned_entities(self, contexts):
        owner = await contexts.start("7")
        await owner.submit(_create("qt-a"))
        await owner.submit(_create("qt-b"))
        await contexts.settle()

        reloaded = await contexts.start(None)
        assert reloaded.entities == {}
        recorder = Recorder(reloaded)

        owned = await reloaded.resolve_identity("7")

        assert sorted(e.id for e in owned) == ["qt-a", "qt-b"]
        assert [entity_id for entity_id, _ in recorder.of(EntityEvent.CREATED)] == ["qt-a", "qt-b"]
        await contexts.close()


@pytest.mark.asyncio
class TestNotifications:
    async def test_stale_notification_is_dropped_without_events(self, contexts):
        page = await contexts.start("7")
        await page.submit(_create())
        await page.submit(_move("qt-1", 10, 10))
        await contexts.settle()
        recorder = Recorder(page)

        page._on_store_change(None, StateSnapshot.build({}, revision=1))

        assert page.total_stale_dropped >= 1
        assert recorder.events == []
        assert "qt-1" in page.entities
        await contexts.close()

    async def test_own_echo_is_not_reapplied(self, contexts):
        page = await contexts.start("7")
        recorder = Recorder(page)

        await page.submit(_create())
        await contexts.settle()

        assert len(recorder.of(EntityEvent.CREATED)) == 1
        assert recorder.of(EntityEvent.UPDATED) == []
        assert page.total_replays == 0
        await contexts.close()

    async def test_lost_update_is_replayed(self, contexts, backend, engine_config, eventually):
        page = await contexts.start("7")
        await page.submit(_create())
        before_move = await page.store.get()
        moved = await page.submit(_move("qt-1", 50, 60))
        await contexts.settle()
        assert moved.revision == 2

        # Another writer replaces revision 2 with a snapshot lacking the move.
        clobber = StateSnapshot.build(before_move.entities, revision=2)
        await backend.set(engine_config.storage_key, clobber.to_dict())

        assert await eventually(lambda: page.total_replays == 1)
        await contexts.settle()
        assert await eventually(lambda: page.ledger.applied_revision == 3)
        snapshot = await page.store.get()
        assert snapshot.revision == 3
        assert snapshot.get("qt-1").position == Position(50, 60)
        assert page.get_entity("qt-1").position == Position(50, 60)
        await contexts.close()

    async def test_legacy_entity_is_claimed_by_first_writer(self, contexts, backend, engine_config):
        backend.poke(engine_config.storage_key, {
            "allQuickTabs": [{"id": "qt-old", "url": "https://example.com/old"}],
            "saveId": "legacy-save",
        })
        first = await contexts.start("7")
        second = await contexts.start("8")
        assert "qt-old" in first.entities
        assert "qt-old" in second.entities
        recorder = Recorder(second)

        result = await first.submit(_move("qt-old", 3, 4))
        await contexts.settle()

        assert result.succeeded
        assert result.revision == 1
        entity = first.get_entity("qt-old")
        assert entity.owner_context_id == "7"
        assert entity.owner_namespace_id == NAMESPACE
        assert second.entities == {}
        assert recorder.of(EntityEvent.REMOVED) == [("qt-old", "remote change: ownership moved")]
        await contexts.close()


@pytest.mark.asyncio
class TestCoordinatorOperations:
    async def test_adoption_moves_entity_to_new_owner(self, contexts):
        page = await contexts.start("7")
        await page.submit(_create())
        await contexts.settle()
        coordinator = await contexts.coordinator()
        recorder = Recorder(page)

        result = await coordinator.submit({
            "op": "adopt",
            "entityId": "qt-1",
            "payload": {"newOwnerContextId": "9", "newOwnerNamespaceId": NAMESPACE},
        })
        await contexts.settle()

        assert result.succeeded
        assert page.entities == {}
        assert recorder.of(EntityEvent.REMOVED) == [("qt-1", "remote change: ownership moved")]
        adopter = await contexts.start("9")
        assert set(adopter.entities) == {"qt-1"}
        await contexts.close()

    async def test_adoption_without_namespace_keeps_current_namespace(self, contexts):
        owner = await contexts.start("7")
        await owner.submit(_create())
        await contexts.settle()

        result = await owner.submit({
            "op": "adopt",
            "entityId": "qt-1",
            "payload": {"newOwnerContextId": "9"},
        })
        await contexts.settle()

        assert result.succeeded
        entity = (await owner.store.get()).get("qt-1")
        assert entity.owner_context_id == "9"
        assert entity.owner_namespace_id == NAMESPACE

        adopter = await contexts.start("9")
        assert set(adopter.entities) == {"qt-1"}
        moved = await adopter.submit(_move("qt-1", 15, 25))
        assert moved.succeeded
        assert adopter.get_entity("qt-1").position == Position(15, 25)
        await contexts.close()

    async def test_page_cannot_adopt_foreign_entity(self, contexts):
        page = await contexts.start("7")
        other = await contexts.start("8")
        await page.submit(_create())
        await contexts.settle()

        result = await other.submit({
            "op": "adopt",
            "entityId": "qt-1",
            "payload": {"newOwnerContextId": "8", "newOwnerNamespaceId": NAMESPACE},
        })

        assert result.failure == WriteFailureKind.OWNERSHIP_DENIED
        await contexts.close()

    async def test_orphan_cleanup_removes_dead_contexts_entities(self, contexts):
        page = await contexts.start("7")
        survivor = await contexts.start("8")
        await page.submit(_create("qt-a"))
        await survivor.submit(_create("qt-b"))
        await contexts.settle()
        coordinator = await contexts.coordinator()

        results = await coordinator.cleanup_orphans(["8", "coordinator"])
        await contexts.settle()

        assert [r.entity_id for r in results] == ["qt-a"]
        assert all(r.succeeded for r in results)
        snapshot = await coordinator.store.get()
        assert set(snapshot.entities) == {"qt-b"}
        assert set(survivor.entities) == {"qt-b"}
        await contexts.close()

    async def test_emptying_snapshot_is_flagged(self, contexts):
        page = await contexts.start("7")
        await page.submit(_create())
        await contexts.settle()
        coordinator = await contexts.coordinator()

        await coordinator.cleanup_orphans(["coordinator"])
        await contexts.settle()

        assert page.entities == {}
        assert page.total_suspicious_drops == 1
        await contexts.close()

    async def test_page_cannot_clean_up(self, contexts):
        page = await contexts.start("7")
        other = await contexts.start("8")
        await page.submit(_create())
        await contexts.settle()

        results = await other.cleanup_orphans(["8"])

        assert [r.failure for r in results] == [WriteFailureKind.OWNERSHIP_DENIED]
        await contexts.close()


def test_delta_reflected():
    snapshot = StateSnapshot.build({}, revision=1)
    remove = EntityDelta(DeltaKind.REMOVE, "qt-1")
    patch = EntityDelta(DeltaKind.PATCH, "qt-1", changes={"minimized": True})

    assert delta_reflected(remove, snapshot)
    assert delta_reflected(patch, snapshot)
    assert not delta_reflected(EntityDelta(DeltaKind.CREATE, "qt-1"), snapshot)


@pytest.mark.asyncio
async def test_stats(contexts):
    page = await contexts.start("7")
    await page.submit(_create())

    stats = page.get_stats()

    assert stats["context"] == "page:7"
    assert stats["owned_entities"] == 1
    assert stats["applied_revision"] == 1
    assert stats["writes"]["total_completed"] == 1
    assert "connection" not in stats
    await contexts.close()
