"""Tests for revision arithmetic, optimistic commits and the dedup cascade."""

import asyncio

import pytest

from quicktab_sync.core.errors import StaleWriteError
from quicktab_sync.core.models import QuickTabEntity, StateSnapshot
from quicktab_sync.core.revision_ledger import (
    AcceptDecision,
    DedupVerdict,
    RevisionLedger,
)
from quicktab_sync.core.state_store import ReplicatedStateStore


def _entity(entity_id, owner="7"):
    return QuickTabEntity(
        id=entity_id,
        url=f"https://example.com/{entity_id}",
        owner_context_id=owner,
        owner_namespace_id="firefox-default",
    )


def _adding(entity):
    def build(current, revision):
        entities = dict(current.entities) if current else {}
        entities[entity.id] = entity.with_changes(revision=revision)
        return entities
    return build


class TestRevisionArithmetic:
    def test_next_revision_starts_at_one(self):
        assert RevisionLedger.next_revision(None) == 1
        assert RevisionLedger.next_revision(StateSnapshot(revision=None)) == 1

    def test_next_revision_increments(self):
        assert RevisionLedger.next_revision(StateSnapshot.build({}, revision=5)) == 6

    def test_accept_direct_successor(self):
        authoritative = StateSnapshot.build({}, revision=5)
        candidate = StateSnapshot.build({}, revision=6)
        assert RevisionLedger.accept(candidate, authoritative) == AcceptDecision.ACCEPT

    def test_accept_when_authoritative_unknown(self):
        candidate = StateSnapshot.build({}, revision=3)
        assert RevisionLedger.accept(candidate, None) == AcceptDecision.ACCEPT

    def test_reject_same_or_older_revision(self):
        authoritative = StateSnapshot.build({}, revision=6)
        assert (
            RevisionLedger.accept(StateSnapshot.build({}, revision=6), authoritative)
            == AcceptDecision.REJECT_STALE
        )
        assert (
            RevisionLedger.accept(StateSnapshot.build({}, revision=2), authoritative)
            == AcceptDecision.REJECT_STALE
        )

    def test_reject_gap_as_conflict(self):
        authoritative = StateSnapshot.build({}, revision=6)
        candidate = StateSnapshot.build({}, revision=9)
        assert RevisionLedger.accept(candidate, authoritative) == AcceptDecision.REJECT_CONFLICT


class TestDedupCascade:
    def test_older_revision_is_stale(self):
        ledger = RevisionLedger("7")
        ledger.mark_applied(StateSnapshot.build({}, revision=12))

        result = ledger.classify(StateSnapshot.build({}, revision=10))

        assert result.verdict == DedupVerdict.STALE
        assert not result.accepted
        assert ledger.applied_revision == 12
        assert ledger.total_stale_notifications == 1

    def test_reapplying_applied_revision_changes_nothing(self):
        ledger = RevisionLedger("7")
        snapshot = StateSnapshot.build({"a": _entity("a")}, revision=4)
        assert ledger.observe(snapshot).accepted

        again = ledger.observe(snapshot)

        assert again.verdict == DedupVerdict.STALE
        assert ledger.applied_revision == 4
        assert ledger.applied_save_id == snapshot.save_id

    def test_higher_revision_wins_even_with_same_save_id_and_checksum(self):
        ledger = RevisionLedger("7")
        first = StateSnapshot.build({}, revision=3, save_id="same")
        ledger.observe(first)
        newer = StateSnapshot(
            entities={}, revision=4, save_id="same", checksum=first.checksum
        )

        result = ledger.observe(newer)

        assert result.accepted
        assert result.content_changed is False
        assert ledger.applied_revision == 4

    def test_unrevisioned_falls_back_to_save_id(self):
        ledger = RevisionLedger("7")
        ledger.mark_applied(StateSnapshot(entities={}, revision=None, save_id="s-1"))

        same = ledger.classify(StateSnapshot(entities={}, revision=None, save_id="s-1"))
        different = ledger.classify(StateSnapshot(entities={}, revision=None, save_id="s-2"))

        assert same.verdict == DedupVerdict.STALE
        assert different.verdict == DedupVerdict.ACCEPT

    def test_unrevisioned_without_save_id_is_accepted(self):
        ledger = RevisionLedger("7")
        result = ledger.classify(StateSnapshot(entities={}, revision=None, save_id=None))
        assert result.accepted

    def test_content_hash_only_flags_redundant_work(self):
        ledger = RevisionLedger("7")
        entities = {"a": _entity("a")}
        ledger.observe(StateSnapshot.build(entities, revision=1))

        result = ledger.classify(StateSnapshot.build(entities, revision=2))

        assert result.accepted
        assert result.content_changed is False


@pytest.mark.asyncio
class TestCommit:
    async def test_sequential_commits_increment_by_one(self, backend, ledger_config):
        store = ReplicatedStateStore(backend, "ledger")
        ledger = RevisionLedger("7", ledger_config)

        revisions = []
        for name in ("a", "b", "c"):
            outcome = await ledger.commit(store, _adding(_entity(name)), "create", name)
            revisions.append(outcome.snapshot.revision)

        assert revisions == [1, 2, 3]
        assert [entry.revision for entry in ledger.entries] == [1, 2, 3]
        assert len({entry.save_id for entry in ledger.entries}) == 3
        assert (await store.get()).revision == 3

    async def test_concurrent_writers_both_land(self, backend, ledger_config):
        store_a = ReplicatedStateStore(backend, "ledger")
        store_b = ReplicatedStateStore(backend, "ledger")
        await store_a.set(StateSnapshot.build({}, revision=5))
        ledger_a = RevisionLedger("7", ledger_config)
        ledger_b = RevisionLedger("8", ledger_config)

        outcome_a, outcome_b = await asyncio.gather(
            ledger_a.commit(store_a, _adding(_entity("a", "7")), "create", "a"),
            ledger_b.commit(store_b, _adding(_entity("b", "8")), "create", "b"),
        )

        final = await store_a.get()
        assert final.revision == 7
        assert set(final.entities) == {"a", "b"}
        assert {outcome_a.snapshot.revision, outcome_b.snapshot.revision} == {6, 7}
        assert ledger_a.total_conflicts + ledger_b.total_conflicts >= 1

    async def test_builder_errors_are_not_retried(self, backend, ledger_config):
        store = ReplicatedStateStore(backend, "ledger")
        ledger = RevisionLedger("7", ledger_config)
        calls = []

        def build(current, revision):
            calls.append(revision)
            raise ValueError("bad delta")

        with pytest.raises(ValueError):
            await ledger.commit(store, build, "move", "a")
        assert calls == [1]

    async def test_exhausted_conflicts_raise_stale_write(self, ledger_config):
        ledger_config.conflict_max_attempts = 2
        ledger = RevisionLedger("7", ledger_config)

        class MovingStore:
            """Every read sees a different writer's snapshot."""
            sets = 0

            async def get(self):
                return StateSnapshot.build({}, revision=1)

            async def set(self, snapshot):
                self.sets += 1

        store = MovingStore()
        with pytest.raises(StaleWriteError) as exc_info:
            await ledger.commit(store, _adding(_entity("a")), "move", "a")

        assert exc_info.value.entity_id == "a"
        assert exc_info.value.operation == "move"
        assert ledger.total_conflicts == 2
        assert ledger.total_commits == 0
        assert store.sets == 0


class TestOwnWriteBookkeeping:
    def test_echo_of_own_write_is_recognised(self):
        ledger = RevisionLedger("7")
        snapshot = StateSnapshot.build({}, revision=1)
        ledger._record(snapshot, "create", "intent-1")
        ledger.mark_applied(snapshot)

        result = ledger.classify(snapshot)

        assert result.own_write
        assert not result.superseded_own_write

    def test_replaced_own_write_is_flagged_once(self):
        ledger = RevisionLedger("7")
        own = StateSnapshot.build({}, revision=3)
        ledger._record(own, "move", "intent-1")
        ledger.mark_applied(own)
        foreign = StateSnapshot.build({}, revision=3)

        result = ledger.classify(foreign)
        entry = ledger.take_superseded(3)

        assert result.superseded_own_write
        assert entry.intent_id == "intent-1"
        assert ledger.take_superseded(3) is None
        assert ledger.get_stats()["superseded_writes"] == 1
