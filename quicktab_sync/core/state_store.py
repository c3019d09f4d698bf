"""
Replicated State Store
======================

Thin wrapper over a durable key-value backend exposing only get / set /
subscribe. The backend delivers change notifications asynchronously and
at least once; the order in which different writers' notifications arrive
is not guaranteed, so nothing here interprets revisions.

The one thing the wrapper does enforce is the persisted layout: a record
whose checksum does not match its entities is never accepted. Reads fall
back to the last-known-good snapshot and flag the store for recovery.

Backends:
    InMemoryBackend  - shared dict, used when all contexts live in one process
    FileBackend      - one JSON file per key, aiofiles I/O, atomic replace,
                       mtime polling to observe writes from other processes
"""

from __future__ import annotations

import asyncio
import copy
import errno
import inspect
import json
import logging
import os
from collections import defaultdict
from pathlib import Path
from typing import (
    Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Union
)

import aiofiles

from .errors import (
    CorruptSnapshotError, QuotaExceededError, SyncError, TransientBackendError
)
from .models import StateSnapshot, compute_checksum

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
RawChangeCallback = Callable[
    [Optional[Record], Optional[Record]], Union[None, Awaitable[None]]
]
SnapshotChangeCallback = Callable[
    [Optional[StateSnapshot], Optional[StateSnapshot]], Union[None, Awaitable[None]]
]


class PersistenceBackend(Protocol):
    """Durable key-value backend shared by every context."""

    async def get(self, key: str) -> Optional[Record]: ...

    async def set(self, key: str, record: Record) -> None: ...

    def on_change(self, key: str, callback: RawChangeCallback) -> Callable[[], None]: ...


# =============================================================================
# Listener plumbing
# =============================================================================

class _ListenerRegistry:
    """Per-key change listeners with asynchronous, isolated delivery."""

    def __init__(self, owner: str):
        self._owner = owner
        self._listeners: Dict[str, List[RawChangeCallback]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()

    def add(self, key: str, callback: RawChangeCallback) -> Callable[[], None]:
        self._listeners[key].append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners[key]:
                self._listeners[key].remove(callback)

        return unsubscribe

    def keys(self) -> List[str]:
        return [key for key, callbacks in self._listeners.items() if callbacks]

    def notify(self, key: str, old: Optional[Record], new: Optional[Record]) -> None:
        """Schedule delivery to every listener; never runs callbacks inline."""
        loop = asyncio.get_running_loop()
        for callback in list(self._listeners.get(key, ())):
            loop.call_soon(
                self._deliver, callback, copy.deepcopy(old), copy.deepcopy(new)
            )

    def _deliver(
        self,
        callback: RawChangeCallback,
        old: Optional[Record],
        new: Optional[Record],
    ) -> None:
        try:
            result = callback(old, new)
        except Exception as e:
            logger.exception(f"[{self._owner}] Change listener error: {e}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"[{self._owner}] Async change listener failed: {error!r}",
                exc_info=error,
            )

    async def drain(self) -> None:
        """Wait until every scheduled async listener has finished."""
        await asyncio.sleep(0)
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
            await asyncio.sleep(0)


# =============================================================================
# In-memory backend
# =============================================================================

class InMemoryBackend:
    """
    Shared in-process backend.

    Every ``get``/``set`` yields to the event loop first, so concurrent
    contexts interleave the way they would against a real asynchronous
    store. ``quota_bytes`` bounds the serialized size of a record.
    """

    def __init__(self, quota_bytes: Optional[int] = None, latency: float = 0.0):
        self.quota_bytes = quota_bytes
        self.latency = latency
        self._data: Dict[str, Record] = {}
        self._listeners = _ListenerRegistry("InMemoryBackend")
        self.total_gets = 0
        self.total_sets = 0

    async def get(self, key: str) -> Optional[Record]:
        await asyncio.sleep(self.latency)
        self.total_gets += 1
        record = self._data.get(key)
        return copy.deepcopy(record) if record is not None else None

    async def set(self, key: str, record: Record) -> None:
        await asyncio.sleep(self.latency)
        if self.quota_bytes is not None:
            size = len(json.dumps(record))
            if size > self.quota_bytes:
                raise QuotaExceededError(
                    f"record of {size} bytes exceeds quota of {self.quota_bytes}",
                    operation="set",
                    revision=record.get("revision"),
                )
        old = self._data.get(key)
        self._data[key] = copy.deepcopy(record)
        self.total_sets += 1
        self._listeners.notify(key, old, record)

    def on_change(self, key: str, callback: RawChangeCallback) -> Callable[[], None]:
        return self._listeners.add(key, callback)

    def peek(self, key: str) -> Optional[Record]:
        """Synchronous view of the stored record, for diagnostics."""
        record = self._data.get(key)
        return copy.deepcopy(record) if record is not None else None

    def poke(self, key: str, record: Optional[Record]) -> None:
        """Replace a record without notifying listeners (recovery tooling)."""
        if record is None:
            self._data.pop(key, None)
        else:
            self._data[key] = copy.deepcopy(record)

    async def drain(self) -> None:
        """Let every scheduled change notification run to completion."""
        await asyncio.sleep(0)
        await self._listeners.drain()


# =============================================================================
# File backend
# =============================================================================

class FileBackend:
    """
    One JSON file per key under ``directory``.

    Writes go to a temporary file which then replaces the target, so a
    reader never observes a half-written record. Listeners are notified of
    local writes immediately and of other processes' writes by polling the
    file's modification time once ``start()`` has been called.
    """

    def __init__(
        self,
        directory: Union[str, Path],
        poll_interval: float = 0.25,
        max_bytes: Optional[int] = None,
    ):
        self.directory = Path(directory)
        self.poll_interval = poll_interval
        self.max_bytes = max_bytes
        self._listeners = _ListenerRegistry("FileBackend")
        self._last_seen: Dict[str, Optional[Record]] = {}
        self._mtimes: Dict[str, int] = {}
        self._poll_task: Optional[asyncio.Task] = None
        self._running = False

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def _mtime(self, key: str) -> Optional[int]:
        try:
            return self._path(key).stat().st_mtime_ns
        except FileNotFoundError:
            return None

    async def get(self, key: str) -> Optional[Record]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r") as f:
                data = await f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise TransientBackendError(
                f"read of {path} failed: {e}", operation="get"
            ) from e

        if not data:
            return None
        try:
            record = json.loads(data)
        except json.JSONDecodeError as e:
            raise CorruptSnapshotError(
                expected=None, actual="unparseable", operation="get"
            ) from e
        if not isinstance(record, dict):
            raise CorruptSnapshotError(
                expected=None, actual=type(record).__name__, operation="get"
            )
        return record

    async def set(self, key: str, record: Record) -> None:
        payload = json.dumps(record, indent=2)
        if self.max_bytes is not None and len(payload) > self.max_bytes:
            raise QuotaExceededError(
                f"record of {len(payload)} bytes exceeds limit of {self.max_bytes}",
                operation="set",
                revision=record.get("revision"),
            )

        path = self._path(key)
        tmp_path = path.with_suffix(f".{os.getpid()}.tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(payload)
            os.replace(tmp_path, path)
        except OSError as e:
            if e.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
                raise QuotaExceededError(
                    f"no space left writing {path}",
                    operation="set",
                    revision=record.get("revision"),
                ) from e
            raise TransientBackendError(
                f"write of {path} failed: {e}",
                operation="set",
                revision=record.get("revision"),
            ) from e

        old = self._last_seen.get(key)
        self._last_seen[key] = copy.deepcopy(record)
        mtime = self._mtime(key)
        if mtime is not None:
            self._mtimes[key] = mtime
        self._listeners.notify(key, old, record)

    def on_change(self, key: str, callback: RawChangeCallback) -> Callable[[], None]:
        if key not in self._mtimes:
            mtime = self._mtime(key)
            if mtime is not None:
                self._mtimes[key] = mtime
        return self._listeners.add(key, callback)

    async def start(self) -> None:
        """Begin watching for writes made by other processes."""
        if self._running:
            return
        self._running = True
        for key in self._listeners.keys():
            if key not in self._last_seen:
                self._last_seen[key] = await self._safe_get(key)
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        self._running = False
        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
        self._poll_task = None

    async def _safe_get(self, key: str) -> Optional[Record]:
        try:
            return await self.get(key)
        except SyncError as e:
            logger.warning(f"[FileBackend] Could not read {key}: {e}")
            return None

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.poll_interval)
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"[FileBackend] Poll error: {e}")

    async def poll_once(self) -> None:
        """Detect external modifications and notify listeners."""
        for key in self._listeners.keys():
            mtime = self._mtime(key)
            if mtime is None or mtime == self._mtimes.get(key):
                continue
            self._mtimes[key] = mtime
            try:
                new = await self.get(key)
            except CorruptSnapshotError:
                # Deliver raw garbage as-is; the store wrapper rejects it.
                new = {"entities": {}, "revision": None, "checksum": "unparseable"}
            old = self._last_seen.get(key)
            self._last_seen[key] = copy.deepcopy(new)
            self._listeners.notify(key, old, new)

    async def drain(self) -> None:
        await asyncio.sleep(0)
        await self._listeners.drain()


# =============================================================================
# Store wrapper
# =============================================================================

class ReplicatedStateStore:
    """
    get / set / subscribe over one snapshot key.

    ``get`` verifies the checksum of what it reads. On mismatch it logs the
    corruption, sets ``needs_recovery`` and returns the last-known-good
    snapshot; with no cache to fall back to it raises
    :class:`CorruptSnapshotError`. Subscribers never see a corrupt snapshot.
    """

    def __init__(self, backend: PersistenceBackend, key: str):
        self.backend = backend
        self.key = key
        self._last_known_good: Optional[StateSnapshot] = None
        self.needs_recovery = False
        self.corruption_count = 0

    @property
    def last_known_good(self) -> Optional[StateSnapshot]:
        return self._last_known_good

    def clear_recovery_flag(self) -> None:
        self.needs_recovery = False

    def _remember(self, snapshot: StateSnapshot) -> None:
        current = self._last_known_good
        if (
            current is None
            or snapshot.revision is None
            or current.revision is None
            or snapshot.revision >= current.revision
        ):
            self._last_known_good = snapshot

    def _flag_corruption(self, error: CorruptSnapshotError, source: str) -> None:
        self.needs_recovery = True
        self.corruption_count += 1
        logger.warning(
            f"[StateStore:{self.key}] Corrupt snapshot on {source}: {error.reason}",
            extra={"audit": error.to_record()},
        )

    def _decode(self, record: Record, source: str) -> StateSnapshot:
        try:
            snapshot = StateSnapshot.from_dict(record)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise CorruptSnapshotError(
                expected=record.get("checksum") if isinstance(record, dict) else None,
                actual="undecodable",
                operation=source,
            ) from e
        if not snapshot.verify_checksum():
            raise CorruptSnapshotError(
                expected=snapshot.checksum,
                actual=compute_checksum(snapshot.entities),
                operation=source,
                revision=snapshot.revision,
            )
        return snapshot

    async def get(self) -> Optional[StateSnapshot]:
        """Read the authoritative snapshot (``None`` before the first write)."""
        try:
            record = await self.backend.get(self.key)
            if record is None:
                return None
            snapshot = self._decode(record, "read")
        except CorruptSnapshotError as e:
            self._flag_corruption(e, "read")
            if self._last_known_good is not None:
                logger.info(
                    f"[StateStore:{self.key}] Using last-known-good revision "
                    f"{self._last_known_good.revision}"
                )
                return self._last_known_good
            raise
        except SyncError:
            raise
        except (OSError, ConnectionError) as e:
            raise TransientBackendError(
                f"read of {self.key} failed: {e}", operation="read"
            ) from e

        self._remember(snapshot)
        return snapshot

    async def set(self, snapshot: StateSnapshot) -> None:
        """Persist a snapshot. Backend errors surface as :class:`SyncError`."""
        try:
            await self.backend.set(self.key, snapshot.to_dict())
        except SyncError:
            raise
        except (OSError, ConnectionError) as e:
            raise TransientBackendError(
                f"write of {self.key} failed: {e}",
                operation="write",
                revision=snapshot.revision,
            ) from e
        self._remember(snapshot)

    def subscribe(self, callback: SnapshotChangeCallback) -> Callable[[], None]:
        """Receive ``(old, new)`` snapshots for every verified change."""

        def on_raw_change(old: Optional[Record], new: Optional[Record]):
            if new is None:
                return None
            try:
                new_snapshot = self._decode(new, "notification")
            except CorruptSnapshotError as e:
                self._flag_corruption(e, "notification")
                return None
            old_snapshot: Optional[StateSnapshot] = None
            if old is not None:
                try:
                    old_snapshot = self._decode(old, "notification")
                except CorruptSnapshotError:
                    old_snapshot = None
            self._remember(new_snapshot)
            return callback(old_snapshot, new_snapshot)

        return self.backend.on_change(self.key, on_raw_change)


__all__ = [
    "PersistenceBackend",
    "InMemoryBackend",
    "FileBackend",
    "ReplicatedStateStore",
]
