"""Per-room execution state with atomic JSON persistence.

BotState is the single durable snapshot (room id -> RoomState). StateStore
owns it and serializes mutations per room:

- update() applies a synchronous mutator under the room's lock, so the lock
  is never held across an await. Callers copy what they need out with
  snapshot(), release, do their I/O, then write results back with update().
- Every mutation schedules a whole-snapshot save: temp file + fsync +
  os.replace, guarded by a FileLock against other processes. A version
  counter keeps an older snapshot from overwriting a newer one.

Task handles and stop events are process-local and live in RoomRuntime,
outside the persisted model.
"""

import asyncio
import logging
import os
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar

from filelock import FileLock, Timeout as FileLockTimeout
from pydantic import BaseModel, Field, ValidationError

from roombot.core.models import TaskPhase

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PersistenceError(Exception):
    """Room state could not be written to disk."""

    pass


def _utc_now() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(UTC)


class RoomState(BaseModel):
    """Execution context of one chat room."""

    project_root: str | None = None
    working_dir: str | None = None
    active_task: str | None = None
    active_agent: str | None = None
    active_model: str | None = None
    phase: TaskPhase = TaskPhase.PLANNING
    stop_requested: bool = False
    history: str = ""
    feed_message_id: str | None = None
    updated_at: datetime = Field(default_factory=_utc_now)


class BotState(BaseModel):
    """Process-wide durable snapshot."""

    rooms: dict[str, RoomState] = Field(default_factory=dict)


@dataclass
class RoomRuntime:
    """Process-local handles for a room's live task loop."""

    task: asyncio.Task | None = None
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()


class StateStore:
    """Concurrency-safe owner of all RoomState values."""

    def __init__(self, path: str | Path | None = None, lock_timeout: float = 10.0):
        self.path = Path(path) if path else None
        self.lock_timeout = lock_timeout
        self._state = BotState()
        self._room_locks: dict[str, asyncio.Lock] = {}
        self._runtime: dict[str, RoomRuntime] = {}
        self._version = 0
        self._saved_version = 0
        self._write_lock = threading.Lock()

    # --- Loading ---

    @classmethod
    def load(cls, path: str | Path | None, lock_timeout: float = 10.0) -> "StateStore":
        store = cls(path, lock_timeout=lock_timeout)
        store._state = store._read_snapshot()
        logger.info(f"Loaded state for {len(store._state.rooms)} room(s)")
        return store

    def _read_snapshot(self) -> BotState:
        if self.path is None or not self.path.exists():
            return BotState()
        try:
            return BotState.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError, OSError) as e:
            corrupt = self.path.with_suffix(self.path.suffix + ".corrupt")
            logger.error(f"State file {self.path} is unreadable ({e}); moving it to {corrupt}")
            try:
                os.replace(self.path, corrupt)
            except OSError as move_error:
                logger.error(f"Could not move corrupt state file aside: {move_error}")
            return BotState()

    # --- Access ---

    def _lock_for(self, room_id: str) -> asyncio.Lock:
        lock = self._room_locks.get(room_id)
        if lock is None:
            lock = self._room_locks[room_id] = asyncio.Lock()
        return lock

    def _room(self, room_id: str) -> RoomState:
        room = self._state.rooms.get(room_id)
        if room is None:
            room = self._state.rooms[room_id] = RoomState()
            logger.debug(f"Created state for room {room_id}")
        return room

    def runtime(self, room_id: str) -> RoomRuntime:
        runtime = self._runtime.get(room_id)
        if runtime is None:
            runtime = self._runtime[room_id] = RoomRuntime()
        return runtime

    def room_ids(self) -> list[str]:
        return sorted(self._state.rooms)

    async def snapshot(self, room_id: str) -> RoomState:
        """Deep copy of a room's state; unknown rooms are created with defaults."""
        async with self._lock_for(room_id):
            return self._room(room_id).model_copy(deep=True)

    async def update(
        self,
        room_id: str,
        mutator: Callable[[RoomState], T],
        persist: bool = True,
    ) -> T:
        """Apply a synchronous mutator to a room and persist the snapshot.

        The in-memory change stands even if the save fails.

        Raises:
            PersistenceError: The snapshot could not be written.
        """
        async with self._lock_for(room_id):
            room = self._room(room_id)
            result = mutator(room)
            room.updated_at = _utc_now()
            self._version += 1
            version = self._version
            payload = self._state.model_dump_json(indent=2)

        if persist and self.path is not None:
            await asyncio.to_thread(self._write_snapshot, payload, version)
        return result

    async def save(self) -> None:
        """Write the current snapshot unconditionally."""
        if self.path is None:
            return
        self._version += 1
        await asyncio.to_thread(
            self._write_snapshot, self._state.model_dump_json(indent=2), self._version
        )

    # --- Persistence ---

    def _write_snapshot(self, payload: str, version: int) -> None:
        assert self.path is not None
        with self._write_lock:
            if version <= self._saved_version:
                # A newer snapshot already reached disk
                return
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                lock = FileLock(str(self.path) + ".lock", timeout=self.lock_timeout)
                with lock:
                    self._atomic_write(payload)
            except FileLockTimeout as e:
                logger.error(f"Timed out waiting for state lock {e.lock_file}")
                raise PersistenceError(f"State file is locked by another process: {self.path}") from e
            except OSError as e:
                logger.error(f"Failed to save state to {self.path}: {e}")
                raise PersistenceError(f"Failed to save state: {e}") from e
            self._saved_version = version

    def _atomic_write(self, payload: str) -> None:
        assert self.path is not None
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
