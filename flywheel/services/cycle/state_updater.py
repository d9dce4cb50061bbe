"""
Cycle State Updater

Holds the authoritative in-memory CycleSnapshot per token and decides when
it is written to the cycle_states table.

Write strategies:
- ImmediateWriteStrategy: every transition is persisted before the tick ends
- BatchedWriteStrategy: persist on phase flip, or once the last write is
  older than the flush interval; the periodic flush job covers the rest

A failed write never rolls back the in-memory state. The entry stays dirty
and is written on the token's next tick or the next flush.

Each executor call is tagged with an attempt id. An outcome that arrives
for an attempt that is no longer current (late completion after a timeout
or a restart) is discarded.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.config import STATE_FLUSH_INTERVAL_SECONDS
from flywheel.core.exceptions import PersistenceError
from flywheel.database import crud
from flywheel.database.engine import get_session_maker
from flywheel.services.cycle.state_machine import CycleSnapshot


@dataclass
class _Entry:
    snapshot: CycleSnapshot
    dirty: bool = False
    last_persisted_at: Optional[float] = None
    attempt_id: int = 0
    retry_pending: bool = False
    persist_failures: int = 0


class WriteStrategy(ABC):
    name = "base"

    @abstractmethod
    def should_persist(self, last_persisted_at: Optional[float], now: float, phase_flipped: bool) -> bool:
        ...


class ImmediateWriteStrategy(WriteStrategy):
    name = "immediate"

    def should_persist(self, last_persisted_at, now, phase_flipped) -> bool:
        return True


class BatchedWriteStrategy(WriteStrategy):
    name = "batched"

    def __init__(self, flush_interval_seconds: float = STATE_FLUSH_INTERVAL_SECONDS):
        self.flush_interval_seconds = flush_interval_seconds

    def should_persist(self, last_persisted_at, now, phase_flipped) -> bool:
        if phase_flipped:
            return True
        if last_persisted_at is None:
            return True
        return now - last_persisted_at >= self.flush_interval_seconds


IMMEDIATE = ImmediateWriteStrategy()


def strategy_for(batch_state_updates: bool, flush_interval_seconds: float = STATE_FLUSH_INTERVAL_SECONDS) -> WriteStrategy:
    if batch_state_updates:
        return BatchedWriteStrategy(flush_interval_seconds)
    return IMMEDIATE


class StateUpdater:
    """
    In-memory cycle state with write-through / write-behind persistence.
    """

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        flush_interval_seconds: float = STATE_FLUSH_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session_maker = session_maker
        self.flush_interval_seconds = flush_interval_seconds
        self._clock = clock
        self._entries: Dict[int, _Entry] = {}
        self._persist_locks: Dict[int, asyncio.Lock] = {}

    @property
    def session_maker(self) -> async_sessionmaker[AsyncSession]:
        if self._session_maker is None:
            self._session_maker = get_session_maker()
        return self._session_maker

    def strategy_for(self, batch_state_updates: bool) -> WriteStrategy:
        return strategy_for(batch_state_updates, self.flush_interval_seconds)

    async def load(self, token_id: int) -> CycleSnapshot:
        """
        Current snapshot for a token

        Served from memory once loaded; the first call reads (or creates)
        the cycle_states row.
        """
        entry = self._entries.get(token_id)
        if entry is not None:
            return entry.snapshot

        async with self.session_maker() as session:
            state, created = await crud.get_or_create_cycle_state(session, token_id)
            snapshot = CycleSnapshot.from_model(state)

        if created:
            logger.info(f"Cycle state initialised for token {token_id}")

        # Another task may have loaded it while we awaited
        entry = self._entries.setdefault(
            token_id, _Entry(snapshot=snapshot, last_persisted_at=self._clock())
        )
        return entry.snapshot

    def peek(self, token_id: int) -> Optional[CycleSnapshot]:
        entry = self._entries.get(token_id)
        return entry.snapshot if entry else None

    def is_dirty(self, token_id: int) -> bool:
        entry = self._entries.get(token_id)
        return bool(entry and entry.dirty)

    def begin_attempt(self, token_id: int) -> int:
        """Start a new executor attempt; older attempt ids become stale."""
        entry = self._entries[token_id]
        entry.attempt_id += 1
        return entry.attempt_id

    def abandon_attempt(self, token_id: int) -> None:
        entry = self._entries.get(token_id)
        if entry is not None:
            entry.attempt_id += 1

    async def apply(
        self,
        token_id: int,
        snapshot: CycleSnapshot,
        strategy: WriteStrategy = IMMEDIATE,
        attempt_id: Optional[int] = None,
        phase_flipped: bool = False,
    ) -> bool:
        """
        Install a new snapshot and persist it if the strategy says so

        Args:
            token_id: Token the snapshot belongs to
            snapshot: New state
            strategy: Write strategy of the token's config
            attempt_id: Executor attempt this snapshot results from
            phase_flipped: Transition was a phase flip

        Returns:
            True if the snapshot was installed (False for stale attempts)
        """
        entry = self._entries.get(token_id)
        current_attempt = entry.attempt_id if entry else None

        if attempt_id is not None and attempt_id != current_attempt:
            logger.warning(
                f"Discarding stale outcome for token {token_id} "
                f"(attempt {attempt_id}, current {current_attempt})"
            )
            return False

        if entry is None:
            entry = self._entries[token_id] = _Entry(snapshot=snapshot)

        entry.snapshot = snapshot
        entry.dirty = True

        if entry.retry_pending or strategy.should_persist(
            entry.last_persisted_at, self._clock(), phase_flipped
        ):
            await self._persist(token_id, entry)
        return True

    async def retry_failed(self, token_id: int) -> bool:
        """Re-attempt a write that failed earlier. Returns True if nothing is pending."""
        entry = self._entries.get(token_id)
        if entry is None or not entry.retry_pending:
            return True
        return await self._persist(token_id, entry)

    async def _persist(self, token_id: int, entry: _Entry) -> bool:
        lock = self._persist_locks.setdefault(token_id, asyncio.Lock())
        async with lock:
            snapshot = entry.snapshot
            try:
                async with self.session_maker() as session:
                    await crud.save_cycle_state(session, token_id, snapshot.to_values())
            except Exception as e:
                entry.retry_pending = True
                entry.persist_failures += 1
                logger.warning(
                    f"Cycle state write failed for token {token_id} "
                    f"(attempt {entry.persist_failures}), will retry: {e}"
                )
                return False

            entry.retry_pending = False
            entry.persist_failures = 0
            entry.last_persisted_at = self._clock()
            # A newer snapshot may have been installed during the write
            if entry.snapshot is snapshot:
                entry.dirty = False
            return True

    async def flush(self) -> int:
        """
        Persist every dirty snapshot

        Returns:
            Number of snapshots written
        """
        written = 0
        for token_id, entry in list(self._entries.items()):
            if entry.dirty and await self._persist(token_id, entry):
                written += 1

        if written:
            logger.debug(f"Cycle state flush: {written} token(s) written")
        return written

    async def clamp_counters(self, token_id: int, cycle_size_buys: int, cycle_size_sells: int) -> bool:
        """
        Lower cached counters to new cycle sizes and write them

        Returns:
            True if the cached snapshot changed
        """
        entry = self._entries.get(token_id)
        if entry is None:
            return False

        snapshot = entry.snapshot
        clamped = replace(
            snapshot,
            buy_count=min(snapshot.buy_count, cycle_size_buys),
            sell_count=min(snapshot.sell_count, cycle_size_sells),
        )
        if clamped == snapshot:
            return False

        entry.snapshot = clamped
        entry.dirty = True
        await self._persist(token_id, entry)
        return True

    async def drop(self, token_id: int, flush: bool = True) -> None:
        """
        Forget a token (unscheduled); dirty state is written first

        Raises:
            PersistenceError: The final write failed. The entry is kept and
                written by the next flush.
        """
        entry = self._entries.get(token_id)
        if entry is None:
            return
        if flush and entry.dirty and not await self._persist(token_id, entry):
            raise PersistenceError(
                f"Cycle state for token {token_id} not written, kept for the next flush"
            )
        self._entries.pop(token_id, None)
        self._persist_locks.pop(token_id, None)

    def invalidate(self, token_id: int) -> None:
        """Next load() re-reads from the database."""
        self._entries.pop(token_id, None)

    def pending_writes(self) -> int:
        return sum(1 for e in self._entries.values() if e.dirty)

    def tracked_tokens(self) -> int:
        return len(self._entries)
