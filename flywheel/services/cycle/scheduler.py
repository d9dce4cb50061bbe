"""
Cycle Scheduler

Drives every active token through its buy/sell cycle with APScheduler.

Jobs:
- flywheel_sync: re-reads active tokens, adds / removes / reschedules token jobs
- flywheel_token_<id>: one per token, polls at half its job interval
- flywheel_state_flush: writes batched cycle state
- flywheel_auto_claim: creator fee claims (when a claim service is configured)

Token jobs run as independent asyncio tasks, so one slow confirmation does
not hold up other tokens. A per-token lock guarantees at most one tick in
flight per token; the interval check in the state machine guarantees at
most one attempt per job interval, whatever the previous outcome was.
"""

import asyncio
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.config import (
    AUTO_CLAIM_INTERVAL_MINUTES,
    FLYWHEEL_SYNC_INTERVAL_SECONDS,
    STATE_FLUSH_INTERVAL_SECONDS,
)
from flywheel.core.enums import AuditEventType, CheckResult
from flywheel.core.exceptions import PersistenceError, TokenNotFoundError
from flywheel.database import crud
from flywheel.database.engine import get_session_maker
from flywheel.services.cycle.executor import (
    FeeClaimService,
    TradeExecutor,
    TradeOutcome,
    TradeRequest,
    execute_with_timeout,
)
from flywheel.services.cycle.fee_claim import run_auto_claim
from flywheel.services.cycle.rate_limiter import GlobalRateLimiter
from flywheel.services.cycle.state_machine import (
    DEFAULT_FAILURE_POLICY,
    CycleSettings,
    CycleSnapshot,
    FailurePolicy,
    TickAction,
    apply_flip,
    apply_rate_limited,
    apply_trade_outcome,
    clear_expired_pause,
    decide,
    just_paused,
)
from flywheel.services.cycle.state_updater import StateUpdater
from flywheel.utils.timeutils import isoformat_or_none, utcnow


TOKEN_JOB_PREFIX = "flywheel_token_"


def token_job_id(token_id: int) -> str:
    return f"{TOKEN_JOB_PREFIX}{token_id}"


def poll_seconds(job_interval_seconds: int) -> int:
    """Token jobs poll at half the interval so a late run never skips a slot."""
    return max(1, job_interval_seconds // 2)


def runnable_settings(token) -> Optional[CycleSettings]:
    """
    CycleSettings for a token the scheduler can run, None otherwise

    Stored modes outside AlgorithmMode (legacy rows) are treated like
    rebalance: logged and skipped, never raised into the job loop.
    """
    try:
        settings = CycleSettings.from_model(token.config)
    except ValueError:
        logger.warning(f"Token {token.id} has unknown algorithm mode {token.config.algorithm_mode!r}, skipped")
        return None

    if not settings.algorithm_mode.is_runnable():
        logger.warning(f"Token {token.id}: algorithm mode {settings.algorithm_mode.value} is not runnable")
        return None
    return settings


def token_status(token, snapshot: Optional[CycleSnapshot] = None) -> Dict[str, Any]:
    """
    Read-only cycle status for a UserToken (config and cycle_state loaded)

    Uses the in-memory snapshot when given, the stored row otherwise.
    """
    source = "memory"
    if snapshot is None:
        source = "database"
        snapshot = (
            CycleSnapshot.from_model(token.cycle_state)
            if token.cycle_state is not None
            else CycleSnapshot(token_id=token.id)
        )

    return {
        "user_token_id": token.id,
        "phase": snapshot.phase,
        "buy_count": snapshot.buy_count,
        "sell_count": snapshot.sell_count,
        "cycle_size_buys": token.config.cycle_size_buys if token.config else None,
        "cycle_size_sells": token.config.cycle_size_sells if token.config else None,
        "last_trade_at": snapshot.last_trade_at,
        "last_check_at": snapshot.last_check_at,
        "last_check_result": snapshot.last_check_result,
        "consecutive_failures": snapshot.consecutive_failures,
        "total_failures": snapshot.total_failures,
        "paused_until": snapshot.paused_until,
        "source": source,
    }


class CycleScheduler:
    """
    APScheduler host for the flywheel cycle jobs.
    """

    def __init__(
        self,
        executor: TradeExecutor,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        rate_limiter: Optional[GlobalRateLimiter] = None,
        state_updater: Optional[StateUpdater] = None,
        fee_claim_service: Optional[FeeClaimService] = None,
        failure_policy: FailurePolicy = DEFAULT_FAILURE_POLICY,
        sync_interval_seconds: int = FLYWHEEL_SYNC_INTERVAL_SECONDS,
        flush_interval_seconds: int = STATE_FLUSH_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.executor = executor
        self._session_maker = session_maker
        self.rate_limiter = rate_limiter or GlobalRateLimiter()
        self.state_updater = state_updater or StateUpdater(
            session_maker=session_maker, flush_interval_seconds=flush_interval_seconds
        )
        self.fee_claim_service = fee_claim_service
        self.failure_policy = failure_policy
        self.sync_interval_seconds = sync_interval_seconds
        self.flush_interval_seconds = flush_interval_seconds
        self._clock = clock

        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self._token_locks: Dict[int, asyncio.Lock] = {}
        self._scheduled: Dict[int, int] = {}  # token_id -> poll seconds
        self._results: Counter = Counter()
        self._started_at: Optional[datetime] = None
        self._last_sync_at: Optional[datetime] = None
        self._extra_jobs: List[Callable[[AsyncIOScheduler], None]] = []

    @property
    def session_maker(self) -> async_sessionmaker[AsyncSession]:
        if self._session_maker is None:
            self._session_maker = get_session_maker()
        return self._session_maker

    def add_jobs(self, installer: Callable[[AsyncIOScheduler], None]):
        """Register extra jobs (e.g. schedule_reconcile_tasks), re-added on every start."""
        self._extra_jobs.append(installer)
        if self.scheduler is not None:
            installer(self.scheduler)

    @property
    def is_running(self) -> bool:
        return self._running

    # ===========================
    # LIFECYCLE
    # ===========================

    def start(self):
        """Start the scheduler; token jobs are created by the first sync."""
        if self._running:
            logger.warning("Cycle scheduler already running")
            return

        self.scheduler = AsyncIOScheduler(timezone="UTC")

        self.scheduler.add_job(
            self._job_sync,
            IntervalTrigger(seconds=self.sync_interval_seconds),
            id="flywheel_sync",
            name="Flywheel Token Sync",
            next_run_time=datetime.now(self.scheduler.timezone),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        self.scheduler.add_job(
            self._job_flush,
            IntervalTrigger(seconds=self.flush_interval_seconds),
            id="flywheel_state_flush",
            name="Flywheel State Flush",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        if self.fee_claim_service is not None:
            self.scheduler.add_job(
                self._job_auto_claim,
                IntervalTrigger(minutes=AUTO_CLAIM_INTERVAL_MINUTES),
                id="flywheel_auto_claim",
                name="Flywheel Auto Claim",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )

        for installer in self._extra_jobs:
            installer(self.scheduler)

        self.scheduler.start()
        self._running = True
        self._started_at = self._clock()

        logger.info(
            f"Cycle scheduler started: sync every {self.sync_interval_seconds}s, "
            f"flush every {self.flush_interval_seconds}s, "
            f"limit {self.rate_limiter.max_operations} trades / {self.rate_limiter.window_seconds:.0f}s"
        )

    async def stop(self):
        """Stop all jobs and write pending cycle state."""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        self._running = False
        self._scheduled.clear()

        written = await self.state_updater.flush()
        logger.info(f"Cycle scheduler stopped ({written} pending state write(s) flushed)")

    async def restart(self):
        """Stop, drop cached state, start again (state reloads from the database)."""
        await self.stop()
        for token_id in list(self._token_locks):
            self.state_updater.abandon_attempt(token_id)
            self.state_updater.invalidate(token_id)
        self.start()
        logger.info("Cycle scheduler restarted")

    # ===========================
    # JOB SYNC
    # ===========================

    async def sync_jobs(self) -> Dict[str, int]:
        """
        Align token jobs with the set of active flywheel tokens

        Returns:
            Dict with added / removed / rescheduled counts
        """
        async with self.session_maker() as session:
            tokens = await crud.get_active_flywheel_tokens(session)

        wanted: Dict[int, int] = {}
        for token in tokens:
            if runnable_settings(token) is None:
                continue
            wanted[token.id] = poll_seconds(token.config.job_interval_seconds)

        added = removed = rescheduled = 0

        for token_id in list(self._scheduled):
            if token_id not in wanted:
                self._remove_token_job(token_id)
                try:
                    await self.state_updater.drop(token_id)
                except PersistenceError as e:
                    logger.warning(str(e))
                self.rate_limiter.forget(token_id)
                lock = self._token_locks.get(token_id)
                if lock is not None and not lock.locked():
                    del self._token_locks[token_id]
                removed += 1

        for token_id, seconds in wanted.items():
            current = self._scheduled.get(token_id)
            if current == seconds:
                continue
            self._add_token_job(token_id, seconds)
            if current is None:
                added += 1
            else:
                rescheduled += 1

        self._last_sync_at = self._clock()

        if added or removed or rescheduled:
            logger.info(
                f"Flywheel sync: {len(wanted)} active token(s), "
                f"added={added}, removed={removed}, rescheduled={rescheduled}"
            )
        return {"added": added, "removed": removed, "rescheduled": rescheduled}

    def _add_token_job(self, token_id: int, seconds: int):
        self._scheduled[token_id] = seconds
        if self.scheduler is None:
            return
        self.scheduler.add_job(
            self._job_tick,
            IntervalTrigger(seconds=seconds),
            args=[token_id],
            id=token_job_id(token_id),
            name=f"Flywheel Token {token_id}",
            next_run_time=datetime.now(self.scheduler.timezone),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    def _remove_token_job(self, token_id: int):
        self._scheduled.pop(token_id, None)
        if self.scheduler is None:
            return
        if self.scheduler.get_job(token_job_id(token_id)):
            self.scheduler.remove_job(token_job_id(token_id))

    # ===========================
    # TICK
    # ===========================

    async def tick(self, token_id: int, wait: bool = False) -> Optional[CheckResult]:
        """
        Evaluate one token once

        Args:
            token_id: UserToken ID
            wait: Wait for an in-flight tick instead of skipping

        Returns:
            CheckResult recorded by this tick, or None when nothing was due
        """
        lock = self._token_locks.setdefault(token_id, asyncio.Lock())
        if lock.locked() and not wait:
            logger.debug(f"Token {token_id}: previous tick still running, skipped")
            return None

        async with lock:
            return await self._tick_locked(token_id)

    async def _tick_locked(self, token_id: int) -> Optional[CheckResult]:
        now = self._clock()

        await self.state_updater.retry_failed(token_id)

        async with self.session_maker() as session:
            token = await crud.get_user_token(session, token_id)

        if token is None or token.config is None:
            logger.warning(f"Token {token_id} missing or has no config, tick skipped")
            return None
        if not token.is_active or not token.config.flywheel_active:
            return None

        settings = runnable_settings(token)
        if settings is None:
            return None

        strategy = self.state_updater.strategy_for(settings.batch_state_updates)
        snapshot = await self.state_updater.load(token_id)

        unpaused = clear_expired_pause(snapshot, now)
        if unpaused is not snapshot:
            logger.info(f"Token {token_id}: pause expired, resuming")
            await self.state_updater.apply(token_id, unpaused, strategy)
            snapshot = unpaused

        action = decide(snapshot, settings, now)

        if action in (TickAction.PAUSED, TickAction.WAIT):
            return None

        if action is TickAction.FLIP:
            flipped = apply_flip(snapshot, now)
            await self.state_updater.apply(token_id, flipped, strategy, phase_flipped=True)
            logger.info(
                f"Token {token_id}: {snapshot.phase.value} phase complete "
                f"({snapshot.count_for(snapshot.phase)}/{settings.target_for(snapshot.phase)}), "
                f"switching to {flipped.phase.value}"
            )
            return self._count(CheckResult.BALANCED)

        if not self.rate_limiter.try_acquire(token_id, share=settings.rate_limit_per_minute):
            await self.state_updater.apply(token_id, apply_rate_limited(snapshot, now), strategy)
            return self._count(CheckResult.RATE_LIMITED)

        attempt_id = self.state_updater.begin_attempt(token_id)
        request = TradeRequest.for_token(token, settings, snapshot.phase)
        outcome = await execute_with_timeout(self.executor, request)

        updated = apply_trade_outcome(
            snapshot,
            success=outcome.success,
            reason=outcome.reason,
            now=now,
            error=outcome.error,
            policy=self.failure_policy,
        )
        await self.state_updater.apply(token_id, updated, strategy, attempt_id=attempt_id)
        await self._record_trade(token_id, request, outcome)

        if outcome.success:
            logger.info(
                f"Token {token_id}: {snapshot.phase.value} "
                f"{updated.count_for(updated.phase)}/{settings.target_for(updated.phase)} filled"
            )
        elif just_paused(snapshot, updated):
            await self._on_paused(token, updated)
        elif updated.last_check_result.is_failure():
            logger.warning(
                f"Token {token_id}: {snapshot.phase.value} not filled ({outcome.reason.value}): {outcome.error}"
            )
        else:
            logger.info(f"Token {token_id}: {snapshot.phase.value} skipped ({outcome.reason.value})")

        return self._count(updated.last_check_result)

    def _count(self, result: CheckResult) -> CheckResult:
        self._results[result.value] += 1
        return result

    async def _record_trade(self, token_id: int, request: TradeRequest, outcome: TradeOutcome):
        try:
            async with self.session_maker() as session:
                await crud.record_trade(
                    session,
                    token_id=token_id,
                    trade_type=request.phase,
                    success=outcome.success,
                    reason=outcome.reason.value,
                    amount=outcome.amount,
                    signature=outcome.signature,
                    latency_ms=outcome.latency_ms,
                    error=outcome.error,
                )
        except Exception as e:
            logger.error(f"Failed to record trade for token {token_id}: {e}")

    async def _on_paused(self, token, snapshot: CycleSnapshot):
        logger.warning(
            f"Token {token.id} paused until {isoformat_or_none(snapshot.paused_until)} "
            f"after {snapshot.consecutive_failures} consecutive failures "
            f"(last: {snapshot.last_failure_reason})"
        )
        async with self.session_maker() as session:
            await crud.log_audit_event(
                session,
                AuditEventType.FLYWHEEL_PAUSED,
                user_token_id=token.id,
                owner_id=token.owner_id,
                details={
                    "consecutive_failures": snapshot.consecutive_failures,
                    "paused_until": isoformat_or_none(snapshot.paused_until),
                    "last_failure_reason": snapshot.last_failure_reason,
                },
            )

    # ===========================
    # MANUAL OPERATIONS
    # ===========================

    async def run_cycle(self) -> Dict[int, Optional[str]]:
        """
        Tick every active token now, in round-robin order

        Returns:
            Dict token_id -> check result value (None when nothing was due)
        """
        async with self.session_maker() as session:
            tokens = await crud.get_active_flywheel_tokens(session)

        ordered = self.rate_limiter.order_fairly(t.id for t in tokens)
        tasks = [asyncio.create_task(self.tick(token_id)) for token_id in ordered]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        summary: Dict[int, Optional[str]] = {}
        for token_id, result in zip(ordered, results):
            if isinstance(result, Exception):
                logger.error(f"Token {token_id}: tick failed: {result}")
                summary[token_id] = CheckResult.ERROR.value
            else:
                summary[token_id] = result.value if result else None

        logger.info(f"Manual flywheel cycle: {len(summary)} token(s) evaluated")
        return summary

    async def trigger(self, token_id: int) -> Optional[CheckResult]:
        """
        Tick one token now instead of waiting for its next poll

        Raises:
            TokenNotFoundError: Unknown token
        """
        async with self.session_maker() as session:
            token = await crud.get_user_token(session, token_id)
        if token is None:
            raise TokenNotFoundError(token_id)

        return await self.tick(token_id, wait=True)

    async def clamp_counters(self, token_id: int, cycle_size_buys: int, cycle_size_sells: int) -> bool:
        """Apply lowered cycle sizes to cached state once any in-flight tick is done."""
        lock = self._token_locks.get(token_id)
        if lock is None:
            return await self.state_updater.clamp_counters(token_id, cycle_size_buys, cycle_size_sells)
        async with lock:
            return await self.state_updater.clamp_counters(token_id, cycle_size_buys, cycle_size_sells)

    async def get_token_status(self, token_id: int) -> Dict[str, Any]:
        """
        Cycle state for one token, in-memory snapshot when available

        Raises:
            TokenNotFoundError: Unknown token
        """
        async with self.session_maker() as session:
            token = await crud.get_user_token(session, token_id)
        if token is None:
            raise TokenNotFoundError(token_id)

        return token_status(token, self.state_updater.peek(token_id))

    def get_status(self) -> Dict[str, Any]:
        """Scheduler status for the job status endpoint."""
        jobs: List[Dict[str, Any]] = []
        if self.scheduler:
            for job in self.scheduler.get_jobs():
                jobs.append({
                    "id": job.id,
                    "name": job.name,
                    "next_run_time": isoformat_or_none(job.next_run_time),
                })

        return {
            "running": self._running,
            "started_at": isoformat_or_none(self._started_at),
            "last_sync_at": isoformat_or_none(self._last_sync_at),
            "scheduled_tokens": len(self._scheduled),
            "pending_state_writes": self.state_updater.pending_writes(),
            "results": dict(self._results),
            "rate_limiter": self.rate_limiter.get_stats(),
            "jobs": jobs,
        }

    # ===========================
    # JOB WRAPPERS
    # ===========================

    async def _job_sync(self):
        try:
            await self.sync_jobs()
        except Exception as e:
            logger.exception(f"Flywheel sync job failed: {e}")

    async def _job_tick(self, token_id: int):
        try:
            await self.tick(token_id)
        except Exception as e:
            logger.exception(f"Flywheel tick failed for token {token_id}: {e}")

    async def _job_flush(self):
        try:
            await self.state_updater.flush()
        except Exception as e:
            logger.exception(f"Flywheel state flush failed: {e}")

    async def _job_auto_claim(self):
        try:
            await run_auto_claim(self.fee_claim_service, self.session_maker)
        except Exception as e:
            logger.exception(f"Flywheel auto-claim job failed: {e}")
