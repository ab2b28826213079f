"""Background scheduler that fires automations via cron expressions."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable
from zoneinfo import ZoneInfo

from automations.core.config import DedupPrecision, settings
from automations.core.store import PersistentStore
from automations.models.automation import Automation, MissedRunPolicy, RunRecord, RunStatus
from automations.services.dispatcher import AgentDispatcher, AgentStatus, Subscription
from automations.services.scheduler.cron import (
    count_missed_fire_times,
    matches_cron,
    validate_cron_expression,
)
from automations.services.scheduler.events import RefreshBroadcaster
from automations.services.scheduler.repository import AutomationRepository
from automations.services.scheduler.runs import RunRecorder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusChange:
    agent_id: str
    status: str
    prev_status: str


def _ensure_aware(value: datetime) -> datetime:
    # Timestamps persisted without an offset are taken as UTC
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class AutomationScheduler:
    """Ticks over the stored automations and fires the ones that are due.

    Owns the pending-run table that links dispatched agent ids to their
    automation, and consumes the dispatcher's status changes from an inbound
    queue to finalize run records.

    Example:
        scheduler = AutomationScheduler(PersistentStore(engine), QuickAgentDispatcher())
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        store: PersistentStore,
        dispatcher: AgentDispatcher,
        *,
        recorder: RunRecorder | None = None,
        broadcaster: RefreshBroadcaster | None = None,
        tick_interval: float | None = None,
        timezone_name: str | None = None,
        max_catchup_runs: int | None = None,
        catchup_max_iterations: int | None = None,
        dedup_precision: DedupPrecision | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.recorder = recorder or RunRecorder(store, settings.max_runs_per_automation)
        self.repository = AutomationRepository(store, self.recorder)
        self.broadcaster = broadcaster or RefreshBroadcaster()
        self.tick_interval = tick_interval or settings.tick_interval_seconds
        self.tz = ZoneInfo(timezone_name or settings.timezone)
        self.max_catchup_runs = max_catchup_runs or settings.max_catchup_runs
        self.catchup_max_iterations = catchup_max_iterations or settings.catchup_max_iterations
        self.dedup_precision = dedup_precision or settings.dedup_precision
        self._clock = clock

        # agent id -> automation id, for runs still in flight
        self.pending_runs: dict[str, str] = {}
        self.status_changes: asyncio.Queue[StatusChange] = asyncio.Queue()

        self._subscription: Subscription | None = None
        self._tick_task: asyncio.Task | None = None
        self._consumer_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._tick_task is not None

    def now(self) -> datetime:
        if self._clock:
            return self._clock()
        return datetime.now(self.tz)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            return
        self._subscription = self.dispatcher.on_status_change(self._on_status_change)
        self._consumer_task = asyncio.create_task(self._consume_status_changes())
        self._tick_task = asyncio.create_task(self._tick_loop())
        logger.info(
            f"Scheduler started (tick={self.tick_interval}s, tz={self.tz.key}, "
            f"dedup={self.dedup_precision.value})"
        )

    async def stop(self) -> None:
        """Stop ticking and consuming. In-flight fires are left to finish."""
        if not self.running:
            return
        if self._subscription:
            self._subscription.dispose()
            self._subscription = None
        for task in (self._tick_task, self._consumer_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tick_task = None
        self._consumer_task = None
        self.broadcaster.close()
        logger.info("Scheduler stopped")

    async def _tick_loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Scheduler error: {e}")
            await asyncio.sleep(self.tick_interval)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> int:
        """Evaluate every enabled automation once. Returns the number of fires."""
        now = now or self.now()
        fired = 0

        for automation in await self.repository.list_all():
            if not automation.enabled:
                continue

            error = validate_cron_expression(automation.cron_expression)
            if error:
                logger.warning(
                    f"Skipping automation '{automation.name}' with invalid cron: {error}"
                )
                continue

            last_run_at = (
                _ensure_aware(automation.last_run_at)
                if automation.last_run_at and now.tzinfo is not None
                else automation.last_run_at
            )

            if automation.missed_run_policy != MissedRunPolicy.IGNORE and last_run_at:
                missed = count_missed_fire_times(
                    automation.cron_expression,
                    last_run_at,
                    now,
                    self.catchup_max_iterations,
                )
                if missed > 0:
                    fired += await self._catch_up(automation, missed, now)
                    continue

            if not matches_cron(automation.cron_expression, now):
                continue
            if self._fired_this_minute(last_run_at, now):
                continue

            logger.info(f"Running scheduled automation: {automation.name}")
            if await self._safe_fire(automation, now):
                fired += 1

        return fired

    async def _catch_up(self, automation: Automation, missed: int, now: datetime) -> int:
        if automation.missed_run_policy == MissedRunPolicy.RUN_ONCE:
            attempts = 1
        else:
            attempts = min(missed, self.max_catchup_runs)
        logger.info(
            f"Automation '{automation.name}' missed {missed} run(s); "
            f"catching up with {attempts} ({automation.missed_run_policy.value})"
        )
        fired = 0
        for _ in range(attempts):
            if await self._safe_fire(automation, now):
                fired += 1
        return fired

    def _fired_this_minute(self, last_run_at: datetime | None, now: datetime) -> bool:
        """Same-minute guard; the tick period does not align to minute boundaries."""
        if last_run_at is None:
            return False
        if now.tzinfo is not None:
            tz = self.tz if self.dedup_precision == DedupPrecision.LOCAL_MINUTE else timezone.utc
            last_run_at = last_run_at.astimezone(tz)
            now = now.astimezone(tz)
        return (
            last_run_at.minute == now.minute
            and last_run_at.hour == now.hour
            and last_run_at.day == now.day
            and last_run_at.month == now.month
            and last_run_at.year == now.year
        )

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    async def _safe_fire(self, automation: Automation, now: datetime) -> bool:
        try:
            await self.fire(automation, now)
            return True
        except Exception:
            # Left scheduled; reconsidered on the next tick
            logger.exception(f"Scheduled automation '{automation.name}' failed to fire")
            return False

    async def fire(self, automation: Automation, now: datetime) -> str:
        """Dispatch one agent run for ``automation`` and record it."""
        agent_id = await self.dispatcher.run_quick(
            automation.prompt, automation.dispatch_options()
        )
        self.pending_runs[agent_id] = automation.id

        await self.recorder.record_start(automation.id, agent_id, now)
        await self.repository.set_last_run(automation.id, now)
        automation.last_run_at = now

        self.broadcaster.publish("fired", automation_id=automation.id, agent_id=agent_id)
        return agent_id

    async def run_now(self, automation_id: str | None) -> str | None:
        """Fire immediately, ignoring ``enabled`` and the schedule.

        Returns the agent id, or None if the automation does not exist or the
        dispatch failed.
        """
        if not automation_id:
            return None
        automation = await self.repository.get(automation_id)
        if automation is None:
            logger.warning(f"Run-now requested for unknown automation {automation_id}")
            return None

        logger.info(f"Manual run of automation: {automation.name}")
        try:
            return await self.fire(automation, self.now())
        except Exception:
            logger.exception(f"Manual run of '{automation.name}' failed")
            return None

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _on_status_change(self, agent_id: str, status: str, prev_status: str) -> None:
        self.status_changes.put_nowait(StatusChange(agent_id, status, prev_status))

    async def _consume_status_changes(self) -> None:
        while True:
            change = await self.status_changes.get()
            try:
                await self.handle_status_change(change)
            except Exception as e:
                logger.error(f"Failed to record completion for {change.agent_id}: {e}")
            finally:
                self.status_changes.task_done()

    async def handle_status_change(self, change: StatusChange) -> RunRecord | None:
        automation_id = self.pending_runs.get(change.agent_id)
        if automation_id is None:
            return None

        finished = change.prev_status == AgentStatus.RUNNING.value and change.status in (
            AgentStatus.SLEEPING.value,
            AgentStatus.ERROR.value,
        )
        if not finished:
            return None

        # Drop the correlation before any await so a duplicate event is a no-op
        del self.pending_runs[change.agent_id]

        info = next(
            (c for c in self.dispatcher.list_completed() if c.id == change.agent_id),
            None,
        )
        run_status = (
            RunStatus.COMPLETED
            if change.status == AgentStatus.SLEEPING.value
            else RunStatus.FAILED
        )
        record = await self.recorder.finalize(
            automation_id,
            change.agent_id,
            run_status,
            summary=info.summary if info else None,
            exit_code=info.exit_code if info else None,
            completed_at=self.now(),
        )
        logger.info(
            f"Automation run {change.agent_id} finished with status {run_status.value}"
        )
        self.broadcaster.publish(
            "run-finished", automation_id=automation_id, agent_id=change.agent_id
        )
        return record
