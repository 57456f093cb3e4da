"""
Cron trigger scheduler.

The scheduling loop only computes due triggers and enqueues their payloads;
running the jobs is the worker pool's business, so a slow pipeline never
delays an unrelated trigger.
"""
import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from croniter import croniter

from analytics_engine.core import metrics
from analytics_engine.core.config import settings
from analytics_engine.core.exceptions import ConfigurationError
from analytics_engine.core.logging import get_logger
from analytics_engine.models.schemas.analytics import JobPayload

logger = get_logger(__name__)

Enqueue = Callable[[JobPayload], bool]


class CronTrigger:
    """A recurring trigger evaluated in UTC."""

    def __init__(self, trigger_id: str, tenant_id: str, expression: str, payload: JobPayload):
        if not croniter.is_valid(expression):
            raise ConfigurationError(f"Invalid cron expression for trigger {trigger_id}: {expression}")
        self.trigger_id = trigger_id
        self.tenant_id = tenant_id
        self.expression = expression
        self.payload = payload
        self.next_fire: Optional[datetime] = None

    def schedule_next(self, after: datetime) -> datetime:
        """Set and return the first fire time strictly after ``after``."""
        self.next_fire = croniter(self.expression, after).get_next(datetime)
        return self.next_fire

    def __repr__(self) -> str:
        return f"CronTrigger({self.trigger_id!r}, {self.expression!r}, next_fire={self.next_fire})"


class Scheduler:
    """Holds ``(trigger, enqueue)`` pairs and fires due triggers."""

    def __init__(
        self,
        enqueue: Enqueue,
        tick_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.enqueue = enqueue
        self.tick_seconds = tick_seconds or settings.SCHEDULER_TICK_SECONDS
        self.clock = clock
        self._triggers: Dict[str, CronTrigger] = {}
        self._task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()

    # Trigger management

    def add_trigger(self, trigger: CronTrigger) -> None:
        trigger.schedule_next(self.clock())
        self._triggers[trigger.trigger_id] = trigger
        self._wakeup.set()

    def remove_trigger(self, trigger_id: str) -> bool:
        return self._triggers.pop(trigger_id, None) is not None

    def triggers_for_tenant(self, tenant_id: str) -> List[CronTrigger]:
        return [t for t in self._triggers.values() if t.tenant_id == tenant_id]

    def remove_tenant_triggers(self, tenant_id: str) -> int:
        """Stop every trigger of a tenant. Returns how many were removed."""
        stale = [t.trigger_id for t in self._triggers.values() if t.tenant_id == tenant_id]
        for trigger_id in stale:
            del self._triggers[trigger_id]
        if stale:
            logger.info(f"Removed {len(stale)} triggers for tenant {tenant_id}")
        return len(stale)

    def replace_tenant_triggers(self, tenant_id: str, triggers: Iterable[CronTrigger]) -> None:
        """
        Swap a tenant's whole trigger set.

        Runs without awaiting, so the scheduling loop never observes a mix of
        old and new triggers or a window with duplicates.
        """
        triggers = list(triggers)
        for trigger in triggers:
            if trigger.tenant_id != tenant_id:
                raise ConfigurationError(f"Trigger {trigger.trigger_id} belongs to tenant {trigger.tenant_id}")
        self.remove_tenant_triggers(tenant_id)
        for trigger in triggers:
            self.add_trigger(trigger)
        logger.info(f"Installed {len(triggers)} triggers for tenant {tenant_id}")

    @property
    def triggers(self) -> List[CronTrigger]:
        return list(self._triggers.values())

    # Firing

    def fire_due(self, now: Optional[datetime] = None) -> List[CronTrigger]:
        """
        Enqueue every trigger whose fire time has passed.

        A trigger that missed several fire times while the loop was busy
        fires once and is rescheduled after ``now``.
        """
        now = now or self.clock()
        fired = []
        for trigger in list(self._triggers.values()):
            if trigger.next_fire is None or trigger.next_fire > now:
                continue
            accepted = self.enqueue(trigger.payload)
            trigger.schedule_next(now)
            if accepted:
                metrics.scheduler_triggers_fired_total.labels(job_type=trigger.payload.job_type).inc()
                fired.append(trigger)
        return fired

    def seconds_until_next(self, now: Optional[datetime] = None) -> float:
        now = now or self.clock()
        pending = [t.next_fire for t in self._triggers.values() if t.next_fire is not None]
        if not pending:
            return self.tick_seconds
        return max(0.0, min(self.tick_seconds, (min(pending) - now).total_seconds()))

    # Loop

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="analytics-scheduler")
            logger.info(f"Scheduler started with {len(self._triggers)} triggers")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        while True:
            try:
                fired = self.fire_due()
                if fired:
                    logger.debug(f"Fired {len(fired)} triggers")
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}", exc_info=True)

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.seconds_until_next())
            except asyncio.TimeoutError:
                pass
