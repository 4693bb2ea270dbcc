"""
Cron-style scheduler process.

Each tick renews leadership, works out which definitions fired since the
previous tick, and, while leader, enqueues one job per firing. The dedup
key "{name}:{fire_time}" makes a firing idempotent across a leadership
handover.

Enable/disable flags and last firing times live in the shared
scheduled_definitions table, so the API and every scheduler instance see
the same state.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import datetime

from jobqueue.clock import Clock
from jobqueue.config import Settings, get_settings
from jobqueue.constants import SPAN_SCHEDULER_TICK
from jobqueue.db import QueueStore, ScheduleState, close_db, get_session_factory, init_db
from jobqueue.errors import LeadershipLost, NotFound, ValidationError
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.observability.tracing import setup_tracing, start_span
from jobqueue.producer import EnqueueResult, JobSpec, Producer
from jobqueue.scheduler.definitions import (
    ScheduledJobDefinition,
    default_definitions,
    load_definition_modules,
)
from jobqueue.scheduler.leader import LeaderElector, LeaderFence
from jobqueue.types.api import ScheduleInfo
from jobqueue.worker.handlers import get_default_registry, load_handler_modules

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    definition: ScheduledJobDefinition
    # Firings at or before the cursor have been handled by this instance
    cursor: datetime


def _is_enabled(definition: ScheduledJobDefinition, state: ScheduleState | None) -> bool:
    """Stored state wins over the definition's code default."""
    return state.enabled if state is not None else definition.enabled


class Scheduler:
    """
    Periodically enqueues scheduled jobs under fleet-wide leadership.

    Definitions with leader_only=False are enqueued by every instance;
    the per-firing dedup key still keeps them to one live job.
    """

    def __init__(
        self,
        producer: Producer,
        elector: LeaderElector,
        tick_interval: float | None = None,
        clock: Clock | None = None,
        metrics: MetricsCollector | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.producer = producer
        self.elector = elector
        self.tick_interval = tick_interval or settings.scheduler_tick_interval_seconds
        self._clock = clock or producer.store.clock
        self._metrics = metrics or get_metrics()
        self._entries: dict[str, _Entry] = {}
        self._running = False
        self._stop_event = asyncio.Event()

    @property
    def store(self) -> QueueStore:
        return self.producer.store

    @property
    def identity(self) -> str:
        return self.elector.identity

    @property
    def is_leader(self) -> bool:
        return self.elector.is_leader

    def register(self, definition: ScheduledJobDefinition) -> None:
        """
        Add a definition. Firings are counted from the moment of registration.

        Raises:
            ValidationError: If a definition with the same name exists.
        """
        if definition.name in self._entries:
            raise ValidationError(f"Scheduled job already registered: {definition.name}")
        self._entries[definition.name] = _Entry(definition=definition, cursor=self._clock())
        logger.info(
            "Scheduled job registered",
            extra={"definition": definition.name, "cron": definition.cron},
        )

    def unregister(self, name: str) -> bool:
        return self._entries.pop(name, None) is not None

    def _entry(self, name: str) -> _Entry:
        entry = self._entries.get(name)
        if entry is None:
            raise NotFound(name, kind="Scheduled job")
        return entry

    def get(self, name: str) -> ScheduledJobDefinition:
        return self._entry(name).definition

    async def enable(self, name: str) -> ScheduleInfo:
        """Enable a definition for the whole fleet. Firings missed while disabled are skipped."""
        entry = self._entry(name)
        state = await self.store.set_schedule_enabled(name, True)
        entry.cursor = max(entry.cursor, self._clock())
        return self._info(entry, state, self._clock())

    async def disable(self, name: str) -> ScheduleInfo:
        """Disable a definition for the whole fleet."""
        entry = self._entry(name)
        state = await self.store.set_schedule_enabled(name, False)
        return self._info(entry, state, self._clock())

    def _info(self, entry: _Entry, state: ScheduleState | None, now: datetime) -> ScheduleInfo:
        definition = entry.definition
        enabled = _is_enabled(definition, state)
        return ScheduleInfo(
            name=definition.name,
            cron=definition.cron,
            enabled=enabled,
            leader_only=definition.leader_only,
            next_fire_at=definition.next_fire_after(now) if enabled else None,
            last_fire_at=state.last_fire_at if state is not None else None,
        )

    async def list_definitions(self) -> list[ScheduleInfo]:
        """List definitions with their next firing time (None while disabled)."""
        states = await self.store.schedule_states(self._entries)
        now = self._clock()
        return [
            self._info(self._entries[name], states.get(name), now)
            for name in sorted(self._entries)
        ]

    async def leader(self) -> str | None:
        """Identity of the instance currently holding leadership, if the lease is live."""
        lease = await self.store.get_leadership(self.elector.lease_name)
        if lease is None or lease.expires_at <= self._clock():
            return None
        return lease.holder

    def _build_spec(self, definition: ScheduledJobDefinition, fire_time: datetime, dedup_key: str) -> JobSpec:
        spec = self.producer.coerce_spec(definition.factory(fire_time))
        return spec.model_copy(update={"dedup_key": dedup_key})

    async def _enqueue(
        self,
        definition: ScheduledJobDefinition,
        spec: JobSpec,
        fire_time: datetime,
        fence: LeaderFence | None,
    ) -> EnqueueResult:
        result = await self.producer.enqueue(spec, fence=fence)
        await self.store.record_schedule_fire(definition.name, fire_time, definition.enabled)

        if result.created:
            self._metrics.record_scheduled_fired(definition.name)
            logger.info(
                "Scheduled job fired",
                extra={
                    "definition": definition.name,
                    "fire_time": fire_time.isoformat(),
                    "job_id": str(result.job_id),
                },
            )
        else:
            logger.debug(
                "Scheduled firing already enqueued",
                extra={"definition": definition.name, "job_id": str(result.job_id)},
            )
        return result

    async def trigger(self, name: str) -> EnqueueResult:
        """
        Fire a definition immediately, outside its cron cadence.

        Raises:
            NotFound: If no definition has that name.
            ValidationError: If the definition produced an invalid job.
        """
        definition = self._entry(name).definition
        now = self._clock()
        spec = self._build_spec(definition, now, f"{name}:manual:{now.isoformat()}")
        return await self._enqueue(definition, spec, now, fence=None)

    async def tick(self) -> int:
        """
        Run one scheduling pass.

        A definition's cursor moves forward once its firing was enqueued or
        deliberately skipped. A firing whose enqueue failed stays due and is
        retried on the next tick under the same dedup key.

        Returns:
            Number of jobs newly enqueued.
        """
        now = self._clock()

        with start_span(SPAN_SCHEDULER_TICK, identity=self.identity):
            is_leader = await self.elector.acquire_or_renew()
            states = await self.store.schedule_states(self._entries)

            fired = 0
            for entry in list(self._entries.values()):
                definition = entry.definition
                state = states.get(definition.name)

                if not _is_enabled(definition, state):
                    entry.cursor = now
                    continue

                start = entry.cursor
                if state is not None and state.enabled_at is not None:
                    start = max(start, state.enabled_at)
                fire_time = definition.latest_fire_between(start, now)
                if fire_time is None:
                    entry.cursor = now
                    continue

                if definition.leader_only and not is_leader:
                    logger.debug(
                        "Skipping firing, not leader",
                        extra={"definition": definition.name},
                    )
                    entry.cursor = now
                    continue

                try:
                    spec = self._build_spec(
                        definition, fire_time, f"{definition.name}:{fire_time.isoformat()}"
                    )
                except ValidationError as e:
                    logger.error(
                        f"Scheduled job produced an invalid spec: {e}",
                        extra={"definition": definition.name},
                    )
                    entry.cursor = now
                    continue
                except Exception as e:
                    logger.exception(
                        f"Scheduled job factory failed: {e}",
                        extra={"definition": definition.name},
                    )
                    entry.cursor = now
                    continue

                try:
                    fence = self.elector.fence() if definition.leader_only else None
                    result = await self._enqueue(definition, spec, fire_time, fence)
                except LeadershipLost as e:
                    logger.warning(f"Leadership lost mid-tick, aborting remaining firings: {e}")
                    self.elector.demote()
                    break
                except ValidationError as e:
                    logger.error(
                        f"Scheduled job rejected: {e}",
                        extra={"definition": definition.name},
                    )
                    entry.cursor = now
                    continue
                except Exception as e:
                    logger.exception(
                        f"Could not enqueue scheduled job, retrying next tick: {e}",
                        extra={"definition": definition.name, "fire_time": fire_time.isoformat()},
                    )
                    continue

                entry.cursor = now
                if result.created:
                    fired += 1

        return fired

    async def start(self) -> None:
        """Tick until stop() is called."""
        logger.info(
            "Scheduler starting",
            extra={"identity": self.identity, "definitions": len(self._entries)},
        )
        self._running = True
        self._stop_event.clear()

        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Error in scheduler loop: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Scheduler stopped", extra={"identity": self.identity})

    async def stop(self) -> None:
        """Stop ticking and release leadership."""
        logger.info("Scheduler stopping", extra={"identity": self.identity})
        self._running = False
        self._stop_event.set()
        await self.elector.release()


def build_scheduler(store: QueueStore, settings: Settings | None = None) -> Scheduler:
    """Wire a Scheduler from settings with every loaded definition registered."""
    settings = settings or get_settings()
    elector = LeaderElector(
        store,
        identity=settings.scheduler_id,
        lease_name=settings.scheduler_lease_name,
        ttl=settings.scheduler_leader_ttl_seconds,
    )
    producer = Producer(store, registry=get_default_registry(), settings=settings)
    scheduler = Scheduler(producer, elector, settings=settings)
    for definition in default_definitions.values():
        scheduler.register(definition)
    return scheduler


async def run_async() -> None:
    """Run the scheduler asynchronously."""
    settings = get_settings()
    setup_logging(settings, process="scheduler")
    setup_tracing(settings)
    await init_db()

    load_handler_modules(settings.worker_handler_modules)
    load_definition_modules(settings.scheduler_definition_modules)
    scheduler = build_scheduler(QueueStore.from_settings(get_session_factory(), settings), settings)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(scheduler.stop())
        )

    try:
        await scheduler.start()
    finally:
        await close_db()


def run() -> None:
    """Run the scheduler."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
