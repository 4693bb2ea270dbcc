"""
Scheduled job definitions.

A definition pairs a cron expression with a factory producing the job spec
for each firing. Cron expressions are the standard 5-field form; a 6th
field is read as seconds.
"""

import importlib
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from croniter import croniter

from jobqueue.errors import ValidationError

logger = logging.getLogger(__name__)

JobFactory = Callable[[datetime], Any]


@dataclass
class ScheduledJobDefinition:
    """A recurring job: name, cron cadence and the factory building each firing's spec."""

    name: str
    cron: str
    factory: JobFactory
    leader_only: bool = True
    enabled: bool = True

    def __post_init__(self) -> None:
        if not self.name:
            raise ValidationError("Scheduled job name must not be empty")
        if not croniter.is_valid(self.cron):
            raise ValidationError(f"Invalid cron expression for {self.name}: {self.cron!r}")

    def next_fire_after(self, moment: datetime) -> datetime:
        """First firing strictly after moment."""
        return croniter(self.cron, moment).get_next(datetime)

    def latest_fire_between(self, start: datetime, end: datetime) -> datetime | None:
        """
        Latest firing in (start, end], or None.

        Several firings inside the window coalesce into the last one.
        """
        schedule = croniter(self.cron, start)
        latest = None
        fire = schedule.get_next(datetime)
        while fire <= end:
            latest = fire
            fire = schedule.get_next(datetime)
        return latest


# Definitions collected by the scheduled_job decorator
default_definitions: dict[str, ScheduledJobDefinition] = {}


def scheduled_job(
    name: str,
    cron: str,
    leader_only: bool = True,
    enabled: bool = True,
) -> Callable[[JobFactory], JobFactory]:
    """
    Decorator registering a factory as a scheduled job definition.

    Example:
        @scheduled_job("nightly-report", "0 2 * * *")
        def nightly_report(fire_time: datetime) -> JobSpec:
            return JobSpec(handler="build_report", payload={"day": fire_time.date().isoformat()})
    """

    def decorator(factory: JobFactory) -> JobFactory:
        default_definitions[name] = ScheduledJobDefinition(
            name=name,
            cron=cron,
            factory=factory,
            leader_only=leader_only,
            enabled=enabled,
        )
        logger.debug(f"Registered scheduled job: {name}")
        return factory

    return decorator


def load_definition_modules(modules: Iterable[str]) -> None:
    """Import modules whose import registers scheduled job definitions."""
    for module in modules:
        importlib.import_module(module)
        logger.info(f"Loaded scheduled job module: {module}")
