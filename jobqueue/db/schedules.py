"""
Scheduled definition state repository.

Enable/disable flags and last firing times are stored per definition name
so that the API and every scheduler instance agree on them.
"""

import logging
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.clock import Clock, utc_now
from jobqueue.db.models import ScheduleState

logger = logging.getLogger(__name__)


class ScheduleRepository:
    """Session-bound operations on scheduled_definitions. Never commits."""

    def __init__(self, session: AsyncSession, clock: Clock = utc_now):
        self._session = session
        self._clock = clock

    async def get(self, name: str, for_update: bool = False) -> ScheduleState | None:
        stmt = (
            select(ScheduleState)
            .where(ScheduleState.name == name)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_all(self, names: Iterable[str] | None = None) -> dict[str, ScheduleState]:
        """Stored state keyed by definition name; names without a row are absent."""
        stmt = select(ScheduleState).execution_options(populate_existing=True)
        if names is not None:
            stmt = stmt.where(ScheduleState.name.in_(list(names)))
        result = await self._session.execute(stmt)
        return {state.name: state for state in result.scalars().all()}

    async def _get_or_create(self, name: str, enabled: bool) -> ScheduleState:
        state = await self.get(name, for_update=True)
        if state is None:
            state = ScheduleState(name=name, enabled=enabled, updated_at=self._clock())
            self._session.add(state)
            await self._session.flush()
        return state

    async def set_enabled(self, name: str, enabled: bool) -> ScheduleState:
        """
        Enable or disable a definition fleet-wide.

        Enabling stamps enabled_at, so firings missed while disabled are skipped.
        """
        now = self._clock()
        state = await self._get_or_create(name, enabled)
        if enabled and (not state.enabled or state.enabled_at is None):
            state.enabled_at = now
        state.enabled = enabled
        state.updated_at = now
        await self._session.flush()

        logger.info(
            "Scheduled job enabled" if enabled else "Scheduled job disabled",
            extra={"definition": name},
        )
        return state

    async def record_fire(self, name: str, fire_time: datetime, default_enabled: bool = True) -> ScheduleState:
        """Remember the latest firing time; older firings never move it back."""
        state = await self._get_or_create(name, default_enabled)
        if state.last_fire_at is None or fire_time > state.last_fire_at:
            state.last_fire_at = fire_time
            state.updated_at = self._clock()
            await self._session.flush()
        return state
