"""
Leadership lease repository.

A leadership lease is a row in scheduler_leases. Whoever holds an unexpired
row may fire scheduled jobs; the fencing token grows each time the lease
changes hands so a deposed leader can be detected inside its own enqueue
transaction.
"""

import logging
from datetime import timedelta

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.clock import Clock, utc_now
from jobqueue.db.models import SchedulerLease

logger = logging.getLogger(__name__)


class LeadershipRepository:
    """Session-bound operations on scheduler_leases. Never commits."""

    def __init__(self, session: AsyncSession, clock: Clock = utc_now):
        self._session = session
        self._clock = clock

    async def get(self, name: str) -> SchedulerLease | None:
        stmt = (
            select(SchedulerLease)
            .where(SchedulerLease.name == name)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def acquire(self, name: str, holder: str, ttl: timedelta) -> SchedulerLease | None:
        """
        Acquire or renew the named lease.

        Args:
            name: Lease name shared by the fleet.
            holder: Identity of the caller.
            ttl: How long the lease stays valid without renewal.

        Returns:
            The held lease, or None if another identity holds an unexpired lease.
        """
        now = self._clock()
        lease = await self.get(name)

        if lease is None:
            lease = SchedulerLease(
                name=name,
                holder=holder,
                fencing_token=1,
                acquired_at=now,
                expires_at=now + ttl,
            )
            self._session.add(lease)
            await self._session.flush()
            logger.info("Leadership acquired", extra={"lease": name, "holder": holder, "token": 1})
            return lease

        if lease.holder == holder:
            values = {"expires_at": now + ttl}
        elif lease.expires_at <= now:
            values = {
                "holder": holder,
                "fencing_token": lease.fencing_token + 1,
                "acquired_at": now,
                "expires_at": now + ttl,
            }
        else:
            return None

        # Conditional on the token we read so two contenders cannot both win
        stmt = (
            update(SchedulerLease)
            .where(
                and_(
                    SchedulerLease.name == name,
                    SchedulerLease.holder == lease.holder,
                    SchedulerLease.fencing_token == lease.fencing_token,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            return None

        previous_holder = lease.holder
        await self._session.refresh(lease)
        if previous_holder != holder:
            logger.info(
                "Leadership taken over from expired holder",
                extra={
                    "lease": name,
                    "holder": holder,
                    "previous_holder": previous_holder,
                    "token": lease.fencing_token,
                },
            )
        return lease

    async def release(self, name: str, holder: str) -> bool:
        """
        Expire the lease immediately if held by holder.

        The row is kept so the fencing token keeps increasing.
        """
        now = self._clock()
        stmt = (
            update(SchedulerLease)
            .where(and_(SchedulerLease.name == name, SchedulerLease.holder == holder))
            .values(expires_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        released = (result.rowcount or 0) > 0
        if released:
            logger.info("Leadership released", extra={"lease": name, "holder": holder})
        return released

    async def holds(self, name: str, holder: str, token: int) -> bool:
        """Check, under a share lock, that holder still owns an unexpired lease with token."""
        stmt = (
            select(SchedulerLease)
            .where(SchedulerLease.name == name)
            .with_for_update(read=True)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        lease = result.scalar_one_or_none()
        return (
            lease is not None
            and lease.holder == holder
            and lease.fencing_token == token
            and lease.expires_at > self._clock()
        )
