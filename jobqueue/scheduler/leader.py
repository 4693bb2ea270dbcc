"""
Leader election over a time-bounded lease in the shared store.

Leadership is never assumed beyond the lease expiry the store reported;
every scheduled enqueue carries a fence the store re-checks atomically.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta

from jobqueue.clock import Clock
from jobqueue.constants import DEFAULT_LEASE_NAME
from jobqueue.db.store import QueueStore
from jobqueue.errors import LeadershipLost, StoreUnavailable
from jobqueue.observability.metrics import MetricsCollector, get_metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaderFence:
    """Proof of leadership presented to the store with an enqueue."""

    lease_name: str
    holder: str
    token: int


class LeaderElector:
    """Acquires, renews and releases one named leadership lease."""

    def __init__(
        self,
        store: QueueStore,
        identity: str | None = None,
        lease_name: str = DEFAULT_LEASE_NAME,
        ttl: float | timedelta = 15.0,
        metrics: MetricsCollector | None = None,
        clock: Clock | None = None,
    ):
        self.store = store
        self.identity = identity or f"{os.uname().nodename}-{os.getpid()}"
        self.lease_name = lease_name
        self.ttl = ttl if isinstance(ttl, timedelta) else timedelta(seconds=ttl)
        self._metrics = metrics or get_metrics()
        self._clock = clock or store.clock
        self._token: int | None = None
        self._expires_at: datetime | None = None

    @property
    def is_leader(self) -> bool:
        """True while the last acquired lease has not expired locally."""
        return (
            self._token is not None
            and self._expires_at is not None
            and self._clock() < self._expires_at
        )

    @property
    def token(self) -> int | None:
        return self._token

    def _set(self, token: int | None, expires_at: datetime | None) -> None:
        was_leader = self._token is not None
        self._token = token
        self._expires_at = expires_at
        if token is not None and not was_leader:
            logger.info(
                "Became scheduler leader",
                extra={"identity": self.identity, "lease": self.lease_name, "token": token},
            )
        elif token is None and was_leader:
            logger.warning(
                "Lost scheduler leadership",
                extra={"identity": self.identity, "lease": self.lease_name},
            )
        self._metrics.set_leader(self.identity, token is not None)

    async def acquire_or_renew(self) -> bool:
        """
        Try to take or extend the lease.

        Returns:
            True if this instance holds leadership afterwards.
        """
        try:
            lease = await self.store.acquire_leadership(self.lease_name, self.identity, self.ttl)
        except StoreUnavailable as e:
            logger.error(f"Cannot reach store to renew leadership: {e}")
            self._set(None, None)
            return False

        if lease is None:
            self._set(None, None)
        else:
            self._set(lease.fencing_token, lease.expires_at)
        return self.is_leader

    def fence(self) -> LeaderFence:
        """
        Fence for the currently held lease.

        Raises:
            LeadershipLost: If leadership is not held.
        """
        if not self.is_leader:
            raise LeadershipLost(f"{self.identity} does not hold lease {self.lease_name}")
        return LeaderFence(lease_name=self.lease_name, holder=self.identity, token=self._token)

    def demote(self) -> None:
        """Forget leadership locally after the store rejected a fence."""
        self._set(None, None)

    async def release(self) -> None:
        """Give up the lease so another instance can take over without waiting for expiry."""
        if self._token is None:
            return
        await self.store.release_leadership(self.lease_name, self.identity)
        self._set(None, None)
