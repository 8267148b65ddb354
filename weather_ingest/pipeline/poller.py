"""Poller activo: catch-up periódico de lecturas que el transporte no entregó.

Cada proceso revisa el lease cada ``check_interval`` (~5s). Solo el
holder del lease ejecuta ``fetch_missed`` una vez por ``poll_interval``.
Si el holder muere, su lease caduca (1.5x poll_interval) y otro proceso
lo reclama en el siguiente check. Best-effort: dos pollers solapados
un instante solo producen trabajo redundante.

Los reintentos de persistencia pendientes son del proceso que falló y
corren con la misma cadencia en todos los procesos, tengan o no el lease.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from redis.exceptions import RedisError

from ..coordination.lease import PollerLease
from ..domain.errors import StoreError
from .coordinator import IngestionCoordinator

logger = logging.getLogger(__name__)


class ActivePoller:
    """Loop de elección + catch-up. Un task por proceso."""

    def __init__(
        self,
        coordinator: IngestionCoordinator,
        lease: PollerLease,
        poll_interval: float = 30.0,
        check_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._coordinator = coordinator
        self._lease = lease
        self._poll_interval = poll_interval
        self._check_interval = check_interval
        self._clock = clock

        self._last_poll: Optional[float] = None
        self._wakeup = asyncio.Event()
        self._triggered = False
        self._task: Optional[asyncio.Task] = None
        self._running = False

        # Stats
        self._polls = 0
        self._fetched = 0
        self._errors = 0

    @property
    def is_active(self) -> bool:
        """True si este proceso tiene el lease de poller."""
        return self._lease.is_held

    def trigger(self) -> None:
        """Pide un poll inmediato (pista de insert)."""
        self._triggered = True
        self._wakeup.set()

    async def tick(self) -> int:
        """Un check del lease y, si toca, un ciclo de poll.

        Returns:
            Lecturas recuperadas por ``fetch_missed`` en este tick.
        """
        held = await self._check_lease()

        now = self._clock()
        due = (
            self._triggered
            or self._last_poll is None
            or now - self._last_poll >= self._poll_interval
        )
        if not due:
            return 0
        self._last_poll = now
        self._triggered = False

        try:
            await self._coordinator.retry_pending()
        except StoreError as e:
            self._errors += 1
            logger.warning("[POLLER] Pending retry failed: %s", e)

        if not held:
            return 0

        self._polls += 1
        try:
            applied = await self._coordinator.fetch_missed()
        except StoreError as e:
            self._errors += 1
            logger.warning("[POLLER] fetch_missed failed: %s", e)
            return 0

        self._fetched += len(applied)
        return len(applied)

    async def _check_lease(self) -> bool:
        try:
            return await self._lease.try_acquire()
        except (RedisError, OSError) as e:
            self._errors += 1
            logger.warning("[POLLER] Lease check failed: %s", e)
            return False

    async def run(self) -> None:
        """Loop principal hasta ``stop()``."""
        self._running = True
        logger.info(
            "[POLLER] Started (poll=%.1fs check=%.1fs holder=%s)",
            self._poll_interval,
            self._check_interval,
            self._lease.holder,
        )
        while self._running:
            self._wakeup.clear()
            try:
                await self.tick()
            except Exception as e:
                self._errors += 1
                logger.exception("[POLLER] Unexpected error in tick: %s", e)

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._check_interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="active-poller")
        return self._task

    async def stop(self) -> None:
        self._running = False
        self._wakeup.set()
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        try:
            await self._lease.release()
        except (RedisError, OSError) as e:
            logger.warning("[POLLER] Could not release lease: %s", e)
        logger.info("[POLLER] Stopped")

    @property
    def stats(self) -> dict:
        return {
            "active": self._lease.is_held,
            "holder": self._lease.holder,
            "polls": self._polls,
            "fetched": self._fetched,
            "errors": self._errors,
        }
