from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from .helpers import now_ts
from .infra.timings import timeit
from .model.inventory import InventoryStore

logger = logging.getLogger(__name__)

RESERVATION_TIMEOUT_SECONDS = 60 * 60
SWEEP_PERIOD_SECONDS = 5 * 60

# called with {order_reference: [numbers]} after a sweep released something
ReleasedHook = Callable[[Dict[str, List[int]]], Awaitable[None]]


class ExpiryReclaimer:
    """
    Background sweep returning stale reservations to the pool.

    Holds no state besides its timing constants: one sweep right away (to
    reclaim what was abandoned across a restart), then one per period.
    A failed sweep is logged and simply tried again next period.
    """

    def __init__(
        self,
        store: InventoryStore,
        *,
        timeout_seconds: float = RESERVATION_TIMEOUT_SECONDS,
        period_seconds: float = SWEEP_PERIOD_SECONDS,
        clock: Callable[[], float] = now_ts,
        on_released: Optional[ReleasedHook] = None,
    ) -> None:
        self.store = store
        self.timeout = timeout_seconds
        self.period = period_seconds
        self.clock = clock
        self.on_released = on_released
        self._task: Optional[asyncio.Task] = None

    async def sweep(self, now: Optional[float] = None) -> Dict[str, List[int]]:
        now = self.clock() if now is None else now
        cutoff = now - self.timeout
        async with timeit("inventory.release_expired"):
            released = await self.store.release_expired_before(cutoff)
        if released:
            count = sum(len(v) for v in released.values())
            logger.info(
                "released %d expired units from %d orders: %s",
                count, len(released), sorted(released),
            )
            if self.on_released is not None:
                await self.on_released(released)
        return released

    async def run_forever(self) -> None:
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("expiry sweep failed, retrying in %ss",
                                 self.period)
            await asyncio.sleep(self.period)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            logger.info(
                "expiry reclaimer started: timeout=%ss period=%ss",
                self.timeout, self.period,
            )
            self._task = asyncio.create_task(
                self.run_forever(), name="expiry-reclaimer"
            )
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("expiry reclaimer stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
