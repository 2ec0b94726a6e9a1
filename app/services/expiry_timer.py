from __future__ import annotations

import asyncio
import enum
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from services.topup_state import utcnow


logger = logging.getLogger(__name__)


class TimerState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    EXPIRED = "expired"
    STOPPED = "stopped"


class ExpiryTimer:
    """Wall-clock countdown to a deadline, independent of settlement polling.

    ``on_tick`` receives the remaining time at every tick; ``on_expired`` is
    awaited once, as soon as the deadline has passed.
    """

    def __init__(
        self,
        deadline: datetime,
        on_expired: Callable[[], Awaitable[None]],
        on_tick: Optional[Callable[[timedelta], Awaitable[None]]] = None,
        tick_interval: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.deadline = deadline
        self._on_expired = on_expired
        self._on_tick = on_tick
        self._tick_interval = tick_interval
        self._clock = clock
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.state = TimerState.IDLE

    def start(self) -> None:
        if self._task is not None:
            return
        self.state = TimerState.RUNNING
        self._task = asyncio.create_task(self._run(), name="topup-expiry-timer")

    def stop(self) -> None:
        if self.state == TimerState.RUNNING:
            self.state = TimerState.STOPPED
        self._stop.set()

    @property
    def running(self) -> bool:
        return self.state == TimerState.RUNNING

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        while not self._stop.is_set():
            remaining = self.deadline - self._clock()
            if remaining <= timedelta(0):
                self.state = TimerState.EXPIRED
                self._stop.set()
                await self._on_expired()
                return
            if self._on_tick is not None:
                try:
                    await self._on_tick(remaining)
                except Exception:
                    logger.exception("Countdown tick handler failed")
            # wake up exactly at the deadline if it comes before the next tick
            delay = min(self._tick_interval, remaining.total_seconds())
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
