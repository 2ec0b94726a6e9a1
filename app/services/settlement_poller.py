from __future__ import annotations

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Optional

from services.qris_gateway import GatewayError, QrisGatewayClient, SettlementReport


logger = logging.getLogger(__name__)


class PollerState(str, enum.Enum):
    IDLE = "idle"
    POLLING = "polling"
    MATCHED = "matched"
    STOPPED_BY_EXPIRY = "stopped_by_expiry"
    STOPPED_BY_CANCEL = "stopped_by_cancel"


class SettlementPoller:
    """Periodically reads the merchant settlement feed and hands reports to ``on_report``.

    Correlation happens in ``on_report``; the poller only keeps the loop alive.
    Gateway failures are transient: they are logged and the next cycle runs as
    scheduled. Stopping is cooperative: a request already in flight completes,
    but its report is dropped.
    """

    def __init__(
        self,
        gateway: QrisGatewayClient,
        on_report: Callable[[SettlementReport], Awaitable[None]],
        interval: float = 5.0,
    ) -> None:
        self._gateway = gateway
        self._on_report = on_report
        self._interval = interval
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.state = PollerState.IDLE
        self.cycles = 0

    def start(self) -> None:
        if self._task is not None:
            return
        self.state = PollerState.POLLING
        self._task = asyncio.create_task(self._run(), name="topup-settlement-poller")

    def stop(self, reason: PollerState = PollerState.STOPPED_BY_CANCEL) -> None:
        if self.state == PollerState.POLLING:
            self.state = reason
        self._stop.set()

    @property
    def running(self) -> bool:
        return self.state == PollerState.POLLING

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
                break
            except asyncio.TimeoutError:
                pass

            self.cycles += 1
            try:
                report = await self._gateway.poll_latest_settlement()
            except GatewayError as exc:
                logger.warning("Settlement poll failed, retrying next cycle: %s", exc)
                continue

            if self._stop.is_set():
                break
            try:
                await self._on_report(report)
            except Exception:
                logger.exception("Settlement report handler failed")
