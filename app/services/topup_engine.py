from __future__ import annotations

import asyncio
import logging
import random
from datetime import timedelta
from functools import partial
from typing import Dict, Optional, Protocol

from core.config import settings
from services.admin_fee import draw_admin_fee
from services.expiry_timer import ExpiryTimer
from services.ledger import LedgerReconciler, SettlementAmountMismatch
from services.qris_gateway import GatewayError, QrisGatewayClient, SettlementReport
from services.settlement_poller import PollerState, SettlementPoller
from services.topup_state import PendingTopup, Receipt, TopupStatus, utcnow
from services.topup_store import TopupStore, purchaser_from_session_key


logger = logging.getLogger(__name__)


class TopupError(Exception):
    """Base error for the top-up lifecycle."""


class TopupCreationError(TopupError):
    """The gateway refused or could not be reached when creating the payment."""


class TopupInProgressError(TopupError):
    """Another session owns the purchaser's top-up, or its settlement is being applied."""


class TopupListener:
    """Receives lifecycle events; subclasses override what they need."""

    async def on_countdown(self, tx: PendingTopup, remaining: timedelta) -> None:
        pass

    async def on_resumed(self, tx: PendingTopup) -> None:
        pass

    async def on_settled(self, tx: PendingTopup, receipt: Receipt) -> None:
        pass

    async def on_expired(self, tx: PendingTopup) -> None:
        pass

    async def on_cancelled(self, tx: PendingTopup) -> None:
        pass

    async def on_settlement_rejected(self, tx: PendingTopup, reported_amount: Optional[int]) -> None:
        pass


class SettlementNotifier(Protocol):
    async def send_receipt(self, receipt: Receipt) -> bool: ...

    async def send_incident(self, tx: PendingTopup, reported_amount: Optional[int]) -> bool: ...


class TopupFlow:
    """Owns the expiry timer and settlement poller of one in-flight top-up."""

    def __init__(self, tx: PendingTopup) -> None:
        self.tx = tx
        self.timer: Optional[ExpiryTimer] = None
        self.poller: Optional[SettlementPoller] = None
        self.closed = False
        self.settling = False

    def teardown(self, reason: PollerState) -> None:
        self.closed = True
        if self.timer is not None:
            self.timer.stop()
        if self.poller is not None:
            self.poller.stop(reason)

    async def wait_closed(self) -> None:
        if self.timer is not None:
            await self.timer.wait_closed()
        if self.poller is not None:
            await self.poller.wait_closed()


class TopupEngine:
    """Drives top-ups from creation to a terminal state.

    Every terminal transition (settled, expired, cancelled, creation failed)
    goes through ``_finish`` or ``clear``, which tear down both periodic tasks
    together with the persisted record.
    """

    def __init__(
        self,
        gateway: QrisGatewayClient,
        store: TopupStore,
        reconciler: LedgerReconciler,
        listener: Optional[TopupListener] = None,
        notifier: Optional[SettlementNotifier] = None,
        *,
        min_fee: Optional[int] = None,
        max_fee: Optional[int] = None,
        rng: Optional[random.Random] = None,
        poll_interval: Optional[float] = None,
        tick_interval: Optional[float] = None,
        fallback_expiry_seconds: Optional[int] = None,
        clock=utcnow,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._reconciler = reconciler
        self.listener = listener or TopupListener()
        self._notifier = notifier
        self._min_fee = min_fee
        self._max_fee = max_fee
        self._rng = rng
        self._poll_interval = poll_interval or settings.topup_poll_interval_seconds
        self._tick_interval = tick_interval or settings.topup_countdown_tick_seconds
        self._fallback_expiry = timedelta(
            seconds=fallback_expiry_seconds or settings.topup_fallback_expiry_seconds
        )
        self._clock = clock
        self._flows: Dict[str, TopupFlow] = {}
        self._owners: Dict[int, str] = {}

    def active(self, session_key: str) -> Optional[PendingTopup]:
        flow = self._flows.get(session_key)
        return flow.tx if flow is not None else None

    def flow(self, session_key: str) -> Optional[TopupFlow]:
        return self._flows.get(session_key)

    async def start(
        self,
        session_key: str,
        purchaser_id: int,
        purchaser_contact: str,
        product_label: str,
        base_amount: int,
        quota_to_credit: int,
    ) -> PendingTopup:
        if base_amount <= 0 or quota_to_credit <= 0:
            raise ValueError("base amount and quota must be positive")
        self._check_owner(purchaser_id, session_key)

        # a new top-up discards whatever this session had in flight
        await self.clear(session_key)

        tx = PendingTopup(
            session_key=session_key,
            purchaser_id=purchaser_id,
            purchaser_contact=purchaser_contact,
            product_label=product_label,
            base_amount=int(base_amount),
            surcharge=draw_admin_fee(self._min_fee, self._max_fee, self._rng),
            quota_to_credit=int(quota_to_credit),
            created_at=self._clock(),
        )
        flow = TopupFlow(tx)
        self._flows[session_key] = flow
        self._owners[purchaser_id] = session_key

        tx.status = TopupStatus.AWAITING_GATEWAY_ACK
        try:
            payment = await self._gateway.create(tx.total_amount)
        except GatewayError as exc:
            tx.status = TopupStatus.CREATION_FAILED
            flow.teardown(PollerState.STOPPED_BY_CANCEL)
            self._release(flow)
            logger.error("Top-up creation failed for %s (total %s): %s", session_key, tx.total_amount, exc)
            raise TopupCreationError(str(exc)) from exc

        if flow.closed:
            # cancelled or replaced while waiting for the gateway
            return tx

        tx.gateway_transaction_id = payment.transaction_id
        tx.qr_image_reference = payment.qr_image_reference
        tx.expiry_deadline = payment.expiry_deadline
        if tx.expiry_deadline is None:
            tx.expiry_deadline = tx.created_at + self._fallback_expiry
            logger.warning(
                "Gateway gave no usable deadline for %s, expiring at %s",
                tx.gateway_transaction_id, tx.expiry_deadline.isoformat(),
            )
        tx.status = TopupStatus.AWAITING_SETTLEMENT
        await self._store.save(tx)
        self._arm(flow)
        logger.info(
            "Top-up %s created for %s: total %s (base %s + fee %s)",
            tx.gateway_transaction_id, session_key, tx.total_amount, tx.base_amount, tx.surcharge,
        )
        return tx

    async def resume(self, session_key: str, purchaser_id: int) -> Optional[PendingTopup]:
        """Re-arm timer and poller for a persisted top-up without contacting the gateway."""
        running = self._flows.get(session_key)
        if running is not None:
            return running.tx

        tx = await self._store.load(session_key)
        if tx is None:
            await self._store.clear(session_key)
            return None
        now = self._clock()
        if (
            tx.status != TopupStatus.AWAITING_SETTLEMENT
            or tx.purchaser_id != purchaser_id
            or not tx.gateway_transaction_id
            or tx.expiry_deadline is None
            or tx.is_expired(now)
        ):
            logger.warning("Discarding stale top-up record for %s (status %s)", session_key, tx.status.value)
            await self._store.clear(session_key)
            return None

        self._check_owner(purchaser_id, session_key)
        flow = TopupFlow(tx)
        self._flows[session_key] = flow
        self._owners[purchaser_id] = session_key
        self._arm(flow)
        logger.info("Top-up %s resumed for %s", tx.gateway_transaction_id, session_key)
        await self._emit("on_resumed", tx)
        return tx

    async def resume_all(self) -> int:
        resumed = 0
        for session_key in await self._store.session_keys():
            purchaser_id = purchaser_from_session_key(session_key)
            if purchaser_id is None:
                await self._store.clear(session_key)
                continue
            try:
                if await self.resume(session_key, purchaser_id) is not None:
                    resumed += 1
            except TopupInProgressError:
                logger.warning("Skipping %s: purchaser already has an active top-up", session_key)
        return resumed

    async def cancel(self, session_key: str) -> Optional[PendingTopup]:
        flow = self._flows.get(session_key)
        if flow is None:
            tx = await self._store.load(session_key)
            await self._store.clear(session_key)
            if tx is not None:
                tx.status = TopupStatus.CANCELLED
            return tx
        if flow.settling:
            logger.info("Cancel ignored for %s: settlement already in progress", session_key)
            return flow.tx
        await self._finish(flow, TopupStatus.CANCELLED, PollerState.STOPPED_BY_CANCEL)
        return flow.tx

    async def clear(self, session_key: str) -> None:
        """Stop any timer/poller of the session and drop its persisted record.

        Raises TopupInProgressError while a matched settlement is being applied.
        """
        flow = self._flows.get(session_key)
        if flow is not None and flow.settling:
            raise TopupInProgressError(f"settlement of {flow.tx.gateway_transaction_id} is in progress")
        discarded = None
        if flow is not None and not flow.closed:
            flow.teardown(PollerState.STOPPED_BY_CANCEL)
            if not flow.tx.status.is_terminal:
                flow.tx.status = TopupStatus.CANCELLED
                discarded = flow.tx
            self._release(flow)
        await self._store.clear(session_key)
        if discarded is not None:
            logger.info("Top-up %s for %s discarded", discarded.gateway_transaction_id, session_key)
            await self._emit("on_cancelled", discarded)

    async def shutdown(self) -> None:
        """Stop all periodic tasks but keep records so the flows resume on next start."""
        flows = list(self._flows.values())
        for flow in flows:
            flow.teardown(PollerState.STOPPED_BY_CANCEL)
        self._flows.clear()
        self._owners.clear()
        await asyncio.gather(*(flow.wait_closed() for flow in flows), return_exceptions=True)

    def _check_owner(self, purchaser_id: int, session_key: str) -> None:
        owner = self._owners.get(purchaser_id)
        if owner is not None and owner != session_key and owner in self._flows:
            raise TopupInProgressError(f"purchaser {purchaser_id} already has a top-up in {owner}")

    def _release(self, flow: TopupFlow) -> None:
        tx = flow.tx
        if self._flows.get(tx.session_key) is flow:
            del self._flows[tx.session_key]
        if self._owners.get(tx.purchaser_id) == tx.session_key:
            del self._owners[tx.purchaser_id]

    def _arm(self, flow: TopupFlow) -> None:
        flow.timer = ExpiryTimer(
            flow.tx.expiry_deadline,
            on_expired=partial(self._handle_expiry, flow),
            on_tick=partial(self._emit, "on_countdown", flow.tx),
            tick_interval=self._tick_interval,
            clock=self._clock,
        )
        flow.poller = SettlementPoller(
            self._gateway,
            on_report=partial(self._handle_report, flow),
            interval=self._poll_interval,
        )
        flow.timer.start()
        flow.poller.start()

    async def _handle_expiry(self, flow: TopupFlow) -> None:
        if flow.closed or flow.settling:
            return
        try:
            await self._finish(flow, TopupStatus.EXPIRED, PollerState.STOPPED_BY_EXPIRY)
        except Exception:
            logger.exception("Failed to expire top-up %s", flow.tx.gateway_transaction_id)

    async def _handle_report(self, flow: TopupFlow, report: SettlementReport) -> None:
        if flow.closed or flow.settling:
            return
        tx = flow.tx
        # the local deadline wins over anything the feed says
        if tx.is_expired(self._clock()):
            await self._finish(flow, TopupStatus.EXPIRED, PollerState.STOPPED_BY_EXPIRY)
            return
        if report.has_settlement and report.amount == tx.total_amount:
            await self._settle(flow, report)
            return
        if report.expired_notice:
            logger.warning(
                "Gateway reported expiry before local deadline of %s, still polling: %s",
                tx.gateway_transaction_id, report.message,
            )
            return
        if report.has_settlement:
            logger.debug(
                "Latest settlement %s does not match %s (expected %s)",
                report.amount, tx.gateway_transaction_id, tx.total_amount,
            )

    async def _settle(self, flow: TopupFlow, report: SettlementReport) -> None:
        tx = flow.tx
        flow.settling = True
        logger.info("Settlement matched by amount only: %s amount=%s", tx.gateway_transaction_id, report.amount)
        try:
            receipt = await self._reconciler.settle(tx, report.amount)
        except SettlementAmountMismatch:
            await self._emit("on_settlement_rejected", tx, report.amount)
            if self._notifier is not None:
                await self._notifier.send_incident(tx, report.amount)
            return
        except Exception:
            # ledger contention or a lost database connection; the next match retries
            logger.exception("Settlement of %s failed, retrying on next match", tx.gateway_transaction_id)
            if tx.is_expired(self._clock()):
                await self._finish(flow, TopupStatus.EXPIRED, PollerState.STOPPED_BY_EXPIRY)
            return
        finally:
            flow.settling = False
        await self._finish(flow, TopupStatus.SETTLED, PollerState.MATCHED, receipt)

    async def _finish(
        self,
        flow: TopupFlow,
        status: TopupStatus,
        reason: PollerState,
        receipt: Optional[Receipt] = None,
    ) -> None:
        if flow.closed:
            return
        tx = flow.tx
        flow.teardown(reason)
        tx.status = status
        self._release(flow)
        try:
            await self._store.clear(tx.session_key)
        except Exception:
            logger.exception("Could not clear top-up record for %s", tx.session_key)
        logger.info("Top-up %s for %s is %s", tx.gateway_transaction_id, tx.session_key, status.value)

        if status == TopupStatus.SETTLED:
            await self._emit("on_settled", tx, receipt)
            if self._notifier is not None:
                await self._notifier.send_receipt(receipt)
        elif status == TopupStatus.EXPIRED:
            await self._emit("on_expired", tx)
        elif status == TopupStatus.CANCELLED:
            await self._emit("on_cancelled", tx)

    async def _emit(self, event: str, *args) -> None:
        try:
            await getattr(self.listener, event)(*args)
        except Exception:
            logger.exception("Top-up listener %s failed", event)
