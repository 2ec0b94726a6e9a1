"""
Pytest configuration and fixtures.
"""
import asyncio
import os
from datetime import timedelta
from typing import Any, AsyncGenerator, Dict, List, Optional

# must be set before core.db builds its module-level engine
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from models import Base
from services.ledger import LedgerReconciler
from services.qris_gateway import GatewayError, GatewayPayment, SettlementReport
from services.topup_engine import TopupEngine, TopupListener
from services.topup_state import PendingTopup, Receipt, utcnow
from services.topup_store import TopupStore


async def wait_until(event: asyncio.Event, timeout: float = 3.0) -> None:
    await asyncio.wait_for(event.wait(), timeout=timeout)


class FakeGateway:
    """Scriptable stand-in for QrisGatewayClient."""

    def __init__(self, ttl: float = 60.0) -> None:
        self.ttl = ttl
        self.create_error: Optional[GatewayError] = None
        self.create_gate: Optional[asyncio.Event] = None
        self.deadline_missing = False
        self.created: List[int] = []
        self.polls = 0
        self.poll_error: Optional[GatewayError] = None
        self.report = SettlementReport()
        self._counter = 0

    async def create(self, total_amount: int, static_code_ref: Optional[str] = None) -> GatewayPayment:
        self.created.append(total_amount)
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.create_error is not None:
            raise self.create_error
        self._counter += 1
        return GatewayPayment(
            transaction_id=f"TRX{self._counter:04d}",
            expiry_deadline=None if self.deadline_missing else utcnow() + timedelta(seconds=self.ttl),
            qr_image_reference="https://qris.example.com/img.png",
        )

    async def poll_latest_settlement(self) -> SettlementReport:
        self.polls += 1
        if self.poll_error is not None:
            raise self.poll_error
        return self.report

    def settle(self, amount: Optional[int]) -> None:
        self.report = SettlementReport(amount=amount)

    def advise_expired(self) -> None:
        self.report = SettlementReport(expired_notice=True, message="Transaction expired")


class RecordingListener(TopupListener):
    """Collects lifecycle events and exposes one asyncio.Event per kind."""

    def __init__(self) -> None:
        self.events: List[tuple] = []
        self.signals: Dict[str, asyncio.Event] = {
            name: asyncio.Event()
            for name in ("countdown", "resumed", "settled", "expired", "cancelled", "rejected")
        }
        self.receipts: List[Receipt] = []

    def _record(self, name: str, *args: Any) -> None:
        self.events.append((name, *args))
        self.signals[name].set()

    def count(self, name: str) -> int:
        return sum(1 for event in self.events if event[0] == name)

    async def on_countdown(self, tx: PendingTopup, remaining: timedelta) -> None:
        self._record("countdown", tx.session_key, remaining)

    async def on_resumed(self, tx: PendingTopup) -> None:
        self._record("resumed", tx.session_key)

    async def on_settled(self, tx: PendingTopup, receipt: Receipt) -> None:
        self.receipts.append(receipt)
        self._record("settled", tx.session_key)

    async def on_expired(self, tx: PendingTopup) -> None:
        self._record("expired", tx.session_key)

    async def on_cancelled(self, tx: PendingTopup) -> None:
        self._record("cancelled", tx.session_key)

    async def on_settlement_rejected(self, tx: PendingTopup, reported_amount: Optional[int]) -> None:
        self._record("rejected", tx.session_key, reported_amount)


class RecordingNotifier:
    def __init__(self) -> None:
        self.receipts: List[Receipt] = []
        self.incidents: List[tuple] = []

    async def send_receipt(self, receipt: Receipt) -> bool:
        self.receipts.append(receipt)
        return True

    async def send_incident(self, tx: PendingTopup, reported_amount: Optional[int]) -> bool:
        self.incidents.append((tx.gateway_transaction_id, reported_amount))
        return True


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, Any]:
    """File-backed SQLite database so concurrent sessions see each other's writes."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'topup.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def store(session_factory) -> TopupStore:
    return TopupStore(session_factory)


@pytest.fixture
def reconciler(session_factory) -> LedgerReconciler:
    return LedgerReconciler(session_factory, max_retries=50, initial_daily_limit=5)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def engine(gateway, store, reconciler, listener, notifier) -> AsyncGenerator[TopupEngine, Any]:
    topup_engine = TopupEngine(
        gateway,
        store,
        reconciler,
        listener=listener,
        notifier=notifier,
        min_fee=1000,
        max_fee=5000,
        poll_interval=0.02,
        tick_interval=0.01,
        fallback_expiry_seconds=600,
    )
    yield topup_engine
    await topup_engine.shutdown()


def make_topup(
    session_key: str = "topup:42",
    purchaser_id: int = 42,
    base_amount: int = 50000,
    surcharge: int = 3200,
    quota: int = 50,
    **overrides: Any,
) -> PendingTopup:
    tx = PendingTopup(
        session_key=session_key,
        purchaser_id=purchaser_id,
        purchaser_contact="johndoe@gmail.com",
        product_label="Package 50 limit",
        base_amount=base_amount,
        surcharge=surcharge,
        quota_to_credit=quota,
    )
    for name, value in overrides.items():
        setattr(tx, name, value)
    return tx
