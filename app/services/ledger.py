"""Ledger counters and settlement reconciliation.

Each counter row carries a ``version`` column. An increment reads the row and
writes ``UPDATE ... WHERE id = :id AND version = :seen``; when nothing matched,
somebody else wrote in between and the step is retried from a fresh read.
Counters are independent: there is no transaction spanning two of them.

Settlement credits are made idempotent per gateway transaction through
``AppliedSettlement``: every counter credit commits together with the flip of
its own flag, so a repeated ``settle`` (after a crash, a resume or a duplicate
poll match) only performs the credits that have not landed yet.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import settings
from core.db import session_scope
from models.ledger import GlobalEarnings, LeaderboardEntry, UserQuota
from models.topup import AppliedSettlement
from services.topup_state import PendingTopup, Receipt, TopupStatus


logger = logging.getLogger(__name__)

GLOBAL_EARNINGS_KEY = "developer_earnings"

Guard = Callable[[AsyncSession], Awaitable[bool]]


class LedgerError(Exception):
    """Base error for ledger operations."""


class SettlementAmountMismatch(LedgerError):
    def __init__(self, tx: PendingTopup, reported_amount: Optional[int]) -> None:
        super().__init__(
            f"settlement for {tx.gateway_transaction_id} reported {reported_amount}, "
            f"expected {tx.total_amount}"
        )
        self.expected_amount = tx.total_amount
        self.reported_amount = reported_amount
        self.gateway_transaction_id = tx.gateway_transaction_id


class InvalidSettlementState(LedgerError):
    pass


class LedgerUpdateError(LedgerError):
    pass


class _VersionConflict(Exception):
    pass


class LedgerCounter:
    """A keyed, versioned counter row updated by optimistic compare-and-retry."""

    model: Any = None
    key_column: str = ""
    additive_fields: tuple = ()

    def __init__(self, session_factory: Optional[async_sessionmaker] = None, max_retries: Optional[int] = None) -> None:
        self._session_factory = session_factory
        self.max_retries = max_retries or settings.ledger_max_retries

    def _new_row(self, key: Any, deltas: Dict[str, int], extra: Dict[str, Any]):
        values = {name: deltas.get(name, 0) for name in self.additive_fields}
        return self.model(**{self.key_column: key}, version=0, **values, **extra)

    async def read(self, key: Any):
        async with session_scope(self._session_factory) as session:
            return (await session.execute(
                select(self.model).where(getattr(self.model, self.key_column) == key)
            )).scalar_one_or_none()

    async def _try_increment(self, session: AsyncSession, key: Any, deltas: Dict[str, int], extra: Dict[str, Any]) -> bool:
        row = (await session.execute(
            select(self.model).where(getattr(self.model, self.key_column) == key)
        )).scalar_one_or_none()
        if row is None:
            # lazy creation; a concurrent insert surfaces as IntegrityError
            session.add(self._new_row(key, deltas, extra))
            await session.flush()
            return True

        seen_version = row.version
        values = {name: (getattr(row, name) or 0) + deltas.get(name, 0) for name in self.additive_fields}
        result = await session.execute(
            update(self.model)
            .where(self.model.id == row.id, self.model.version == seen_version)
            .values(version=seen_version + 1, **values, **extra)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def increment(
        self,
        key: Any,
        deltas: Dict[str, int],
        guard: Optional[Guard] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Add ``deltas`` to the row for ``key``, retrying on concurrent writes.

        ``guard`` runs first inside the same database transaction; when it
        returns False the increment is skipped and False is returned.
        """
        extra = extra or {}
        for attempt in range(1, self.max_retries + 1):
            try:
                async with session_scope(self._session_factory) as session:
                    if guard is not None and not await guard(session):
                        return False
                    if not await self._try_increment(session, key, deltas, extra):
                        raise _VersionConflict()
                return True
            except (_VersionConflict, IntegrityError):
                logger.debug("%s[%s] write conflict, attempt %d", self.model.__name__, key, attempt)
        raise LedgerUpdateError(
            f"{self.model.__name__}[{key}] not updated after {self.max_retries} attempts"
        )


class UserQuotaCounter(LedgerCounter):
    model = UserQuota
    key_column = "purchaser_id"
    additive_fields = ("daily_limit", "total_topup_amount")

    def __init__(self, session_factory=None, max_retries=None, initial_daily_limit: Optional[int] = None) -> None:
        super().__init__(session_factory, max_retries)
        self.initial_daily_limit = settings.initial_daily_limit if initial_daily_limit is None else initial_daily_limit

    def _new_row(self, key, deltas, extra):
        row = super()._new_row(key, deltas, extra)
        row.daily_limit = self.initial_daily_limit + deltas.get("daily_limit", 0)
        return row


class GlobalEarningsCounter(LedgerCounter):
    model = GlobalEarnings
    key_column = "key"
    additive_fields = ("amount",)


class LeaderboardCounter(LedgerCounter):
    model = LeaderboardEntry
    key_column = "purchaser_id"
    additive_fields = ("total",)


class LedgerReconciler:
    """Applies a matched settlement to the quota, earnings and leaderboard counters exactly once."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        max_retries: Optional[int] = None,
        initial_daily_limit: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self.quota = UserQuotaCounter(session_factory, max_retries, initial_daily_limit)
        self.earnings = GlobalEarningsCounter(session_factory, max_retries)
        self.leaderboard = LeaderboardCounter(session_factory, max_retries)

    async def settle(self, tx: PendingTopup, reported_amount: Optional[int]) -> Receipt:
        if reported_amount != tx.total_amount:
            logger.error(
                "Settlement amount mismatch for %s: expected %s, reported %s",
                tx.gateway_transaction_id, tx.total_amount, reported_amount,
            )
            raise SettlementAmountMismatch(tx, reported_amount)
        if not tx.gateway_transaction_id:
            raise InvalidSettlementState("top-up has no gateway transaction id")

        applied = await self._find_applied(tx.gateway_transaction_id)
        if applied is not None:
            self._check_same_topup(applied, tx)
        if applied is not None and applied.completed and applied.receipt_payload:
            logger.warning("Duplicate settlement for %s ignored", tx.gateway_transaction_id)
            return Receipt.from_dict(json.loads(applied.receipt_payload))
        if tx.status != TopupStatus.AWAITING_SETTLEMENT:
            raise InvalidSettlementState(
                f"top-up {tx.gateway_transaction_id} is {tx.status.value}, not awaiting settlement"
            )

        record_id = await self._claim_record(tx)
        credited = tx.credited_amount

        await self.quota.increment(
            tx.purchaser_id,
            {"daily_limit": tx.quota_to_credit, "total_topup_amount": credited},
            guard=self._flag_guard(record_id, AppliedSettlement.quota_credited),
        )
        await self.earnings.increment(
            GLOBAL_EARNINGS_KEY,
            {"amount": tx.total_amount},
            guard=self._flag_guard(record_id, AppliedSettlement.earnings_credited),
        )
        await self.leaderboard.increment(
            tx.purchaser_id,
            {"total": credited},
            guard=self._flag_guard(record_id, AppliedSettlement.leaderboard_credited),
            extra={"display_name": tx.purchaser_contact or None},
        )
        return await self._complete(record_id, Receipt.for_topup(tx))

    async def _find_applied(self, gateway_transaction_id: str) -> Optional[AppliedSettlement]:
        async with session_scope(self._session_factory) as session:
            return (await session.execute(
                select(AppliedSettlement).where(AppliedSettlement.gateway_transaction_id == gateway_transaction_id)
            )).scalar_one_or_none()

    async def _claim_record(self, tx: PendingTopup) -> int:
        try:
            async with session_scope(self._session_factory) as session:
                record = AppliedSettlement(
                    gateway_transaction_id=tx.gateway_transaction_id,
                    purchaser_id=tx.purchaser_id,
                    total_amount=tx.total_amount,
                    quota_credited=False,
                    earnings_credited=False,
                    leaderboard_credited=False,
                    completed=False,
                )
                session.add(record)
                await session.flush()
                return record.id
        except IntegrityError:
            existing = await self._find_applied(tx.gateway_transaction_id)
            if existing is None:
                raise
            self._check_same_topup(existing, tx)
            return existing.id

    @staticmethod
    def _check_same_topup(record: AppliedSettlement, tx: PendingTopup) -> None:
        if record.total_amount != tx.total_amount or record.purchaser_id != tx.purchaser_id:
            raise InvalidSettlementState(
                f"gateway transaction {tx.gateway_transaction_id} already recorded for another top-up"
            )

    @staticmethod
    def _flag_guard(record_id: int, flag) -> Guard:
        async def claim(session: AsyncSession) -> bool:
            result = await session.execute(
                update(AppliedSettlement)
                .where(AppliedSettlement.id == record_id, flag == False)  # noqa: E712
                .values({flag.key: True})
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1
        return claim

    async def _complete(self, record_id: int, receipt: Receipt) -> Receipt:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(AppliedSettlement)
                .where(AppliedSettlement.id == record_id, AppliedSettlement.completed == False)  # noqa: E712
                .values(completed=True, receipt_payload=json.dumps(receipt.to_dict()))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return receipt
            stored = await session.get(AppliedSettlement, record_id)
        # a concurrent settle finished first; its receipt is the canonical one
        logger.warning("Settlement %s completed concurrently, returning stored receipt", record_id)
        return Receipt.from_dict(json.loads(stored.receipt_payload))


@dataclass
class LeaderboardRow:
    rank: int
    purchaser_id: int
    display_name: str
    total: int


async def get_daily_limit(purchaser_id: int, session_factory: Optional[async_sessionmaker] = None) -> int:
    async with session_scope(session_factory) as session:
        limit = (await session.execute(
            select(UserQuota.daily_limit).where(UserQuota.purchaser_id == purchaser_id)
        )).scalar_one_or_none()
    return settings.initial_daily_limit if limit is None else int(limit)


async def get_user_quota(purchaser_id: int, session_factory: Optional[async_sessionmaker] = None) -> Optional[UserQuota]:
    async with session_scope(session_factory) as session:
        return (await session.execute(
            select(UserQuota).where(UserQuota.purchaser_id == purchaser_id)
        )).scalar_one_or_none()


async def get_global_earnings(session_factory: Optional[async_sessionmaker] = None) -> int:
    async with session_scope(session_factory) as session:
        amount = (await session.execute(
            select(GlobalEarnings.amount).where(GlobalEarnings.key == GLOBAL_EARNINGS_KEY)
        )).scalar_one_or_none()
    return int(amount or 0)


async def get_leaderboard(limit: int = 10, session_factory: Optional[async_sessionmaker] = None) -> List[LeaderboardRow]:
    async with session_scope(session_factory) as session:
        entries = (await session.execute(
            select(LeaderboardEntry)
            .order_by(LeaderboardEntry.total.desc(), LeaderboardEntry.id)
            .limit(limit)
        )).scalars().all()
    return [
        LeaderboardRow(
            rank=index,
            purchaser_id=entry.purchaser_id,
            display_name=censor_contact(entry.display_name or str(entry.purchaser_id)),
            total=int(entry.total or 0),
        )
        for index, entry in enumerate(entries, start=1)
    ]


def censor_contact(contact: str) -> str:
    """Mask a contact for public display: ``johndoe@gmail.com`` -> ``jo****e@gmail.com``."""
    local, sep, domain = contact.lstrip("@").partition("@")
    if len(local) < 3:
        masked = f"{local[:1]}****"
    else:
        masked = f"{local[:2]}****{local[-1]}"
    return f"{masked}{sep}{domain}"
