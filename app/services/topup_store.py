from __future__ import annotations

import json
import logging
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.db import session_scope
from models.topup import TopupSessionRecord
from services.topup_state import PendingTopup


logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "topup:"


def session_key_for(telegram_user_id: int) -> str:
    return f"{SESSION_KEY_PREFIX}{telegram_user_id}"


def purchaser_from_session_key(session_key: str) -> Optional[int]:
    if not session_key.startswith(SESSION_KEY_PREFIX):
        return None
    tail = session_key[len(SESSION_KEY_PREFIX):]
    return int(tail) if tail.isdigit() else None


class TopupStore:
    """Durable slot for the in-flight top-up of each session.

    Only the record is handled here; timers belong to the engine, which pairs
    ``clear`` with its own teardown.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None) -> None:
        self._session_factory = session_factory

    async def save(self, tx: PendingTopup) -> None:
        payload = json.dumps(tx.to_dict())
        async with session_scope(self._session_factory) as session:
            row = (await session.execute(
                select(TopupSessionRecord).where(TopupSessionRecord.session_key == tx.session_key)
            )).scalar_one_or_none()
            if row is None:
                session.add(TopupSessionRecord(
                    session_key=tx.session_key,
                    purchaser_id=tx.purchaser_id,
                    payload=payload,
                ))
            else:
                row.purchaser_id = tx.purchaser_id
                row.payload = payload

    async def load(self, session_key: str) -> Optional[PendingTopup]:
        async with session_scope(self._session_factory) as session:
            row = (await session.execute(
                select(TopupSessionRecord).where(TopupSessionRecord.session_key == session_key)
            )).scalar_one_or_none()
            if row is None:
                return None
            payload = row.payload
        try:
            data = json.loads(payload)
            if not isinstance(data, dict):
                raise ValueError("payload is not an object")
            return PendingTopup.from_dict(data)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring corrupt top-up record for %s: %s", session_key, exc)
            return None

    async def clear(self, session_key: str) -> None:
        async with session_scope(self._session_factory) as session:
            await session.execute(
                delete(TopupSessionRecord).where(TopupSessionRecord.session_key == session_key)
            )

    async def session_keys(self) -> List[str]:
        async with session_scope(self._session_factory) as session:
            rows = await session.execute(select(TopupSessionRecord.session_key))
            return [key for (key,) in rows.all()]
