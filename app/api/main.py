import logging

from fastapi import Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.db import AsyncSessionMaker, init_db_schema
from services.ledger import get_global_earnings, get_leaderboard, get_user_quota


logger = logging.getLogger(__name__)

app = FastAPI(title="QRIS Top-up Dashboard API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_session_factory() -> async_sessionmaker:
    return AsyncSessionMaker


@app.on_event("startup")
async def _startup():
    try:
        await init_db_schema()
    except Exception:
        logger.exception("Schema initialisation failed")


@app.get("/health")
async def health_check():
    return {"status": "ok", "env": settings.app_env}


@app.get("/stats/earnings")
async def earnings(session_factory: async_sessionmaker = Depends(get_session_factory)):
    return {"total": await get_global_earnings(session_factory)}


@app.get("/stats/leaderboard")
async def leaderboard(
    limit: int = Query(10, ge=1, le=100),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    rows = await get_leaderboard(limit=limit, session_factory=session_factory)
    return [
        {"rank": row.rank, "name": row.display_name, "total": row.total}
        for row in rows
    ]


@app.get("/quota/{purchaser_id}")
async def quota(purchaser_id: int, session_factory: async_sessionmaker = Depends(get_session_factory)):
    row = await get_user_quota(purchaser_id, session_factory)
    if row is None:
        return {
            "purchaser_id": purchaser_id,
            "daily_limit": settings.initial_daily_limit,
            "total_topup_amount": 0,
        }
    return {
        "purchaser_id": purchaser_id,
        "daily_limit": row.daily_limit,
        "total_topup_amount": row.total_topup_amount,
    }
