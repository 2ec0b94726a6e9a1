from functools import lru_cache
from typing import Annotated, List
import json

from pydantic import field_validator, model_validator, Field, AliasChoices
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # ignore unknown env keys like TZ
    )

    # App
    app_env: str = "development"
    log_level: str = "INFO"

    # Telegram
    # Map env BOT_TOKEN -> bot_token; accept both BOT_TOKEN and bot_token
    bot_token: str = Field(
        default="your_telegram_bot_token_here",
        validation_alias=AliasChoices("BOT_TOKEN", "bot_token"),
    )
    # Operator chats receiving receipts and settlement incidents
    admin_ids: Annotated[List[int], NoDecode] = []
    bot_username: str = ""

    @field_validator("admin_ids", mode="before")
    @classmethod
    def _parse_admin_ids(cls, v):
        if v is None or v == "":
            return []
        if isinstance(v, list):
            return [int(x) for x in v]
        if isinstance(v, int):
            return [int(v)]
        if isinstance(v, str):
            s = v.strip()
            # try JSON first
            try:
                parsed = json.loads(s)
                if isinstance(parsed, list):
                    return [int(x) for x in parsed]
                if isinstance(parsed, int):
                    return [int(parsed)]
            except ValueError:
                pass
            # fallback: CSV "1,2,3" or space/comma separated
            parts = [p for p in s.replace(" ", "").split(",") if p]
            try:
                return [int(p) for p in parts] if parts else []
            except ValueError:
                return []
        return []

    # Database (default: root user without password, inside docker network)
    database_url: str = "mysql+aiomysql://root:@db:3306/qris_topup"

    # QRIS gateway
    qris_api_base_url: str = "https://gateway.example.com/api/orkut"
    qris_api_key: str = ""
    qris_merchant_id: str = ""
    qris_auth_key: str = ""
    qris_static_code: str = ""  # static payment-code reference sent on create
    qris_timeout_seconds: float = 15.0
    qris_timezone: str = "Asia/Jakarta"  # applied to naive deadlines from the gateway

    # Admin fee (surcharge) range, inclusive
    admin_fee_min: int = 1000
    admin_fee_max: int = 5000

    # Top-up lifecycle
    topup_poll_interval_seconds: float = 5.0
    topup_countdown_tick_seconds: float = 1.0
    topup_fallback_expiry_seconds: int = 600
    ledger_max_retries: int = 10

    # Catalog
    topup_packages: Annotated[List[str], NoDecode] = ["10:10000", "25:22500", "50:40000", "100:75000"]
    custom_limit_price_per_unit: int = 1000
    custom_limit_min: int = 1
    custom_limit_max: int = 1000
    initial_daily_limit: int = 5

    @field_validator("topup_packages", mode="before")
    @classmethod
    def _parse_packages(cls, v):
        if v is None or v == "":
            return []
        if isinstance(v, str):
            s = v.strip()
            try:
                parsed = json.loads(s)
                if isinstance(parsed, list):
                    return [str(x) for x in parsed]
            except ValueError:
                pass
            return [p.strip() for p in s.split(",") if p.strip()]
        return [str(x) for x in v]

    @model_validator(mode="after")
    def _check_fee_range(self):
        if self.admin_fee_min < 0 or self.admin_fee_max < 0:
            raise ValueError("admin fee bounds must be non-negative")
        if self.admin_fee_min > self.admin_fee_max:
            raise ValueError("admin_fee_min must not exceed admin_fee_max")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
