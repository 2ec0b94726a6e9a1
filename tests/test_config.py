"""
Settings parsing tests.
"""
import pytest
from pydantic import ValidationError

from core.config import Settings


class TestSettings:
    def test_admin_ids_accept_csv_and_json(self, monkeypatch) -> None:
        monkeypatch.setenv("ADMIN_IDS", "1, 2,3")
        assert Settings().admin_ids == [1, 2, 3]
        monkeypatch.setenv("ADMIN_IDS", "[4, 5]")
        assert Settings().admin_ids == [4, 5]

    def test_packages_accept_csv(self, monkeypatch) -> None:
        monkeypatch.setenv("TOPUP_PACKAGES", "10:10000,20:19000")
        assert Settings().topup_packages == ["10:10000", "20:19000"]

    def test_bot_token_alias(self, monkeypatch) -> None:
        monkeypatch.setenv("BOT_TOKEN", "123:abc")
        assert Settings().bot_token == "123:abc"

    def test_inverted_fee_range_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(admin_fee_min=5000, admin_fee_max=1000)
