"""
Pending top-up model tests.
"""
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_topup
from services.topup_state import PendingTopup, Receipt, TopupStatus, format_countdown


class TestPendingTopup:
    def test_total_is_base_plus_surcharge(self) -> None:
        tx = make_topup(base_amount=50000, surcharge=3200)
        assert tx.total_amount == 53200
        assert tx.credited_amount == 50000

    def test_persisted_form_restores_every_field(self) -> None:
        deadline = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        tx = make_topup(
            status=TopupStatus.AWAITING_SETTLEMENT,
            gateway_transaction_id="TRX1",
            qr_image_reference="https://qris.example.com/a.png",
            expiry_deadline=deadline,
        )
        restored = PendingTopup.from_dict(tx.to_dict())
        assert restored == tx
        assert restored.to_dict()["total_amount"] == 53200

    def test_inconsistent_total_is_rejected(self) -> None:
        data = make_topup().to_dict()
        data["total_amount"] = 99999
        with pytest.raises(ValueError):
            PendingTopup.from_dict(data)

    def test_unknown_status_is_rejected(self) -> None:
        data = make_topup().to_dict()
        data["status"] = "paid"
        with pytest.raises(ValueError):
            PendingTopup.from_dict(data)

    def test_expiry_is_judged_against_the_deadline(self) -> None:
        now = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        tx = make_topup(expiry_deadline=now + timedelta(seconds=30))
        assert not tx.is_expired(now)
        assert tx.is_expired(now + timedelta(seconds=30))
        assert tx.remaining(now) == timedelta(seconds=30)

    def test_no_deadline_means_not_expired(self) -> None:
        assert not make_topup().is_expired()

    def test_terminal_statuses(self) -> None:
        assert TopupStatus.SETTLED.is_terminal
        assert TopupStatus.CREATION_FAILED.is_terminal
        assert not TopupStatus.AWAITING_SETTLEMENT.is_terminal
        assert not TopupStatus.DRAFT.is_terminal


class TestReceipt:
    def test_receipt_mirrors_the_topup(self) -> None:
        stamp = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        tx = make_topup(gateway_transaction_id="TRX9")
        receipt = Receipt.for_topup(tx, stamp)
        assert receipt.transaction_label == "TRX9"
        assert receipt.total_amount == 53200
        assert receipt.quota_credited == 50
        assert Receipt.from_dict(receipt.to_dict()) == receipt


class TestCountdown:
    @pytest.mark.parametrize("seconds, expected", [
        (600, "10:00"),
        (65, "1:05"),
        (9, "0:09"),
        (0, "Expired"),
        (-3, "Expired"),
    ])
    def test_format(self, seconds: int, expected: str) -> None:
        assert format_countdown(timedelta(seconds=seconds)) == expected
