"""保留中操作 (metadata) のテスト"""
from datetime import datetime

import pytest

from app.core.errors import InvariantViolation
from app.schemas.pending_operation import (
    PendingDowngrade,
    PendingDowngradePayment,
    PendingUpgrade,
    read_pending_operation,
    with_fields,
    write_pending_operation,
)
from app.services.plan_catalog import PlanType


def _upgrade():
    return PendingUpgrade(
        payment_id=7,
        from_plan="BASIC",
        to_plan="PREMIUM",
        amount=24900,
        requested_at=datetime(2026, 1, 10, 9, 0),
    )


class TestPendingOperation:
    def test_empty_metadata(self):
        assert read_pending_operation(None) is None
        assert read_pending_operation({"somethingElse": 1}) is None

    def test_written_with_camel_case_keys(self):
        meta = write_pending_operation({}, _upgrade())
        assert meta["pendingUpgrade"]["paymentId"] == 7
        assert meta["pendingUpgrade"]["fromPlan"] == "BASIC"
        assert meta["pendingUpgrade"]["toPlan"] == "PREMIUM"

    def test_read_back(self):
        meta = write_pending_operation({}, _upgrade())
        operation = read_pending_operation(meta)
        assert isinstance(operation, PendingUpgrade)
        assert operation.to_plan == PlanType.PREMIUM
        assert operation.requested_at == datetime(2026, 1, 10, 9, 0)

    def test_write_replaces_other_pending_kinds(self):
        meta = write_pending_operation({}, _upgrade())
        downgrade = PendingDowngrade(
            from_plan="PREMIUM",
            to_plan="BASIC",
            effective_date=datetime(2026, 2, 1),
            new_plan_price=18900,
        )
        meta = write_pending_operation(meta, downgrade)
        assert "pendingUpgrade" not in meta
        assert isinstance(read_pending_operation(meta), PendingDowngrade)

    def test_unknown_keys_preserved(self):
        meta = write_pending_operation({"lastUpgrade": {"toPlan": "BASIC"}, "futureKey": True}, _upgrade())
        meta = write_pending_operation(meta, None)
        assert meta == {"lastUpgrade": {"toPlan": "BASIC"}, "futureKey": True}

    def test_write_returns_new_document(self):
        original = {"note": "x"}
        meta = write_pending_operation(original, _upgrade())
        assert meta is not original
        assert "pendingUpgrade" not in original

    def test_two_kinds_is_invariant_violation(self):
        meta = {
            "pendingDowngrade": {"fromPlan": "PREMIUM", "toPlan": "BASIC", "effectiveDate": "2026-02-01T00:00:00", "newPlanPrice": 18900},
            "pendingDowngradePayment": {"paymentId": 3, "fromPlan": "PREMIUM", "toPlan": "BASIC", "amount": 18900, "effectiveDate": "2026-02-01T00:00:00"},
        }
        with pytest.raises(InvariantViolation):
            read_pending_operation(meta)

    def test_downgrade_payment_round_trip(self):
        op = PendingDowngradePayment(
            payment_id=3, from_plan="PREMIUM", to_plan="BASIC", amount=18900, effective_date=datetime(2026, 2, 1),
        )
        assert read_pending_operation(write_pending_operation(None, op)) == op

    def test_with_fields(self):
        meta = with_fields({"a": 1}, lastDowngrade={"toPlan": "BASIC"})
        assert meta == {"a": 1, "lastDowngrade": {"toPlan": "BASIC"}}
