"""決済ゲートウェイ照合 (Webhook処理) のテスト"""
from datetime import timedelta

import pytest

from app.core.timeutil import utcnow
from app.models import Payment, ProcessedGatewayEvent, Subscription, Tenant
from app.schemas.pending_operation import PendingDowngradePayment, write_pending_operation
from app.services.payment_reconciler import (
    OUTCOME_APPLIED,
    OUTCOME_DUPLICATE,
    OUTCOME_IGNORED,
    OUTCOME_INCONSISTENT,
    OUTCOME_PENDING,
    OUTCOME_REJECTED,
    map_gateway_status,
    on_gateway_event,
)
from app.services.plan_change_service import change_plan, create_renewal_payment
from app.services.stripe_service import GatewayPayment
from app.services.subscription_validation_service import execute_pending_downgrades

COMPLETED = "checkout.session.completed"


def _register_session(gateway, session_id, payment, status="pending"):
    gateway.sessions[session_id] = GatewayPayment(
        id=session_id, status=status, external_reference=str(payment.id), amount=payment.amount,
    )


class TestStatusMapping:
    @pytest.mark.parametrize("gateway_status,expected", [
        ("approved", "APPROVED"),
        ("APPROVED", "APPROVED"),
        ("rejected", "REJECTED"),
        ("cancelled", "REJECTED"),
        ("pending", "PENDING"),
        ("in_process", "PENDING"),
        (None, "PENDING"),
    ])
    def test_map_gateway_status(self, gateway_status, expected):
        assert map_gateway_status(gateway_status) == expected


class TestUpgradeApproval:
    @pytest.fixture
    def upgrade(self, db, gateway, tenant, make_subscription):
        sub = make_subscription(tenant, plan_type="BASIC")
        result = change_plan(db, gateway, tenant.id, "PREMIUM", subscription_id=sub.id)
        return sub, result

    def test_approval_switches_plan(self, db, gateway, tenant, upgrade):
        sub, result = upgrade
        gateway.set_status("cs_test_1", "approved")

        outcome = on_gateway_event(db, gateway, COMPLETED, "cs_test_1", "evt_1")

        assert outcome == OUTCOME_APPLIED
        db.refresh(sub)
        assert sub.plan_type == "PREMIUM"
        assert sub.status == "ACTIVE"
        assert sub.price_amount == 24900
        assert sub.next_billing_date > utcnow() + timedelta(days=27)
        assert "pendingUpgrade" not in sub.meta
        assert sub.meta["lastUpgrade"]["fromPlan"] == "BASIC"

        payment = db.get(Payment, result.payment_id)
        assert payment.status == "APPROVED"
        assert payment.paid_at is not None
        assert payment.gateway_payment_id == "pi_cs_test_1"
        assert payment.payment_method == "card"
        db.refresh(tenant)
        assert tenant.plan_type == "PREMIUM"
        assert db.query(ProcessedGatewayEvent).filter(ProcessedGatewayEvent.event_id == "evt_1").count() == 1

    def test_same_event_twice_is_applied_once(self, db, gateway, upgrade):
        sub, _ = upgrade
        gateway.set_status("cs_test_1", "approved")
        on_gateway_event(db, gateway, COMPLETED, "cs_test_1", "evt_1")
        db.refresh(sub)
        first_billing = sub.next_billing_date

        outcome = on_gateway_event(db, gateway, COMPLETED, "cs_test_1", "evt_1")

        assert outcome == OUTCOME_DUPLICATE
        # 台帳で弾かれるためゲートウェイへの再取得もしない
        assert gateway.fetch_count == 1
        db.refresh(sub)
        assert sub.next_billing_date == first_billing

    def test_redelivery_with_new_event_id_is_harmless(self, db, gateway, upgrade):
        sub, _ = upgrade
        gateway.set_status("cs_test_1", "approved")
        on_gateway_event(db, gateway, COMPLETED, "cs_test_1", "evt_1")
        db.refresh(sub)
        first_billing = sub.next_billing_date

        outcome = on_gateway_event(db, gateway, "checkout.session.async_payment_succeeded", "cs_test_1", "evt_2")

        assert outcome == OUTCOME_DUPLICATE
        db.refresh(sub)
        assert sub.next_billing_date == first_billing
        assert sub.plan_type == "PREMIUM"

    def test_rejected_payment_leaves_subscription(self, db, gateway, upgrade):
        sub, result = upgrade
        gateway.set_status("cs_test_1", "rejected", "card_declined")

        outcome = on_gateway_event(db, gateway, "checkout.session.async_payment_failed", "cs_test_1", "evt_1")

        assert outcome == OUTCOME_REJECTED
        payment = db.get(Payment, result.payment_id)
        assert payment.status == "REJECTED"
        assert payment.failure_reason == "card_declined"
        db.refresh(sub)
        assert sub.plan_type == "BASIC"
        assert sub.status == "ACTIVE"

    def test_pending_status_changes_nothing(self, db, gateway, upgrade):
        sub, result = upgrade

        outcome = on_gateway_event(db, gateway, COMPLETED, "cs_test_1", "evt_1")

        assert outcome == OUTCOME_PENDING
        assert db.get(Payment, result.payment_id).status == "PENDING"
        db.refresh(sub)
        assert sub.plan_type == "BASIC"

    def test_superseded_payment_approval_is_ignored(self, db, gateway, upgrade):
        sub, _ = upgrade
        change_plan(db, gateway, sub.tenant_id, "ENTERPRISE", subscription_id=sub.id)
        gateway.set_status("cs_test_1", "approved")

        outcome = on_gateway_event(db, gateway, COMPLETED, "cs_test_1", "evt_1")

        assert outcome == OUTCOME_IGNORED
        db.refresh(sub)
        assert sub.plan_type == "BASIC"
        assert sub.meta["pendingUpgrade"]["toPlan"] == "ENTERPRISE"


class TestRegularApproval:
    def test_first_subscription_retires_free_row(self, db, gateway, tenant, make_subscription):
        free = make_subscription(tenant, plan_type="FREE")
        result = change_plan(db, gateway, tenant.id, "BASIC")
        gateway.set_status("cs_test_1", "approved")

        outcome = on_gateway_event(db, gateway, COMPLETED, "cs_test_1", "evt_1")

        assert outcome == OUTCOME_APPLIED
        sub = db.get(Subscription, result.subscription_id)
        db.refresh(sub)
        assert sub.status == "ACTIVE"
        assert sub.next_billing_date is not None
        db.refresh(free)
        assert free.status == "CANCELLED"
        assert db.get(Tenant, tenant.id).plan_type == "BASIC"

    def test_renewal_reactivates_suspended_subscription(self, db, gateway, tenant, make_subscription):
        sub = make_subscription(tenant, plan_type="BASIC", status="SUSPENDED",
                                next_billing_date=utcnow() - timedelta(days=3))
        create_renewal_payment(db, gateway, tenant.id)
        gateway.set_status("cs_test_1", "approved")

        outcome = on_gateway_event(db, gateway, COMPLETED, "cs_test_1", "evt_1")

        assert outcome == OUTCOME_APPLIED
        db.refresh(sub)
        assert sub.status == "ACTIVE"
        assert sub.next_billing_date > utcnow()

    def test_early_renewal_keeps_billing_date(self, db, gateway, tenant, make_subscription):
        sub = make_subscription(tenant, plan_type="BASIC")
        next_billing = sub.next_billing_date
        create_renewal_payment(db, gateway, tenant.id)
        gateway.set_status("cs_test_1", "approved")

        on_gateway_event(db, gateway, COMPLETED, "cs_test_1", "evt_1")

        db.refresh(sub)
        assert sub.next_billing_date == next_billing

    def test_cancelled_subscription_is_inconsistent(self, db, gateway, tenant, make_subscription, make_payment):
        sub = make_subscription(tenant, plan_type="BASIC", status="CANCELLED")
        payment = make_payment(sub, status="PENDING", gateway_order_id="cs_manual")
        _register_session(gateway, "cs_manual", payment, status="approved")

        outcome = on_gateway_event(db, gateway, COMPLETED, "cs_manual", "evt_1")

        assert outcome == OUTCOME_INCONSISTENT
        db.refresh(payment)
        assert payment.status == "PENDING"
        assert db.query(ProcessedGatewayEvent).count() == 0


class TestDowngradePaymentApproval:
    def test_downgrade_payment_reactivates(self, db, gateway, tenant, make_subscription, make_payment):
        sub = make_subscription(tenant, plan_type="BASIC", status="PENDING_DOWNGRADE_PAYMENT")
        payment = make_payment(sub, status="PENDING", kind="plan_downgrade", gateway_order_id="cs_dg")
        sub.meta = write_pending_operation(sub.meta, PendingDowngradePayment(
            payment_id=payment.id,
            from_plan="PREMIUM",
            to_plan="BASIC",
            amount=payment.amount,
            effective_date=utcnow(),
        ))
        db.commit()
        _register_session(gateway, "cs_dg", payment, status="approved")

        outcome = on_gateway_event(db, gateway, COMPLETED, "cs_dg", "evt_1")

        assert outcome == OUTCOME_APPLIED
        db.refresh(sub)
        assert sub.status == "ACTIVE"
        assert sub.plan_type == "BASIC"
        assert "pendingDowngradePayment" not in sub.meta
        assert sub.meta["lastDowngrade"]["fromPlan"] == "PREMIUM"


class TestInconsistencies:
    def test_unknown_payment(self, db, gateway):
        gateway.sessions["cs_unknown"] = GatewayPayment(id="cs_unknown", status="approved", external_reference="999")

        assert on_gateway_event(db, gateway, COMPLETED, "cs_unknown", "evt_1") == OUTCOME_INCONSISTENT

    def test_upgrade_payment_without_pending_operation(self, db, gateway, tenant, make_subscription, make_payment):
        sub = make_subscription(tenant, plan_type="BASIC")
        payment = make_payment(sub, status="PENDING", kind="plan_upgrade", plan_type="PREMIUM",
                               amount=24900, gateway_order_id="cs_orphan")
        _register_session(gateway, "cs_orphan", payment, status="approved")

        outcome = on_gateway_event(db, gateway, COMPLETED, "cs_orphan", "evt_1")

        assert outcome == OUTCOME_INCONSISTENT
        db.refresh(sub)
        assert sub.plan_type == "BASIC"
        db.refresh(payment)
        assert payment.status == "PENDING"

    def test_lookup_falls_back_to_session_id(self, db, gateway, tenant, make_subscription, make_payment):
        sub = make_subscription(tenant, plan_type="BASIC", status="SUSPENDED",
                                next_billing_date=utcnow() - timedelta(days=1))
        payment = make_payment(sub, status="PENDING", gateway_order_id="cs_fallback")
        gateway.sessions["cs_fallback"] = GatewayPayment(id="cs_fallback", status="approved", external_reference=None)

        assert on_gateway_event(db, gateway, COMPLETED, "cs_fallback", "evt_1") == OUTCOME_APPLIED
        db.refresh(payment)
        assert payment.status == "APPROVED"

    def test_amount_mismatch(self, db, gateway, tenant, make_subscription):
        sub = make_subscription(tenant, plan_type="BASIC")
        result = change_plan(db, gateway, tenant.id, "PREMIUM", subscription_id=sub.id)
        gateway.set_status("cs_test_1", "approved")
        gateway.sessions["cs_test_1"].amount = 100

        assert on_gateway_event(db, gateway, COMPLETED, "cs_test_1", "evt_1") == OUTCOME_INCONSISTENT
        payment = db.get(Payment, result.payment_id)
        db.refresh(payment)
        assert payment.status == "PENDING"
        assert payment.payment_method is None
        db.refresh(sub)
        assert sub.plan_type == "BASIC"

    def test_renewal_for_other_plan(self, db, gateway, tenant, make_subscription, make_payment):
        sub = make_subscription(tenant, plan_type="PREMIUM")
        payment = make_payment(sub, status="PENDING", plan_type="BASIC", amount=18900, gateway_order_id="cs_basic")
        _register_session(gateway, "cs_basic", payment, status="approved")

        assert on_gateway_event(db, gateway, COMPLETED, "cs_basic", "evt_1") == OUTCOME_INCONSISTENT
        db.refresh(sub)
        assert sub.plan_type == "PREMIUM"
        assert sub.price_amount == 24900
        db.refresh(payment)
        assert payment.status == "PENDING"

    def test_renewal_while_plan_change_pending(self, db, gateway, tenant, make_subscription, make_payment):
        sub = make_subscription(tenant, plan_type="BASIC")
        change_plan(db, gateway, tenant.id, "PREMIUM", subscription_id=sub.id)
        payment = make_payment(sub, status="PENDING", gateway_order_id="cs_renewal")
        _register_session(gateway, "cs_renewal", payment, status="approved")

        assert on_gateway_event(db, gateway, COMPLETED, "cs_renewal", "evt_1") == OUTCOME_INCONSISTENT
        db.refresh(sub)
        assert sub.plan_type == "BASIC"
        assert sub.meta["pendingUpgrade"]["toPlan"] == "PREMIUM"


class TestRenewalAfterPlanChange:
    """プラン変更前に作成した更新決済が後から承認されるケース"""

    def test_upgrade_survives_old_renewal(self, db, gateway, tenant, make_subscription):
        sub = make_subscription(tenant, plan_type="BASIC")
        renewal = create_renewal_payment(db, gateway, tenant.id)
        change_plan(db, gateway, tenant.id, "PREMIUM", subscription_id=sub.id)

        assert db.get(Payment, renewal.payment_id).status == "CANCELLED"
        assert gateway.expired == ["cs_test_1"]

        gateway.set_status("cs_test_2", "approved")
        assert on_gateway_event(db, gateway, COMPLETED, "cs_test_2", "evt_1") == OUTCOME_APPLIED
        gateway.set_status("cs_test_1", "approved")
        assert on_gateway_event(db, gateway, COMPLETED, "cs_test_1", "evt_2") == OUTCOME_IGNORED

        db.refresh(sub)
        assert sub.plan_type == "PREMIUM"
        assert sub.price_amount == 24900
        assert db.get(Tenant, tenant.id).plan_type == "PREMIUM"

    def test_downgrade_survives_old_renewal(self, db, gateway, notifier, tenant, make_subscription):
        sub = make_subscription(tenant, plan_type="PREMIUM")
        renewal = create_renewal_payment(db, gateway, tenant.id)
        result = change_plan(db, gateway, tenant.id, "BASIC", subscription_id=sub.id)

        assert db.get(Payment, renewal.payment_id).status == "CANCELLED"
        assert gateway.expired == ["cs_test_1"]

        execute_pending_downgrades(db, gateway, notifier, now=result.effective_date + timedelta(minutes=1))
        gateway.set_status("cs_test_1", "approved")
        assert on_gateway_event(db, gateway, COMPLETED, "cs_test_1", "evt_1") == OUTCOME_IGNORED

        db.refresh(sub)
        assert sub.plan_type == "BASIC"
        assert sub.status == "PENDING_DOWNGRADE_PAYMENT"
        assert sub.price_amount == 18900
        assert db.get(Tenant, tenant.id).plan_type == "BASIC"
