"""購読ストア: Subscription / Payment / PlanChange の永続化"""
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError
from app.core.logging import get_logger
from app.core.timeutil import utcnow
from app.models.payment import Payment
from app.models.plan_change import PlanChange
from app.models.subscription import Subscription
from app.models.tenant import Tenant
from app.services.plan_catalog import PlanType

logger = get_logger(__name__)

LIVE_STATUSES = ("ACTIVE", "PAYMENT_FAILED", "PENDING_DOWNGRADE_PAYMENT", "SUSPENDED")


# =========================================================
# 読み取り
# =========================================================

def get_tenant(db: Session, tenant_id: int) -> Tenant:
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if not tenant:
        raise NotFoundError("テナントが見つかりません")
    return tenant


def get_subscription(db: Session, subscription_id: int, for_update: bool = False) -> Subscription:
    """購読取得 (for_update=True で行ロック)"""
    query = db.query(Subscription).filter(Subscription.id == subscription_id)
    if for_update:
        query = query.with_for_update()
    sub = query.first()
    if not sub:
        raise NotFoundError("購読が見つかりません")
    return sub


def get_current_subscription(db: Session, tenant_id: int, for_update: bool = False) -> Optional[Subscription]:
    """テナントの現在の購読 (解約済みを除く最新行)"""
    query = db.query(Subscription).filter(
        Subscription.tenant_id == tenant_id,
        Subscription.status.in_(LIVE_STATUSES),
    ).order_by(Subscription.id.desc())
    if for_update:
        query = query.with_for_update()
    return query.first()


def get_payment(db: Session, payment_id: int, for_update: bool = False) -> Payment:
    query = db.query(Payment).filter(Payment.id == payment_id)
    if for_update:
        query = query.with_for_update()
    payment = query.first()
    if not payment:
        raise NotFoundError("決済が見つかりません")
    return payment


def find_payment_by_reference(
    db: Session,
    external_reference: Optional[str],
    gateway_order_id: Optional[str],
    for_update: bool = False,
) -> Optional[Payment]:
    """ゲートウェイ側の参照ID → 内部Payment (external_reference 優先、Checkout Session ID で補完)"""
    query = db.query(Payment)
    if for_update:
        query = query.with_for_update()
    if external_reference and str(external_reference).isdigit():
        payment = query.filter(Payment.id == int(external_reference)).first()
        if payment:
            return payment
    if gateway_order_id:
        return query.filter(Payment.gateway_order_id == gateway_order_id).first()
    return None


def list_payments(db: Session, subscription_id: int, page: int = 1, limit: int = 10) -> tuple[list[Payment], int]:
    """決済履歴 (新しい順、ページング)"""
    query = db.query(Payment).filter(Payment.subscription_id == subscription_id)
    total = query.count()
    items = query.order_by(Payment.created_at.desc(), Payment.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return items, total


def list_plan_changes(db: Session, tenant_id: int) -> list[PlanChange]:
    return db.query(PlanChange).filter(
        PlanChange.tenant_id == tenant_id
    ).order_by(PlanChange.created_at.desc(), PlanChange.id.desc()).all()


def sweep_candidate_ids(db: Session, statuses: tuple) -> list[int]:
    """スイープ対象 (FREE以外、指定ステータス) の購読ID一覧"""
    rows = db.query(Subscription.id).filter(
        Subscription.status.in_(statuses),
        Subscription.plan_type != PlanType.FREE.value,
    ).order_by(Subscription.id).all()
    return [row[0] for row in rows]


def find_cycle_payment(db: Session, subscription_id: int, since: datetime) -> Optional[Payment]:
    """since 以降に支払われた承認済み決済"""
    paid_moment = func.coalesce(Payment.paid_at, Payment.created_at)
    return db.query(Payment).filter(
        Payment.subscription_id == subscription_id,
        Payment.status == "APPROVED",
        paid_moment >= since,
    ).order_by(paid_moment.desc()).first()


def recent_rejected_payment_ids(db: Session, since: datetime) -> list[int]:
    """since 以降に作成され、未通知の失敗決済"""
    rows = db.query(Payment.id).filter(
        Payment.status == "REJECTED",
        Payment.created_at >= since,
        Payment.failure_notified_at.is_(None),
    ).order_by(Payment.id).all()
    return [row[0] for row in rows]


# =========================================================
# 書き込み
# =========================================================

def create_subscription(
    db: Session,
    tenant_id: int,
    plan_type: str,
    billing_cycle: str,
    status: str,
    price_amount: int,
    currency: str,
    next_billing_date: datetime = None,
) -> Subscription:
    sub = Subscription(
        tenant_id=tenant_id,
        plan_type=plan_type,
        billing_cycle=billing_cycle,
        status=status,
        price_amount=price_amount,
        currency=currency,
        start_date=utcnow(),
        next_billing_date=next_billing_date,
        meta={},
    )
    db.add(sub)
    db.flush()
    return sub


def create_payment(
    db: Session,
    sub: Subscription,
    plan_type: str,
    kind: str,
    amount: int,
) -> Payment:
    """PENDING の決済を作成 (IDを確定させるため flush する)"""
    payment = Payment(
        subscription_id=sub.id,
        plan_type=plan_type,
        kind=kind,
        amount=amount,
        currency=sub.currency,
        billing_cycle=sub.billing_cycle,
        status="PENDING",
    )
    db.add(payment)
    db.flush()
    return payment


def record_plan_change(
    db: Session,
    tenant_id: int,
    subscription_id: Optional[int],
    from_plan: str,
    to_plan: str,
    reason: str,
    effective_date: datetime = None,
) -> PlanChange:
    change = PlanChange(
        tenant_id=tenant_id,
        subscription_id=subscription_id,
        from_plan=str(getattr(from_plan, "value", from_plan)),
        to_plan=str(getattr(to_plan, "value", to_plan)),
        reason=reason,
        effective_date=effective_date or utcnow(),
    )
    db.add(change)
    return change


def set_tenant_plan(db: Session, tenant_id: int, plan_type: str):
    """テナントの有効プランミラーを更新"""
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if tenant:
        tenant.plan_type = str(getattr(plan_type, "value", plan_type))


def retire_other_subscriptions(db: Session, sub: Subscription) -> int:
    """同一テナントの他の有効行を解約扱いにする (1テナント1有効行)"""
    db.flush()
    others = db.query(Subscription).filter(
        Subscription.tenant_id == sub.tenant_id,
        Subscription.id != sub.id,
        Subscription.status.in_(LIVE_STATUSES),
    ).with_for_update().all()
    now = utcnow()
    for other in others:
        other.status = "CANCELLED"
        other.cancelled_at = now
        logger.info(f"旧購読を終了: subscription_id={other.id} (置換先 subscription_id={sub.id})")
    return len(others)


def cancel_pending_payment(db: Session, payment_id: Optional[int]) -> Optional[Payment]:
    """未決済の決済を CANCELLED にする (既に確定済みなら何もしない)"""
    if not payment_id:
        return None
    payment = db.query(Payment).filter(Payment.id == payment_id).with_for_update().first()
    if payment and payment.status == "PENDING":
        payment.status = "CANCELLED"
        logger.info(f"未決済の決済を取消: payment_id={payment.id}")
        return payment
    return None


def cancel_open_payments(db: Session, subscription_id: int) -> list[str]:
    """購読の未決済決済をすべて取消し、失効対象の Checkout Session ID を返す"""
    db.flush()
    session_ids = []
    payments = db.query(Payment).filter(
        Payment.subscription_id == subscription_id,
        Payment.status == "PENDING",
    ).with_for_update().all()
    for payment in payments:
        payment.status = "CANCELLED"
        if payment.gateway_order_id:
            session_ids.append(payment.gateway_order_id)
    if payments:
        logger.info(f"未決済の決済を一括取消: subscription_id={subscription_id}, 件数={len(payments)}")
    return session_ids
