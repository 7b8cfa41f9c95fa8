"""プラン変更オーケストレーター

アップグレードは新プラン満額の決済を作成し、決済承認まで現プランを維持する。
ダウングレードは次回請求日まで予約し、その時点でスケジューラが適用する。
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import run_in_transaction
from app.core.errors import OwnershipError, ValidationError
from app.core.logging import get_logger, log_data
from app.core.timeutil import utcnow
from app.models.plan_change import PlanChange
from app.models.subscription import Subscription
from app.schemas.pending_operation import (
    PendingDowngrade,
    PendingUpgrade,
    read_pending_operation,
    with_fields,
    write_pending_operation,
)
from app.services import subscription_store as store
from app.services.plan_catalog import (
    BillingCycle,
    PlanType,
    compute_price,
    parse_billing_cycle,
    parse_plan_type,
    plan_rank,
)

logger = get_logger(__name__)

CHANGE_UPGRADE = "upgrade"
CHANGE_DOWNGRADE = "downgrade"
CHANGE_SAME = "same"
CHANGE_NEW_SUBSCRIPTION = "new_subscription"


@dataclass
class ChangeResult:
    change_type: str
    requires_payment: bool
    subscription_id: Optional[int] = None
    plan_type: Optional[str] = None
    payment_id: Optional[int] = None
    amount: Optional[int] = None
    effective_date: Optional[datetime] = None
    checkout_url: Optional[str] = None
    message: str = ""
    # コミット後に失効させる Checkout Session
    stale_sessions: list = field(default_factory=list, repr=False)


# =========================================================
# 内部ヘルパー
# =========================================================

def _issue_payment(db: Session, gateway, sub: Subscription, tenant, plan_type: str, kind: str, amount: int):
    """PENDING決済を作成し Checkout Session を紐付ける"""
    payment = store.create_payment(db, sub, plan_type, kind, amount)
    session_id, url = gateway.create_checkout(payment, sub, tenant)
    payment.gateway_order_id = session_id
    payment.checkout_url = url
    logger.info(
        f"決済作成: payment_id={payment.id}, subscription_id={sub.id}, kind={kind}, amount={amount}",
        extra=log_data(payment_id=payment.id, subscription_id=sub.id, kind=kind),
    )
    return payment


def _drop_pending_operation(db: Session, sub: Subscription) -> tuple[Optional[object], list]:
    """保留中操作を破棄し、未決済の決済を取り消す。失効対象の Checkout Session を返す"""
    operation = read_pending_operation(sub.meta)
    stale = []
    if operation is None:
        return None, stale
    payment_id = getattr(operation, "payment_id", None)
    cancelled = store.cancel_pending_payment(db, payment_id)
    if cancelled is not None and cancelled.gateway_order_id:
        stale.append(cancelled.gateway_order_id)
    sub.meta = write_pending_operation(sub.meta, None)
    logger.info(f"保留中操作を破棄: subscription_id={sub.id}, operation={type(operation).__name__}")
    return operation, stale


def _expire_sessions(gateway, session_ids: list):
    for session_id in session_ids:
        gateway.expire_checkout(session_id)


def _is_unpaid_first_purchase(sub: Subscription) -> bool:
    """初回購入の決済待ち (一度も支払われていない有料行)"""
    return sub.status == "PAYMENT_FAILED" and sub.next_billing_date is None


# =========================================================
# 新規購読 (FREE → 有料 の縮退パス)
# =========================================================

def _start_subscription(db: Session, gateway, tenant, target: PlanType, cycle: BillingCycle) -> ChangeResult:
    now = utcnow()
    if target == PlanType.FREE:
        sub = store.create_subscription(
            db, tenant.id, target.value, cycle.value, "ACTIVE", 0, settings.CURRENCY,
        )
        store.set_tenant_plan(db, tenant.id, target)
        store.record_plan_change(db, tenant.id, sub.id, PlanType.FREE, target, CHANGE_NEW_SUBSCRIPTION, now)
        logger.info(f"フリープラン購読作成: tenant_id={tenant.id}, subscription_id={sub.id}")
        return ChangeResult(
            change_type=CHANGE_NEW_SUBSCRIPTION,
            requires_payment=False,
            subscription_id=sub.id,
            plan_type=target.value,
            message="フリープランを開始しました",
        )

    amount = compute_price(target, cycle)
    sub = store.create_subscription(
        db, tenant.id, target.value, cycle.value, "PAYMENT_FAILED", amount, settings.CURRENCY,
    )
    payment = _issue_payment(db, gateway, sub, tenant, target.value, "subscription", amount)
    store.record_plan_change(db, tenant.id, sub.id, PlanType.FREE, target, CHANGE_UPGRADE, now)
    logger.info(f"新規有料購読作成: tenant_id={tenant.id}, subscription_id={sub.id}, plan={target.value}")
    return ChangeResult(
        change_type=CHANGE_NEW_SUBSCRIPTION,
        requires_payment=True,
        subscription_id=sub.id,
        plan_type=target.value,
        payment_id=payment.id,
        amount=amount,
        checkout_url=payment.checkout_url,
        message="お支払い完了後にプランが有効になります",
    )


def _restart_first_purchase(db: Session, gateway, sub: Subscription, tenant, target: PlanType) -> ChangeResult:
    """未払いの初回購入を別プランでやり直す"""
    _, stale = _drop_pending_operation(db, sub)
    stale.extend(store.cancel_open_payments(db, sub.id))

    if target == PlanType.FREE:
        sub.status = "CANCELLED"
        sub.cancelled_at = utcnow()
        db.flush()
        ensure_free_subscription(db, tenant.id)
        store.record_plan_change(db, tenant.id, sub.id, sub.plan_type, target, CHANGE_DOWNGRADE)
        logger.info(f"未払いの初回購入を取消: subscription_id={sub.id}")
        return ChangeResult(
            change_type=CHANGE_DOWNGRADE,
            requires_payment=False,
            subscription_id=sub.id,
            plan_type=target.value,
            effective_date=utcnow(),
            message="フリープランに戻しました",
            stale_sessions=stale,
        )

    from_plan = sub.plan_type
    amount = compute_price(target, sub.billing_cycle)
    sub.plan_type = target.value
    sub.price_amount = amount
    payment = _issue_payment(db, gateway, sub, tenant, target.value, "subscription", amount)
    store.record_plan_change(db, tenant.id, sub.id, from_plan, target, CHANGE_UPGRADE if plan_rank(target) > plan_rank(from_plan) else CHANGE_DOWNGRADE)
    return ChangeResult(
        change_type=CHANGE_NEW_SUBSCRIPTION,
        requires_payment=True,
        subscription_id=sub.id,
        plan_type=target.value,
        payment_id=payment.id,
        amount=amount,
        checkout_url=payment.checkout_url,
        message="お支払い完了後にプランが有効になります",
        stale_sessions=stale,
    )


# =========================================================
# 既存購読の変更
# =========================================================

def _upgrade(db: Session, gateway, sub: Subscription, tenant, target: PlanType) -> ChangeResult:
    now = utcnow()
    _, stale = _drop_pending_operation(db, sub)
    # 旧プラン価格の更新決済が後から承認されないよう取り消す
    stale.extend(store.cancel_open_payments(db, sub.id))
    amount = compute_price(target, sub.billing_cycle)
    payment = _issue_payment(db, gateway, sub, tenant, target.value, "plan_upgrade", amount)

    operation = PendingUpgrade(
        payment_id=payment.id,
        from_plan=sub.plan_type,
        to_plan=target,
        amount=amount,
        requested_at=now,
    )
    sub.meta = write_pending_operation(sub.meta, operation)
    store.record_plan_change(db, sub.tenant_id, sub.id, sub.plan_type, target, CHANGE_UPGRADE, now)
    logger.info(
        f"アップグレード申請: subscription_id={sub.id}, {sub.plan_type} → {target.value}, payment_id={payment.id}",
        extra=log_data(subscription_id=sub.id, payment_id=payment.id, to_plan=target.value),
    )
    return ChangeResult(
        change_type=CHANGE_UPGRADE,
        requires_payment=True,
        subscription_id=sub.id,
        plan_type=sub.plan_type,
        payment_id=payment.id,
        amount=amount,
        checkout_url=payment.checkout_url,
        message="お支払い完了後に新しいプランへ切り替わります",
        stale_sessions=stale,
    )


def _downgrade(db: Session, sub: Subscription, target: PlanType) -> ChangeResult:
    if sub.status != "ACTIVE" or sub.next_billing_date is None:
        raise ValidationError("現在の契約状態ではダウングレードを予約できません")

    now = utcnow()
    _, stale = _drop_pending_operation(db, sub)
    stale.extend(store.cancel_open_payments(db, sub.id))
    effective_date = sub.next_billing_date
    new_price = compute_price(target, sub.billing_cycle)
    operation = PendingDowngrade(
        from_plan=sub.plan_type,
        to_plan=target,
        effective_date=effective_date,
        new_plan_price=new_price,
        requested_at=now,
    )
    sub.meta = write_pending_operation(sub.meta, operation)
    store.record_plan_change(db, sub.tenant_id, sub.id, sub.plan_type, target, CHANGE_DOWNGRADE, effective_date)
    logger.info(
        f"ダウングレード予約: subscription_id={sub.id}, {sub.plan_type} → {target.value}, 適用日={effective_date.isoformat()}",
        extra=log_data(subscription_id=sub.id, to_plan=target.value),
    )
    return ChangeResult(
        change_type=CHANGE_DOWNGRADE,
        requires_payment=False,
        subscription_id=sub.id,
        plan_type=sub.plan_type,
        amount=new_price,
        effective_date=effective_date,
        message=f"{effective_date.strftime('%Y年%m月%d日')}に新しいプランへ切り替わります",
        stale_sessions=stale,
    )


def _same_plan(db: Session, sub: Subscription) -> ChangeResult:
    """同一プラン指定: 変更なし。予約中の変更があれば取り消す"""
    operation, stale = _drop_pending_operation(db, sub)
    message = "現在のプランと同じです"
    if operation is not None:
        message = "予約中のプラン変更を取り消しました"
    return ChangeResult(
        change_type=CHANGE_SAME,
        requires_payment=False,
        subscription_id=sub.id,
        plan_type=sub.plan_type,
        message=message,
        stale_sessions=stale,
    )


def _change_existing(db: Session, gateway, sub: Subscription, tenant, target: PlanType) -> ChangeResult:
    if sub.status == "CANCELLED":
        raise ValidationError("解約済みの契約は変更できません")
    if sub.status == "PENDING_DOWNGRADE_PAYMENT":
        raise ValidationError("プラン変更後のお支払いが完了するまで変更できません")
    if _is_unpaid_first_purchase(sub):
        if target.value == sub.plan_type:
            return _same_plan(db, sub)
        return _restart_first_purchase(db, gateway, sub, tenant, target)

    current_rank = plan_rank(sub.plan_type)
    target_rank = plan_rank(target)
    if target_rank == current_rank:
        return _same_plan(db, sub)
    if target_rank > current_rank:
        return _upgrade(db, gateway, sub, tenant, target)
    return _downgrade(db, sub, target)


# =========================================================
# 公開API
# =========================================================

def change_plan(
    db: Session,
    gateway,
    tenant_id: int,
    new_plan,
    subscription_id: Optional[int] = None,
    billing_cycle=None,
) -> ChangeResult:
    """プラン変更 (アップグレード / ダウングレード / 同一 / 新規購読)

    subscription_id 省略時、またはフリー行を指定した場合は新規の有料購読を作成する。
    billing_cycle は新規購読の作成時のみ使われる。
    """
    target = parse_plan_type(new_plan)
    cycle = parse_billing_cycle(billing_cycle) if billing_cycle else BillingCycle.MONTHLY

    def work() -> ChangeResult:
        tenant = store.get_tenant(db, tenant_id)
        if subscription_id is not None:
            sub = store.get_subscription(db, subscription_id, for_update=True)
            if sub.tenant_id != tenant_id:
                raise OwnershipError("この購読を変更する権限がありません")
        else:
            sub = store.get_current_subscription(db, tenant_id, for_update=True)

        if sub is None or (sub.plan_type == PlanType.FREE.value and sub.status != "CANCELLED"):
            if sub is not None and target == PlanType.FREE:
                return _same_plan(db, sub)
            return _start_subscription(db, gateway, tenant, target, cycle)
        return _change_existing(db, gateway, sub, tenant, target)

    result = run_in_transaction(db, work)
    _expire_sessions(gateway, result.stale_sessions)
    return result


def cancel_subscription(db: Session, gateway, tenant_id: int, reason: str = None, notifier=None) -> ChangeResult:
    """有料購読を解約し、即時にフリープランへ戻す"""

    def work() -> ChangeResult:
        sub = store.get_current_subscription(db, tenant_id, for_update=True)
        if sub is None or sub.plan_type == PlanType.FREE.value:
            raise ValidationError("解約できる有料プランの契約がありません")

        now = utcnow()
        _, stale = _drop_pending_operation(db, sub)
        stale.extend(store.cancel_open_payments(db, sub.id))

        from_plan = sub.plan_type
        sub.status = "CANCELLED"
        sub.cancelled_at = now
        sub.meta = with_fields(sub.meta, cancellation={
            "reason": reason,
            "cancelledAt": now.isoformat(),
            "plan": from_plan,
        })
        store.record_plan_change(db, tenant_id, sub.id, from_plan, PlanType.FREE, "subscription_cancelled", now)
        db.flush()
        ensure_free_subscription(db, tenant_id)
        logger.info(
            f"購読解約: subscription_id={sub.id}, plan={from_plan}",
            extra=log_data(subscription_id=sub.id, tenant_id=tenant_id, reason=reason),
        )
        return ChangeResult(
            change_type="cancelled",
            requires_payment=False,
            subscription_id=sub.id,
            plan_type=PlanType.FREE.value,
            effective_date=now,
            message="解約しました。フリープランに切り替わりました",
            stale_sessions=stale,
        )

    result = run_in_transaction(db, work)
    _expire_sessions(gateway, result.stale_sessions)

    if notifier is not None:
        notifier.notify_cancelled(store.get_tenant(db, tenant_id), store.get_subscription(db, result.subscription_id))
    return result


def create_renewal_payment(db: Session, gateway, tenant_id: int) -> ChangeResult:
    """現在のプラン・サイクルでの更新決済を作成"""

    def work() -> ChangeResult:
        tenant = store.get_tenant(db, tenant_id)
        sub = store.get_current_subscription(db, tenant_id, for_update=True)
        if sub is None or sub.plan_type == PlanType.FREE.value:
            raise ValidationError("更新が必要な有料プランの契約がありません")
        if sub.status == "PENDING_DOWNGRADE_PAYMENT":
            raise ValidationError("プラン変更後のお支払いを先に完了してください")
        if read_pending_operation(sub.meta) is not None:
            raise ValidationError("予約中のプラン変更があるため更新決済は作成できません")

        amount = compute_price(sub.plan_type, sub.billing_cycle)
        payment = _issue_payment(db, gateway, sub, tenant, sub.plan_type, "renewal", amount)
        return ChangeResult(
            change_type="renewal",
            requires_payment=True,
            subscription_id=sub.id,
            plan_type=sub.plan_type,
            payment_id=payment.id,
            amount=amount,
            effective_date=sub.next_billing_date,
            checkout_url=payment.checkout_url,
            message="更新のお支払いページを作成しました",
        )

    return run_in_transaction(db, work)


def get_plan_change_history(db: Session, tenant_id: int) -> list[PlanChange]:
    return store.list_plan_changes(db, tenant_id)


def ensure_free_subscription(db: Session, tenant_id: int) -> Subscription:
    """有効な購読行がなければ FREE/ACTIVE 行を作成 (コミットは呼び出し側)"""
    existing = store.get_current_subscription(db, tenant_id)
    if existing is not None and existing.plan_type == PlanType.FREE.value:
        store.set_tenant_plan(db, tenant_id, PlanType.FREE)
        return existing

    live_free = db.query(Subscription).filter(
        Subscription.tenant_id == tenant_id,
        Subscription.plan_type == PlanType.FREE.value,
        Subscription.status == "ACTIVE",
    ).first()
    if live_free is not None:
        store.set_tenant_plan(db, tenant_id, PlanType.FREE)
        return live_free

    sub = store.create_subscription(
        db, tenant_id, PlanType.FREE.value, BillingCycle.MONTHLY.value, "ACTIVE", 0, settings.CURRENCY,
    )
    store.set_tenant_plan(db, tenant_id, PlanType.FREE)
    logger.info(f"フリープラン購読を作成: tenant_id={tenant_id}, subscription_id={sub.id}")
    return sub
