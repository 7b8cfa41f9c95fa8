"""購読の定期検証スイープ

1. 予約ダウングレードの実行
2. 期限切れ購読の延長 / 停止
3. 更新日が近い購読への案内
4. 直近の決済失敗の通知

各購読は独立したトランザクションで処理し、1件の失敗で残りを止めない。
何度実行しても、状態が変わらない限り追加の変更は発生しない。
"""
import math
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import run_in_transaction
from app.core.logging import get_logger, log_data
from app.core.timeutil import add_cycle, parse_iso, utcnow
from app.schemas.pending_operation import (
    PendingDowngrade,
    PendingDowngradePayment,
    read_pending_operation,
    with_fields,
    write_pending_operation,
)
from app.services import subscription_store as store
from app.services.plan_catalog import PlanType

logger = get_logger(__name__)

EXPIRY_STATUSES = ("ACTIVE", "PENDING_DOWNGRADE_PAYMENT")
REMINDER_LEVELS = ("reminder", "urgent")


def _due_downgrade(meta: Optional[dict], now: datetime) -> Optional[PendingDowngrade]:
    operation = read_pending_operation(meta)
    if isinstance(operation, PendingDowngrade) and operation.effective_date <= now:
        return operation
    return None


def _qualifying_since(next_billing_date: datetime) -> datetime:
    """今サイクル分の支払いとみなす起点

    次回請求日の RENEWAL_WARNING_DAYS 日前 (更新案内の開始日) 以降に支払われた承認済み決済を
    今サイクル分として扱う。案内を受けて請求日前に前払いした更新決済もここに含まれる。
    それより前の決済は前サイクル分とみなし、延長の根拠にしない。
    """
    return next_billing_date - timedelta(days=settings.RENEWAL_WARNING_DAYS)


# =========================================================
# 予約ダウングレードの実行
# =========================================================

def _execute_downgrade(db: Session, gateway, subscription_id: int, now: datetime):
    """予約ダウングレードを適用し (購読, 決済 or None, 失効対象の Checkout Session) を返す"""
    sub = store.get_subscription(db, subscription_id, for_update=True)
    if sub.status != "ACTIVE":
        return None
    operation = _due_downgrade(sub.meta, now)
    if operation is None:
        return None

    from_plan = sub.plan_type
    to_plan = operation.to_plan
    # 旧プランの更新決済は承認されても適用しない
    stale = store.cancel_open_payments(db, sub.id)

    if to_plan == PlanType.FREE:
        sub.plan_type = PlanType.FREE.value
        sub.status = "ACTIVE"
        sub.price_amount = 0
        sub.next_billing_date = None
        sub.meta = with_fields(
            write_pending_operation(sub.meta, None),
            lastDowngrade={
                "fromPlan": from_plan,
                "toPlan": PlanType.FREE.value,
                "effectiveDate": operation.effective_date.isoformat(),
                "settledAt": now.isoformat(),
            },
        )
        store.set_tenant_plan(db, sub.tenant_id, PlanType.FREE)
        logger.info(f"フリープランへのダウングレード適用: subscription_id={sub.id}, {from_plan} → FREE")
        return sub, None, stale

    tenant = store.get_tenant(db, sub.tenant_id)
    amount = operation.new_plan_price
    sub.plan_type = to_plan.value
    sub.status = "PENDING_DOWNGRADE_PAYMENT"
    sub.price_amount = amount
    sub.next_billing_date = add_cycle(now, sub.billing_cycle)

    payment = store.create_payment(db, sub, to_plan.value, "plan_downgrade", amount)
    session_id, url = gateway.create_checkout(payment, sub, tenant)
    payment.gateway_order_id = session_id
    payment.checkout_url = url

    sub.meta = write_pending_operation(sub.meta, PendingDowngradePayment(
        payment_id=payment.id,
        from_plan=from_plan,
        to_plan=to_plan,
        amount=amount,
        effective_date=operation.effective_date,
    ))
    store.set_tenant_plan(db, sub.tenant_id, to_plan)
    logger.info(
        f"ダウングレード適用: subscription_id={sub.id}, {from_plan} → {to_plan.value}, payment_id={payment.id}",
        extra=log_data(subscription_id=sub.id, payment_id=payment.id, to_plan=to_plan.value),
    )
    return sub, payment, stale


def execute_pending_downgrades(db: Session, gateway, notifier, now: datetime = None) -> int:
    """適用日を迎えた予約ダウングレードを実行"""
    now = now or utcnow()
    executed = 0
    for subscription_id in store.sweep_candidate_ids(db, ("ACTIVE",)):
        try:
            result = run_in_transaction(db, lambda: _execute_downgrade(db, gateway, subscription_id, now))
        except Exception as e:
            logger.error(f"ダウングレード実行エラー: subscription_id={subscription_id} - {e}", exc_info=True)
            continue
        if result is None:
            continue
        executed += 1
        sub, payment, stale = result
        for session_id in stale:
            gateway.expire_checkout(session_id)
        if payment is not None:
            notifier.notify_downgrade_payment_required(store.get_tenant(db, sub.tenant_id), sub, payment)
    if executed:
        logger.info(f"予約ダウングレード実行: {executed}件")
    return executed


# =========================================================
# 期限切れチェック
# =========================================================

def _check_expiry(db: Session, subscription_id: int, now: datetime) -> Optional[str]:
    sub = store.get_subscription(db, subscription_id, for_update=True)
    if sub.status not in EXPIRY_STATUSES or sub.next_billing_date is None or sub.next_billing_date >= now:
        return None
    if sub.plan_type == PlanType.FREE.value:
        return None
    if _due_downgrade(sub.meta, now) is not None:
        # 予約ダウングレードの実行を優先
        return None

    payment = store.find_cycle_payment(db, sub.id, _qualifying_since(sub.next_billing_date))
    if payment is not None:
        previous = sub.next_billing_date
        sub.next_billing_date = add_cycle(previous, sub.billing_cycle)
        logger.info(
            f"購読延長: subscription_id={sub.id}, 次回請求日 {previous.date()} → {sub.next_billing_date.date()}, payment_id={payment.id}",
            extra=log_data(subscription_id=sub.id, payment_id=payment.id),
        )
        return "extended"

    sub.status = "SUSPENDED"
    logger.info(
        f"購読停止: subscription_id={sub.id}, 請求日={sub.next_billing_date.date()} の支払いなし",
        extra=log_data(subscription_id=sub.id, tenant_id=sub.tenant_id),
    )
    return "suspended"


def check_expired_subscriptions(db: Session, notifier, now: datetime = None) -> dict:
    """次回請求日を過ぎた購読: 今サイクルの支払いがあれば延長、なければ停止

    今サイクルの支払いは次回請求日の RENEWAL_WARNING_DAYS 日前以降の承認済み決済 (_qualifying_since)。
    """
    now = now or utcnow()
    counts = {"extended": 0, "suspended": 0}
    for subscription_id in store.sweep_candidate_ids(db, EXPIRY_STATUSES):
        try:
            outcome = run_in_transaction(db, lambda: _check_expiry(db, subscription_id, now))
        except Exception as e:
            logger.error(f"期限チェックエラー: subscription_id={subscription_id} - {e}", exc_info=True)
            continue
        if outcome is None:
            continue
        counts[outcome] += 1
        if outcome == "suspended":
            sub = store.get_subscription(db, subscription_id)
            notifier.notify_suspended(store.get_tenant(db, sub.tenant_id), sub)
    return counts


# =========================================================
# 更新日の事前案内
# =========================================================

def _remind_renewal(db: Session, notifier, subscription_id: int, now: datetime) -> bool:
    sub = store.get_subscription(db, subscription_id, for_update=True)
    if sub.status != "ACTIVE" or sub.next_billing_date is None:
        return False
    window_end = now + timedelta(days=settings.RENEWAL_WARNING_DAYS)
    if not (now < sub.next_billing_date <= window_end):
        return False

    operation = read_pending_operation(sub.meta)
    if isinstance(operation, PendingDowngrade) and operation.to_plan == PlanType.FREE:
        return False
    if store.find_cycle_payment(db, sub.id, _qualifying_since(sub.next_billing_date)) is not None:
        return False

    days_left = math.ceil((sub.next_billing_date - now).total_seconds() / 86400)
    level = "urgent" if days_left <= settings.RENEWAL_URGENT_DAYS else "reminder"
    billing_date = sub.next_billing_date.isoformat()

    sent = (sub.meta or {}).get("renewalReminder") or {}
    if parse_iso(sent.get("billingDate")) == sub.next_billing_date:
        if REMINDER_LEVELS.index(sent.get("level", "reminder")) >= REMINDER_LEVELS.index(level):
            return False

    tenant = store.get_tenant(db, sub.tenant_id)
    if not notifier.notify_renewal_reminder(tenant, sub, days_left, urgent=(level == "urgent")):
        return False

    sub.meta = with_fields(sub.meta, renewalReminder={
        "billingDate": billing_date,
        "level": level,
        "notifiedAt": now.isoformat(),
    })
    logger.info(f"更新案内送信: subscription_id={sub.id}, あと{days_left}日, level={level}")
    return True


def notify_upcoming_renewals(db: Session, notifier, now: datetime = None) -> int:
    """RENEWAL_WARNING_DAYS 以内に更新日を迎える購読へ案内 (RENEWAL_URGENT_DAYS 以内は至急)"""
    now = now or utcnow()
    notified = 0
    for subscription_id in store.sweep_candidate_ids(db, ("ACTIVE",)):
        try:
            if run_in_transaction(db, lambda: _remind_renewal(db, notifier, subscription_id, now)):
                notified += 1
        except Exception as e:
            logger.error(f"更新案内エラー: subscription_id={subscription_id} - {e}", exc_info=True)
    return notified


# =========================================================
# 決済失敗の通知
# =========================================================

def _notify_failure(db: Session, notifier, payment_id: int, now: datetime) -> bool:
    payment = store.get_payment(db, payment_id, for_update=True)
    if payment.status != "REJECTED" or payment.failure_notified_at is not None:
        return False
    sub = store.get_subscription(db, payment.subscription_id)
    tenant = store.get_tenant(db, sub.tenant_id)
    if not notifier.notify_payment_failed(tenant, sub, payment):
        return False
    payment.failure_notified_at = now
    return True


def notify_failed_payments(db: Session, notifier, now: datetime = None) -> int:
    """直近 FAILED_PAYMENT_LOOKBACK_HOURS 時間の決済失敗を通知 (自動リトライはしない)"""
    now = now or utcnow()
    since = now - timedelta(hours=settings.FAILED_PAYMENT_LOOKBACK_HOURS)
    notified = 0
    for payment_id in store.recent_rejected_payment_ids(db, since):
        try:
            if run_in_transaction(db, lambda: _notify_failure(db, notifier, payment_id, now)):
                notified += 1
        except Exception as e:
            logger.error(f"決済失敗通知エラー: payment_id={payment_id} - {e}", exc_info=True)
    return notified


# =========================================================
# 一括実行
# =========================================================

def run_all_validations(session_factory, notifier, gateway, now: datetime = None) -> dict:
    """全スイープを実行して件数のサマリーを返す

    ダウングレード実行を期限チェックより先に行い、適用日を迎えた購読が停止されないようにする。
    """
    now = now or utcnow()
    summary = {}
    db = session_factory()
    try:
        sweeps = [
            ("downgrades_executed", lambda: execute_pending_downgrades(db, gateway, notifier, now)),
            ("expiry", lambda: check_expired_subscriptions(db, notifier, now)),
            ("renewal_reminders", lambda: notify_upcoming_renewals(db, notifier, now)),
            ("failed_payment_notices", lambda: notify_failed_payments(db, notifier, now)),
        ]
        for name, sweep in sweeps:
            try:
                summary[name] = sweep()
            except Exception as e:
                db.rollback()
                logger.error(f"スイープ失敗: {name} - {e}", exc_info=True)
                summary[name] = None
    finally:
        db.close()

    logger.info(f"購読検証完了: {summary}", extra=log_data(**summary))
    return summary
