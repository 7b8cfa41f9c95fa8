"""決済ゲートウェイ照合 (Webhook → Payment / Subscription)

Webhook本文は信用せず、ゲートウェイから決済を再取得して状態を確定する。
同一イベントの再送は処理済みイベント台帳と「保留中操作が同じ決済IDを指しているか」の
二重チェックで無害化する。Payment と Subscription の更新は1トランザクションで行う。
"""
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.database import run_in_transaction
from app.core.errors import GatewayInconsistency
from app.core.logging import get_logger, log_data
from app.core.timeutil import add_cycle, utcnow
from app.models.payment import Payment, TERMINAL_PAYMENT_STATUSES
from app.models.processed_gateway_event import ProcessedGatewayEvent
from app.models.subscription import Subscription
from app.schemas.pending_operation import (
    PendingDowngradePayment,
    PendingUpgrade,
    read_pending_operation,
    with_fields,
    write_pending_operation,
)
from app.services import subscription_store as store
from app.services.stripe_service import (
    GATEWAY_APPROVED,
    GATEWAY_CANCELLED,
    GATEWAY_REJECTED,
)

logger = get_logger(__name__)

# 処理結果
OUTCOME_APPLIED = "applied"
OUTCOME_REJECTED = "rejected"
OUTCOME_PENDING = "pending"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_INCONSISTENT = "inconsistent"


def map_gateway_status(gateway_status: str) -> str:
    """ゲートウェイの状態語彙 → 内部Payment状態"""
    status = (gateway_status or "").lower()
    if status == GATEWAY_APPROVED:
        return "APPROVED"
    if status in (GATEWAY_REJECTED, GATEWAY_CANCELLED):
        return "REJECTED"
    return "PENDING"


# =========================================================
# 冪等性ヘルパー
# =========================================================

def _is_event_processed(db: Session, event_id: str) -> bool:
    """イベントが既に処理済みかチェック"""
    if not event_id:
        return False
    return db.query(ProcessedGatewayEvent).filter(ProcessedGatewayEvent.event_id == event_id).first() is not None


def _record_processed_event(db: Session, event_id: str, event_type: str, gateway_payment_id: str):
    """処理済みイベントを記録 (状態変更と同じトランザクション)"""
    if not event_id:
        return
    db.add(ProcessedGatewayEvent(
        event_id=event_id,
        event_type=event_type,
        gateway_payment_id=gateway_payment_id,
    ))


# =========================================================
# 承認時の適用
# =========================================================

def _apply_upgrade(db: Session, sub: Subscription, payment: Payment, operation: PendingUpgrade):
    now = utcnow()
    from_plan = sub.plan_type
    sub.plan_type = operation.to_plan.value
    sub.status = "ACTIVE"
    sub.price_amount = payment.amount
    # 旧サイクルの残期間は繰り越さず、決済時点から1サイクル
    sub.next_billing_date = add_cycle(now, sub.billing_cycle)
    sub.meta = with_fields(
        write_pending_operation(sub.meta, None),
        lastUpgrade={
            "fromPlan": from_plan,
            "toPlan": operation.to_plan.value,
            "paymentId": payment.id,
            "amount": payment.amount,
            "appliedAt": now.isoformat(),
        },
    )
    store.set_tenant_plan(db, sub.tenant_id, sub.plan_type)
    store.retire_other_subscriptions(db, sub)
    logger.info(
        f"アップグレード適用: subscription_id={sub.id}, {from_plan} → {sub.plan_type}, payment_id={payment.id}",
        extra=log_data(subscription_id=sub.id, payment_id=payment.id, to_plan=sub.plan_type),
    )


def _apply_downgrade_payment(db: Session, sub: Subscription, payment: Payment, operation: PendingDowngradePayment):
    now = utcnow()
    sub.status = "ACTIVE"
    sub.price_amount = payment.amount
    sub.meta = with_fields(
        write_pending_operation(sub.meta, None),
        lastDowngrade={
            "fromPlan": operation.from_plan.value,
            "toPlan": operation.to_plan.value,
            "paymentId": payment.id,
            "amount": payment.amount,
            "effectiveDate": operation.effective_date.isoformat(),
            "settledAt": now.isoformat(),
        },
    )
    store.set_tenant_plan(db, sub.tenant_id, sub.plan_type)
    logger.info(
        f"ダウングレード決済完了: subscription_id={sub.id}, plan={sub.plan_type}, payment_id={payment.id}",
        extra=log_data(subscription_id=sub.id, payment_id=payment.id),
    )


def _apply_regular(db: Session, sub: Subscription, payment: Payment):
    """新規購読・更新の決済承認"""
    if sub.status == "CANCELLED":
        raise GatewayInconsistency(f"解約済みの購読への決済承認: subscription_id={sub.id}, payment_id={payment.id}")
    if payment.plan_type != sub.plan_type or read_pending_operation(sub.meta) is not None:
        # プラン変更前に作成された決済。プランは決済ではなく保留中操作で切り替える
        raise GatewayInconsistency(
            f"現在のプランと一致しない決済の承認: subscription_id={sub.id}, payment_id={payment.id}, "
            f"plan={sub.plan_type}, payment_plan={payment.plan_type}"
        )

    now = utcnow()
    previous_status = sub.status
    first_payment = sub.next_billing_date is None
    sub.status = "ACTIVE"
    sub.price_amount = payment.amount
    if first_payment:
        sub.start_date = now
    if first_payment or previous_status in ("SUSPENDED", "PAYMENT_FAILED"):
        # 停止・未払いからの復帰は決済時点からサイクルを再開
        sub.next_billing_date = add_cycle(now, sub.billing_cycle)

    store.set_tenant_plan(db, sub.tenant_id, sub.plan_type)
    store.retire_other_subscriptions(db, sub)
    logger.info(
        f"決済承認: subscription_id={sub.id}, payment_id={payment.id}, kind={payment.kind}, {previous_status} → ACTIVE",
        extra=log_data(subscription_id=sub.id, payment_id=payment.id, kind=payment.kind),
    )


def _apply_approval(db: Session, sub: Subscription, payment: Payment):
    operation = read_pending_operation(sub.meta)

    if isinstance(operation, PendingUpgrade) and operation.payment_id == payment.id:
        _apply_upgrade(db, sub, payment, operation)
    elif isinstance(operation, PendingDowngradePayment) and operation.payment_id == payment.id:
        _apply_downgrade_payment(db, sub, payment, operation)
    elif payment.kind in ("plan_upgrade", "plan_downgrade"):
        raise GatewayInconsistency(
            f"保留中操作が決済を参照していません: subscription_id={sub.id}, payment_id={payment.id}, kind={payment.kind}"
        )
    else:
        _apply_regular(db, sub, payment)


# =========================================================
# 公開API
# =========================================================

def on_gateway_event(db: Session, gateway, event_type: str, gateway_payment_id: str, event_id: str = None) -> str:
    """ゲートウェイのコールバック1件を処理し、処理結果を返す

    GatewayInconsistency は状態を変更せずにログのみ (Webhookは常に受理する)。
    """
    if _is_event_processed(db, event_id):
        logger.info(f"Webhook重複スキップ: {event_id}")
        return OUTCOME_DUPLICATE

    detail = gateway.fetch_payment(gateway_payment_id, event_type)
    internal_status = map_gateway_status(detail.status)

    def work() -> str:
        payment = store.find_payment_by_reference(db, detail.external_reference, detail.id, for_update=True)
        if payment is None:
            raise GatewayInconsistency(
                f"対応する決済が見つかりません: reference={detail.external_reference}, gateway_id={detail.id}"
            )

        if internal_status == "PENDING":
            _record_processed_event(db, event_id, event_type, gateway_payment_id)
            logger.info(f"決済保留中のため変更なし: payment_id={payment.id}, gateway_status={detail.status}")
            return OUTCOME_PENDING

        if payment.status in TERMINAL_PAYMENT_STATUSES:
            _record_processed_event(db, event_id, event_type, gateway_payment_id)
            if payment.status == internal_status:
                logger.info(f"確定済みの決済 (再送): payment_id={payment.id}, status={payment.status}")
                return OUTCOME_DUPLICATE
            if payment.status == "CANCELLED" and internal_status == "APPROVED":
                logger.error(
                    f"取消済みの決済が承認されました (返金確認が必要): payment_id={payment.id}",
                    extra=log_data(payment_id=payment.id, gateway_id=detail.id),
                )
            else:
                logger.warning(f"確定済みの決済の状態変更を無視: payment_id={payment.id}, {payment.status} → {internal_status}")
            return OUTCOME_IGNORED

        sub = store.get_subscription(db, payment.subscription_id, for_update=True)

        if internal_status == "REJECTED":
            payment.status = "REJECTED"
            payment.failure_reason = detail.status_detail
            payment.gateway_payment_id = detail.payment_intent_id
            _record_processed_event(db, event_id, event_type, gateway_payment_id)
            logger.info(
                f"決済失敗: payment_id={payment.id}, subscription_id={sub.id}, reason={detail.status_detail}",
                extra=log_data(payment_id=payment.id, subscription_id=sub.id),
            )
            return OUTCOME_REJECTED

        if detail.amount is not None and detail.amount != payment.amount:
            raise GatewayInconsistency(
                f"決済金額が一致しません: payment_id={payment.id}, 請求額={payment.amount}, 支払額={detail.amount}"
            )

        _apply_approval(db, sub, payment)
        payment.status = "APPROVED"
        payment.paid_at = utcnow()
        payment.gateway_payment_id = detail.payment_intent_id
        payment.payment_method = detail.payment_method
        _record_processed_event(db, event_id, event_type, gateway_payment_id)
        return OUTCOME_APPLIED

    try:
        return run_in_transaction(db, work)
    except GatewayInconsistency as e:
        logger.warning(
            f"Webhook不整合 (状態変更なし): {e.message}",
            extra=log_data(event_id=event_id, event_type=event_type, gateway_id=gateway_payment_id),
        )
        return OUTCOME_INCONSISTENT
    except IntegrityError:
        # 同一イベントの並行処理で台帳の一意制約に衝突
        logger.info(f"Webhook重複 (並行処理): {event_id}")
        return OUTCOME_DUPLICATE
