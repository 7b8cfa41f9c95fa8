"""購読ルーター: プラン変更、解約、更新決済、決済履歴"""
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.rate_limit import limiter, CANCEL_RATE_LIMIT, CHANGE_PLAN_RATE_LIMIT, RENEWAL_PAYMENT_RATE_LIMIT
from app.models.tenant import Tenant
from app.schemas.pending_operation import (
    PendingDowngrade,
    PendingDowngradePayment,
    PendingUpgrade,
    read_pending_operation,
)
from app.schemas.subscription import (
    CancelRequest,
    ChangePlanRequest,
    ChangePlanResponse,
    CurrentSubscriptionResponse,
    PaymentInfo,
    PaymentListResponse,
    PendingOperationInfo,
    PlanChangeInfo,
    SubscriptionInfo,
)
from app.services import plan_change_service
from app.services import subscription_store as store
from app.services.notification_service import get_notifier
from app.services.plan_catalog import get_plan
from app.services.stripe_service import get_payment_gateway
from app.routers.deps import require_tenant
from app.core.logging import get_logger

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])
logger = get_logger(__name__)

_PENDING_TYPE_NAMES = {
    PendingUpgrade: "upgrade",
    PendingDowngrade: "downgrade",
    PendingDowngradePayment: "downgrade_payment",
}


def _change_response(result) -> ChangePlanResponse:
    return ChangePlanResponse(
        change_type=result.change_type,
        requires_payment=result.requires_payment,
        subscription_id=result.subscription_id,
        plan_type=result.plan_type,
        payment_id=result.payment_id,
        amount=result.amount,
        effective_date=result.effective_date,
        checkout_url=result.checkout_url,
        message=result.message,
    )


def _pending_info(meta) -> PendingOperationInfo | None:
    operation = read_pending_operation(meta)
    if operation is None:
        return None
    return PendingOperationInfo(
        type=_PENDING_TYPE_NAMES[type(operation)],
        from_plan=operation.from_plan.value,
        to_plan=operation.to_plan.value,
        amount=getattr(operation, "amount", None) or getattr(operation, "new_plan_price", None),
        effective_date=getattr(operation, "effective_date", None),
        payment_id=getattr(operation, "payment_id", None),
    )


@router.post("/change-plan", response_model=ChangePlanResponse)
@limiter.limit(CHANGE_PLAN_RATE_LIMIT)
async def change_plan(
    request: Request,
    req: ChangePlanRequest,
    tenant: Tenant = Depends(require_tenant),
    db: Session = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    """プラン変更 (subscriptionId 省略時は初回の有料購読)"""
    result = plan_change_service.change_plan(
        db,
        gateway,
        tenant.id,
        req.new_plan_type,
        subscription_id=req.subscription_id,
        billing_cycle=req.billing_cycle,
    )
    return _change_response(result)


@router.post("/cancel", response_model=ChangePlanResponse)
@limiter.limit(CANCEL_RATE_LIMIT)
async def cancel_subscription(
    request: Request,
    req: CancelRequest,
    tenant: Tenant = Depends(require_tenant),
    db: Session = Depends(get_db),
    gateway=Depends(get_payment_gateway),
    notifier=Depends(get_notifier),
):
    """解約 (即時にフリープランへ)"""
    result = plan_change_service.cancel_subscription(db, gateway, tenant.id, req.reason, notifier=notifier)
    return _change_response(result)


@router.post("/renewal-payment", response_model=ChangePlanResponse)
@limiter.limit(RENEWAL_PAYMENT_RATE_LIMIT)
async def create_renewal_payment(
    request: Request,
    tenant: Tenant = Depends(require_tenant),
    db: Session = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    """現在のプランの更新決済を作成"""
    result = plan_change_service.create_renewal_payment(db, gateway, tenant.id)
    return _change_response(result)


@router.get("/current", response_model=CurrentSubscriptionResponse)
async def get_current_subscription(
    tenant: Tenant = Depends(require_tenant),
    db: Session = Depends(get_db),
):
    """現在の購読、保留中の変更、直近の決済"""
    sub = store.get_current_subscription(db, tenant.id)
    if sub is None:
        return CurrentSubscriptionResponse(subscription=None)

    plan = get_plan(sub.plan_type)
    payments, _ = store.list_payments(db, sub.id, page=1, limit=5)
    info = SubscriptionInfo.model_validate(sub)
    info.plan_name = plan["name"]
    info.limits = dict(plan["limits"])
    info.pending_operation = _pending_info(sub.meta)
    info.recent_payments = [PaymentInfo.model_validate(p) for p in payments]
    return CurrentSubscriptionResponse(subscription=info)


@router.get("/payments", response_model=PaymentListResponse)
async def list_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    tenant: Tenant = Depends(require_tenant),
    db: Session = Depends(get_db),
):
    """決済履歴 (現在の購読)"""
    sub = store.get_current_subscription(db, tenant.id)
    if sub is None:
        return PaymentListResponse(items=[], total=0, page=page, limit=limit)
    items, total = store.list_payments(db, sub.id, page=page, limit=limit)
    return PaymentListResponse(
        items=[PaymentInfo.model_validate(p) for p in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/payments/{payment_id}", response_model=PaymentInfo)
async def get_payment(
    payment_id: int,
    tenant: Tenant = Depends(require_tenant),
    db: Session = Depends(get_db),
):
    """決済状態の確認 (Checkout完了画面のポーリング用)"""
    payment = store.get_payment(db, payment_id)
    sub = store.get_subscription(db, payment.subscription_id)
    if sub.tenant_id != tenant.id:
        # 他テナントの決済は存在を明かさない
        raise HTTPException(status_code=404, detail="決済が見つかりません")
    return PaymentInfo.model_validate(payment)


@router.get("/plan-changes", response_model=list[PlanChangeInfo])
async def get_plan_changes(
    tenant: Tenant = Depends(require_tenant),
    db: Session = Depends(get_db),
):
    """プラン変更履歴"""
    changes = plan_change_service.get_plan_change_history(db, tenant.id)
    return [PlanChangeInfo.model_validate(c) for c in changes]
