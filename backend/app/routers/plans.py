"""プランAPI (カタログの読み取り専用ビュー)"""
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.models.tenant import Tenant
from app.schemas.subscription import CurrentPlanInfo, PlanInfo
from app.services import subscription_store as store
from app.services.plan_catalog import PLAN_CATALOG, PLAN_HIERARCHY, PlanType, pricing_for
from app.routers.deps import get_current_tenant, require_tenant

router = APIRouter(prefix="/api/plans", tags=["plans"])


def _camel_keys(data: dict) -> dict:
    return {
        to_camel(k): _camel_keys(v) if isinstance(v, dict) else v
        for k, v in data.items()
    }


@router.get("", response_model=list[PlanInfo])
async def list_plans(
    tenant: Optional[Tenant] = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    """プラン一覧 (月額・年額の価格、ログイン中なら現在のプラン)"""
    current = None
    if tenant is not None:
        sub = store.get_current_subscription(db, tenant.id)
        current = sub.plan_type if sub is not None else PlanType.FREE.value

    plans = []
    for plan_type in PLAN_HIERARCHY:
        plan = PLAN_CATALOG[plan_type]
        plans.append(PlanInfo(
            plan_type=plan_type.value,
            name=plan["name"],
            description=plan["description"],
            price=plan["price"],
            limits=dict(plan["limits"]),
            features=list(plan["features"]),
            pricing=_camel_keys(pricing_for(plan_type)),
            is_current=(plan_type.value == current),
        ))
    return plans


@router.get("/current", response_model=CurrentPlanInfo)
async def get_current_plan(
    tenant: Tenant = Depends(require_tenant),
    db: Session = Depends(get_db),
):
    """現在のプランと利用上限"""
    sub = store.get_current_subscription(db, tenant.id)
    plan_type = sub.plan_type if sub is not None else PlanType.FREE.value
    plan = PLAN_CATALOG[PlanType(plan_type)]
    return CurrentPlanInfo(
        plan_type=plan_type,
        name=plan["name"],
        status=sub.status if sub is not None else None,
        billing_cycle=sub.billing_cycle if sub is not None else None,
        next_billing_date=sub.next_billing_date if sub is not None else None,
        limits=dict(plan["limits"]),
        features=list(plan["features"]),
    )
