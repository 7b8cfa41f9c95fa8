from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional
from datetime import datetime


class CamelModel(BaseModel):
    """APIのJSONはcamelCase (snake_caseでも受け付ける)"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ChangePlanRequest(CamelModel):
    subscription_id: Optional[int] = None
    new_plan_type: str
    billing_cycle: Optional[str] = None


class CancelRequest(CamelModel):
    reason: Optional[str] = None


class ChangePlanResponse(CamelModel):
    change_type: str
    requires_payment: bool
    subscription_id: Optional[int] = None
    plan_type: Optional[str] = None
    payment_id: Optional[int] = None
    amount: Optional[int] = None
    effective_date: Optional[datetime] = None
    checkout_url: Optional[str] = None
    message: str = ""


class PaymentInfo(CamelModel):
    id: int
    subscription_id: int
    plan_type: str
    kind: str
    amount: int
    currency: str
    billing_cycle: str
    status: str
    checkout_url: Optional[str] = None
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None


class PaymentListResponse(CamelModel):
    items: list[PaymentInfo]
    total: int
    page: int
    limit: int


class PendingOperationInfo(CamelModel):
    type: str
    from_plan: str
    to_plan: str
    amount: Optional[int] = None
    effective_date: Optional[datetime] = None
    payment_id: Optional[int] = None


class SubscriptionInfo(CamelModel):
    id: int
    plan_type: str
    plan_name: Optional[str] = None
    status: str
    billing_cycle: str
    price_amount: int
    currency: str
    start_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    limits: dict = {}
    pending_operation: Optional[PendingOperationInfo] = None
    recent_payments: list[PaymentInfo] = []


class CurrentSubscriptionResponse(CamelModel):
    subscription: Optional[SubscriptionInfo] = None


class PlanChangeInfo(CamelModel):
    id: int
    subscription_id: Optional[int] = None
    from_plan: str
    to_plan: str
    reason: str
    effective_date: datetime
    created_at: Optional[datetime] = None


class PlanInfo(CamelModel):
    plan_type: str
    name: str
    description: str
    price: int
    limits: dict
    features: list[str]
    pricing: dict
    is_current: bool = False


class CurrentPlanInfo(CamelModel):
    plan_type: str
    name: str
    status: Optional[str] = None
    billing_cycle: Optional[str] = None
    next_billing_date: Optional[datetime] = None
    limits: dict
    features: list[str]
