# 全モデルをインポート (Alembic autogenerate用)
from app.models.tenant import Tenant
from app.models.subscription import Subscription
from app.models.payment import Payment
from app.models.plan_change import PlanChange
from app.models.processed_gateway_event import ProcessedGatewayEvent

__all__ = [
    "Tenant",
    "Subscription",
    "Payment",
    "PlanChange",
    "ProcessedGatewayEvent",
]
