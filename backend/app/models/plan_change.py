from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, func
from app.core.database import Base


class PlanChange(Base):
    """プラン変更の監査ログ (追記のみ、更新しない)"""
    __tablename__ = "plan_changes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    from_plan = Column(String(20), nullable=False)
    to_plan = Column(String(20), nullable=False)
    reason = Column(String(50), nullable=False, comment="upgrade / downgrade / subscription_cancelled")
    effective_date = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
