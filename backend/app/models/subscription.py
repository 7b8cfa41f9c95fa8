from sqlalchemy import Column, Integer, String, DateTime, JSON, Enum as SAEnum, ForeignKey, func
from app.core.database import Base

PLAN_TYPES = ("FREE", "BASIC", "PREMIUM", "ENTERPRISE")
SUBSCRIPTION_STATUSES = ("ACTIVE", "PAYMENT_FAILED", "PENDING_DOWNGRADE_PAYMENT", "SUSPENDED", "CANCELLED")
BILLING_CYCLES = ("MONTHLY", "YEARLY")


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_type = Column(SAEnum(*PLAN_TYPES, name="plan_type"), nullable=False, default="FREE")
    status = Column(
        SAEnum(*SUBSCRIPTION_STATUSES, name="subscription_status"),
        nullable=False,
        default="ACTIVE",
        index=True,
    )
    billing_cycle = Column(SAEnum(*BILLING_CYCLES, name="billing_cycle"), nullable=False, default="MONTHLY")
    price_amount = Column(Integer, nullable=False, default=0, comment="請求額 (通貨単位)")
    currency = Column(String(3), nullable=False, default="jpy")
    start_date = Column(DateTime, nullable=False, server_default=func.now())
    next_billing_date = Column(DateTime, nullable=True, index=True, comment="次回請求日 (FREEはNULL)")
    cancelled_at = Column(DateTime, nullable=True)
    # 保留中操作 (pendingUpgrade / pendingDowngrade / pendingDowngradePayment) と監査フィールド
    meta = Column("metadata", JSON, nullable=True, comment="保留中操作メタデータ (スキーマレス)")
    version = Column(Integer, nullable=False, default=1, comment="楽観ロック用バージョン")
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}
