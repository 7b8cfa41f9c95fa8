from sqlalchemy import Column, Integer, String, Text, DateTime, Enum as SAEnum, ForeignKey, func
from app.core.database import Base
from app.models.subscription import PLAN_TYPES, BILLING_CYCLES

PAYMENT_STATUSES = ("PENDING", "APPROVED", "REJECTED", "CANCELLED", "REFUNDED")
TERMINAL_PAYMENT_STATUSES = ("APPROVED", "REJECTED", "CANCELLED", "REFUNDED")
PAYMENT_KINDS = ("subscription", "renewal", "plan_upgrade", "plan_downgrade")


class Payment(Base):
    """請求試行1回につき1行"""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_type = Column(SAEnum(*PLAN_TYPES, name="payment_plan_type"), nullable=False, comment="この決済で購入するプラン")
    kind = Column(
        SAEnum(*PAYMENT_KINDS, name="payment_kind"),
        nullable=False,
        default="subscription",
        comment="決済種別タグ (アップグレード/ダウングレード判別用)",
    )
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="jpy")
    billing_cycle = Column(SAEnum(*BILLING_CYCLES, name="payment_billing_cycle"), nullable=False, default="MONTHLY")
    status = Column(SAEnum(*PAYMENT_STATUSES, name="payment_status"), nullable=False, default="PENDING", index=True)
    gateway_order_id = Column(String(255), nullable=True, unique=True, comment="Checkout Session ID")
    gateway_payment_id = Column(String(255), nullable=True, comment="PaymentIntent ID")
    payment_method = Column(String(50), nullable=True, comment="決済手段 (card 等、承認時に記録)")
    checkout_url = Column(Text, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    failure_reason = Column(String(500), nullable=True)
    failure_notified_at = Column(DateTime, nullable=True, comment="決済失敗通知済み日時")
    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
