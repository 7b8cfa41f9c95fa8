from sqlalchemy import Column, Integer, String, DateTime, func
from app.core.database import Base


class ProcessedGatewayEvent(Base):
    """処理済みWebhookイベント台帳 (冪等性)"""
    __tablename__ = "processed_gateway_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    gateway_payment_id = Column(String(255), nullable=True)
    processed_at = Column(DateTime, nullable=False, server_default=func.now())
