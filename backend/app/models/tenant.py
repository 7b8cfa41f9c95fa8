from sqlalchemy import Column, Integer, String, Boolean, DateTime, func
from app.core.database import Base


class Tenant(Base):
    """テナント (事業者)。CRUDは外部管理、本エンジンは plan_type のミラーのみ更新する"""
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, comment="事業者名")
    email = Column(String(255), nullable=False, index=True)
    plan_type = Column(String(20), nullable=False, default="FREE", comment="有効プランのミラー (アクセス判定用)")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
