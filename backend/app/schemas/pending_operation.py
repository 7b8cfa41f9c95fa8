"""Subscription.metadata の保留中操作

metadata はスキーマレスなJSONドキュメント。保留中操作キーは同時に1種類のみ存在できる。
読み書きは必ず read_pending_operation / write_pending_operation を経由し、
未知のキーはそのまま保持する。
"""
from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.core.errors import InvariantViolation
from app.services.plan_catalog import PlanType


class _MetadataModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PendingUpgrade(_MetadataModel):
    """アップグレード決済待ち (現プランのまま、決済承認で切替)"""
    payment_id: int
    from_plan: PlanType
    to_plan: PlanType
    amount: int
    requested_at: datetime


class PendingDowngrade(_MetadataModel):
    """ダウングレード予約 (effective_date まで現プランを維持)"""
    from_plan: PlanType
    to_plan: PlanType
    effective_date: datetime
    new_plan_price: int
    requested_at: Optional[datetime] = None


class PendingDowngradePayment(_MetadataModel):
    """ダウングレード適用済み・新プラン決済待ち"""
    payment_id: int
    from_plan: PlanType
    to_plan: PlanType
    amount: int
    effective_date: datetime


PendingOperation = Union[PendingUpgrade, PendingDowngrade, PendingDowngradePayment]

PENDING_KEYS = {
    "pendingUpgrade": PendingUpgrade,
    "pendingDowngrade": PendingDowngrade,
    "pendingDowngradePayment": PendingDowngradePayment,
}

_KEY_BY_TYPE = {model: key for key, model in PENDING_KEYS.items()}


def read_pending_operation(meta: Optional[dict]) -> Optional[PendingOperation]:
    """metadata から保留中操作を取り出す。2種類以上あれば InvariantViolation"""
    meta = meta or {}
    present = [key for key in PENDING_KEYS if meta.get(key)]
    if not present:
        return None
    if len(present) > 1:
        raise InvariantViolation(f"保留中操作が複数存在します: {', '.join(present)}")
    key = present[0]
    return PENDING_KEYS[key].model_validate(meta[key])


def write_pending_operation(meta: Optional[dict], operation: Optional[PendingOperation]) -> dict:
    """保留中操作を置き換えた新しい metadata を返す (他の保留キーは削除、未知キーは保持)

    JSONカラムの変更検知のため、呼び出し側は戻り値を代入し直すこと。
    """
    document = {k: v for k, v in (meta or {}).items() if k not in PENDING_KEYS}
    if operation is not None:
        document[_KEY_BY_TYPE[type(operation)]] = operation.to_document()
    return document


def with_fields(meta: Optional[dict], **fields) -> dict:
    """監査フィールド等を追加した新しい metadata を返す"""
    document = dict(meta or {})
    document.update(fields)
    return document
