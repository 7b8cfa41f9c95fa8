"""日時ユーティリティ (DBはタイムゾーンなしUTCで保持)"""
from datetime import datetime, timezone

from dateutil.relativedelta import relativedelta


def utcnow() -> datetime:
    """タイムゾーンなしの現在UTC時刻"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_cycle(base: datetime, billing_cycle: str) -> datetime:
    """請求サイクル1回分を加算 (月末は翌月末日に丸める)"""
    if billing_cycle == "YEARLY":
        return base + relativedelta(years=1)
    return base + relativedelta(months=1)


def parse_iso(value) -> datetime | None:
    """metadata (JSON) 内のISO文字列をdatetimeへ"""
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
