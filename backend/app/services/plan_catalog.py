"""プランカタログ: プラン種別 → 価格・リソース上限 (静的テーブル、状態なし)"""
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

from app.core.config import settings
from app.core.errors import ValidationError


class PlanType(str, Enum):
    FREE = "FREE"
    BASIC = "BASIC"
    PREMIUM = "PREMIUM"
    ENTERPRISE = "ENTERPRISE"


class BillingCycle(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


# ランク順 (アップグレード/ダウングレード判定)
PLAN_HIERARCHY = [PlanType.FREE, PlanType.BASIC, PlanType.PREMIUM, PlanType.ENTERPRISE]

UNLIMITED = -1

PLAN_CATALOG = {
    PlanType.FREE: {
        "name": "フリープラン",
        "description": "まずはお試しに",
        "price": 0,
        "limits": {"appointments": 30, "services": 3, "users": 1, "branches": 1},
        "features": [
            "月30件までの予約",
            "サービス登録3件まで",
            "スタッフ1名",
            "公開予約ページ",
            "基本ダッシュボード",
        ],
    },
    PlanType.BASIC: {
        "name": "ベーシックプラン",
        "description": "個人事業主向け",
        "price": 18900,
        "limits": {"appointments": 100, "services": 10, "users": 3, "branches": 1},
        "features": [
            "月100件までの予約",
            "サービス登録10件まで",
            "スタッフ3名まで",
            "公開予約ページ",
            "フルダッシュボード",
            "メールリマインダー",
            "基本レポート",
        ],
    },
    PlanType.PREMIUM: {
        "name": "プレミアムプラン",
        "description": "チーム・サロン向け",
        "price": 24900,
        "limits": {"appointments": 500, "services": 25, "users": 10, "branches": 3},
        "features": [
            "月500件までの予約",
            "サービス登録25件まで",
            "スタッフ10名まで",
            "公開予約ページ",
            "高度なダッシュボード",
            "メール・SMSリマインダー",
            "詳細レポート",
            "ブランドカスタマイズ",
        ],
    },
    PlanType.ENTERPRISE: {
        "name": "エンタープライズプラン",
        "description": "複数店舗・法人向け",
        "price": 90900,
        "limits": {"appointments": UNLIMITED, "services": UNLIMITED, "users": UNLIMITED, "branches": UNLIMITED},
        "features": [
            "予約数無制限",
            "サービス登録無制限",
            "スタッフ無制限",
            "公開予約ページ",
            "高度なダッシュボード",
            "メール・SMSリマインダー",
            "全レポート",
            "フルブランドカスタマイズ",
            "24時間優先サポート",
        ],
    },
}


def parse_plan_type(value) -> PlanType:
    """文字列 → PlanType。未知のプランは ValidationError"""
    if isinstance(value, PlanType):
        return value
    try:
        return PlanType(str(value).upper())
    except ValueError:
        valid = ", ".join(p.value for p in PLAN_HIERARCHY)
        raise ValidationError(f"無効なプランです: {value} (有効: {valid})")


def parse_billing_cycle(value) -> BillingCycle:
    """文字列 → BillingCycle"""
    if isinstance(value, BillingCycle):
        return value
    try:
        return BillingCycle(str(value).upper())
    except ValueError:
        raise ValidationError(f"無効な請求サイクルです: {value}")


def plan_rank(plan) -> int:
    return PLAN_HIERARCHY.index(parse_plan_type(plan))


def get_plan(plan) -> dict:
    return PLAN_CATALOG[parse_plan_type(plan)]


def plan_limits(plan) -> dict:
    return dict(get_plan(plan)["limits"])


def monthly_price(plan) -> int:
    return get_plan(plan)["price"]


def yearly_price(plan) -> int:
    """年額 = 月額 × 12 から割引 (四捨五入で通貨単位に丸め)"""
    price = monthly_price(plan)
    if price <= 0:
        return 0
    discounted = Decimal(price) * 12 * (100 - settings.YEARLY_DISCOUNT_PERCENT) / 100
    return int(discounted.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_price(plan, billing_cycle) -> int:
    """請求サイクルに応じた請求額"""
    if parse_billing_cycle(billing_cycle) == BillingCycle.YEARLY:
        return yearly_price(plan)
    return monthly_price(plan)


def pricing_for(plan) -> dict:
    """月額・年額の表示用価格"""
    monthly = monthly_price(plan)
    yearly = yearly_price(plan)
    monthly_equivalent = 0
    if yearly > 0:
        monthly_equivalent = int((Decimal(yearly) / 12).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return {
        "monthly": {
            "price": monthly,
            "display_price": monthly,
            "cycle": BillingCycle.MONTHLY.value,
        },
        "yearly": {
            "price": yearly,
            "display_price": monthly_equivalent,
            "total_price": yearly,
            "savings": monthly * 12 - yearly if monthly > 0 else 0,
            "savings_percentage": settings.YEARLY_DISCOUNT_PERCENT,
            "cycle": BillingCycle.YEARLY.value,
        },
    }


def is_free(plan) -> bool:
    return parse_plan_type(plan) == PlanType.FREE
