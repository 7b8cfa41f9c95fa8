"""プランカタログのテスト"""
import pytest

from app.core.errors import ValidationError
from app.services.plan_catalog import (
    PLAN_HIERARCHY,
    UNLIMITED,
    BillingCycle,
    PlanType,
    compute_price,
    is_free,
    monthly_price,
    parse_billing_cycle,
    parse_plan_type,
    plan_limits,
    plan_rank,
    pricing_for,
    yearly_price,
)


class TestPlanLookup:
    def test_monthly_prices(self):
        assert monthly_price("FREE") == 0
        assert monthly_price("BASIC") == 18900
        assert monthly_price("PREMIUM") == 24900
        assert monthly_price("ENTERPRISE") == 90900

    def test_rank_order(self):
        ranks = [plan_rank(p) for p in PLAN_HIERARCHY]
        assert ranks == sorted(ranks)
        assert plan_rank("FREE") < plan_rank("BASIC") < plan_rank("PREMIUM") < plan_rank("ENTERPRISE")

    def test_parse_is_case_insensitive(self):
        assert parse_plan_type("premium") == PlanType.PREMIUM

    def test_unknown_plan_rejected(self):
        with pytest.raises(ValidationError):
            parse_plan_type("PLATINUM")

    def test_unknown_cycle_rejected(self):
        with pytest.raises(ValidationError):
            parse_billing_cycle("WEEKLY")

    def test_limits(self):
        assert plan_limits("FREE") == {"appointments": 30, "services": 3, "users": 1, "branches": 1}
        assert plan_limits("PREMIUM")["branches"] == 3
        assert all(v == UNLIMITED for v in plan_limits("ENTERPRISE").values())

    def test_parsed_members_are_accepted(self):
        assert parse_plan_type(PlanType.PREMIUM) is PlanType.PREMIUM
        assert parse_billing_cycle(BillingCycle.YEARLY) is BillingCycle.YEARLY
        assert plan_rank(PlanType.BASIC) == 1

    def test_is_free(self):
        assert is_free("FREE")
        assert not is_free("BASIC")


class TestPricing:
    def test_yearly_price_applies_discount(self):
        # 18900 × 12 × 0.9 = 204120
        assert yearly_price("BASIC") == 204120

    def test_yearly_price_rounds_half_up(self):
        # 24900 × 12 × 0.9 = 268920
        assert yearly_price("PREMIUM") == 268920
        assert yearly_price("FREE") == 0

    def test_compute_price_by_cycle(self):
        assert compute_price("BASIC", "MONTHLY") == 18900
        assert compute_price("BASIC", "YEARLY") == 204120

    def test_compute_price_with_enum_members(self):
        assert compute_price(PlanType.BASIC, BillingCycle.YEARLY) == 204120
        assert pricing_for(PlanType.PREMIUM)["monthly"]["price"] == 24900

    def test_pricing_for_basic(self):
        pricing = pricing_for("BASIC")
        assert pricing["monthly"]["price"] == 18900
        assert pricing["yearly"]["total_price"] == 204120
        # 204120 / 12 = 17010
        assert pricing["yearly"]["display_price"] == 17010
        assert pricing["yearly"]["savings"] == 18900 * 12 - 204120
        assert pricing["yearly"]["savings_percentage"] == 10

    def test_pricing_for_free(self):
        pricing = pricing_for("FREE")
        assert pricing["yearly"]["display_price"] == 0
        assert pricing["yearly"]["savings"] == 0
