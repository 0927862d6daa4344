"""Tests for the pure commission rules engine."""

from decimal import Decimal

import pytest

from app.models.affiliate import CommissionType
from app.services.commission_rules import (
    AffiliateTerms,
    CategoryOverride,
    LineItem,
    ProgramTerms,
    TieredRule,
    compute_commission,
    money,
    select_rate,
    split_fees,
)


def program_terms(rules=(), rate="5.00", processing_fee="3.00", vendor_fee="0.00") -> ProgramTerms:
    return ProgramTerms(
        default_rate=Decimal(rate),
        default_type=CommissionType.PERCENTAGE,
        default_fixed_amount=Decimal("0.00"),
        processing_fee=Decimal(processing_fee),
        vendor_fee=Decimal(vendor_fee),
        category_overrides=tuple(r for r in rules if isinstance(r, CategoryOverride)),
        tiers=tuple(r for r in rules if isinstance(r, TieredRule)),
    )


def affiliate_terms(rate="10.00", commission_type=CommissionType.PERCENTAGE, fixed="0.00") -> AffiliateTerms:
    return AffiliateTerms(
        rate=Decimal(rate) if rate is not None else None,
        commission_type=commission_type,
        fixed_amount=Decimal(fixed),
    )


def line(price="100.00", quantity=2, category=None) -> LineItem:
    return LineItem(
        line_item_id="L1",
        product_id="P1",
        category=category,
        price=Decimal(price),
        quantity=quantity,
    )


class TestComputeCommission:
    def test_percentage_with_platform_fee(self):
        result = compute_commission(line(), affiliate_terms(), program_terms())

        assert result.gross == Decimal("20.00")
        assert result.platform_fee == Decimal("0.60")
        assert result.vendor_fee == Decimal("0.00")
        assert result.net == Decimal("19.40")
        assert result.source == "affiliate"
        assert not result.fee_exceeds_gross

    def test_net_equals_gross_minus_fees(self):
        result = compute_commission(
            line(price="33.33", quantity=3),
            affiliate_terms(rate="7.50"),
            program_terms(processing_fee="2.50", vendor_fee="1.25"),
        )
        assert result.net == result.gross - result.platform_fee - result.vendor_fee
        assert result.net >= 0

    def test_fixed_commission_applies_once_per_line(self):
        result = compute_commission(
            line(quantity=3),
            affiliate_terms(commission_type=CommissionType.FIXED, fixed="5.00"),
            program_terms(),
        )
        assert result.commission_type == CommissionType.FIXED
        assert result.gross == Decimal("5.00")
        assert result.net == Decimal("4.85")

    def test_fee_exceeding_gross_is_scaled_and_flagged(self):
        result = compute_commission(
            line(price="10.00", quantity=1),
            affiliate_terms(rate="100.00"),
            program_terms(processing_fee="80.00", vendor_fee="40.00"),
        )
        assert result.gross == Decimal("10.00")
        assert result.platform_fee + result.vendor_fee == result.gross
        assert result.net == Decimal("0.00")
        assert result.fee_exceeds_gross
        assert result.review_reasons == ("FeeExceedsGross",)

    def test_zero_price_line_earns_nothing(self):
        result = compute_commission(line(price="0.00", quantity=1), affiliate_terms(), program_terms())
        assert result.gross == Decimal("0.00")
        assert result.net == Decimal("0.00")


class TestRulePrecedence:
    def test_category_override_beats_everything(self):
        rules = (
            CategoryOverride(category="books", rate=Decimal("2.00")),
            TieredRule(min_sales=Decimal("0"), rate=Decimal("15.00")),
        )
        rate, commission_type, _, source = select_rate(
            line(category="books"), affiliate_terms(), program_terms(rules)
        )
        assert rate == Decimal("2.00")
        assert commission_type == CommissionType.PERCENTAGE
        assert source == "category"

    def test_category_override_can_be_fixed(self):
        rules = (
            CategoryOverride(
                category="gift-cards",
                rate=Decimal("0"),
                commission_type=CommissionType.FIXED,
                fixed_amount=Decimal("1.50"),
            ),
        )
        result = compute_commission(line(category="gift-cards", quantity=4), affiliate_terms(), program_terms(rules))
        assert result.gross == Decimal("1.50")

    def test_highest_reached_tier_applies(self):
        rules = (
            TieredRule(min_sales=Decimal("1000"), rate=Decimal("12.00")),
            TieredRule(min_sales=Decimal("5000"), rate=Decimal("15.00")),
            TieredRule(min_sales=Decimal("10000"), rate=Decimal("20.00")),
        )
        rate, _, _, source = select_rate(
            line(), affiliate_terms(), program_terms(rules), cumulative_sales=Decimal("6000")
        )
        assert rate == Decimal("15.00")
        assert source == "tier"

    def test_unreached_tier_falls_back_to_affiliate_rate(self):
        rules = (TieredRule(min_sales=Decimal("1000"), rate=Decimal("12.00")),)
        rate, _, _, source = select_rate(
            line(), affiliate_terms(rate="8.00"), program_terms(rules), cumulative_sales=Decimal("999.99")
        )
        assert rate == Decimal("8.00")
        assert source == "affiliate"

    def test_program_default_when_affiliate_has_no_rate(self):
        rate, _, _, source = select_rate(line(), affiliate_terms(rate=None), program_terms(rate="4.00"))
        assert rate == Decimal("4.00")
        assert source == "program"

    def test_non_matching_category_is_ignored(self):
        rules = (CategoryOverride(category="books", rate=Decimal("2.00")),)
        _, _, _, source = select_rate(line(category="toys"), affiliate_terms(), program_terms(rules))
        assert source == "affiliate"


class TestMoney:
    @pytest.mark.parametrize("value,expected", [
        ("0.015", "0.02"),
        ("0.014", "0.01"),
        ("2.675", "2.68"),
    ])
    def test_rounds_half_up(self, value, expected):
        assert money(Decimal(value)) == Decimal(expected)

    def test_split_fees_without_fees(self):
        assert split_fees(Decimal("12.34"), Decimal("0"), Decimal("0")) == (
            Decimal("0.00"), Decimal("0.00"), Decimal("12.34"), False,
        )
