"""
Commission Rules Engine

Pure computation of the commission owed for one order line item.
No database access: callers pass snapshots of the affiliate, the program
and the affiliate's cumulative sales.

Rule precedence (highest first):
1. CategoryOverride matching the line item's category
2. TieredRule with the highest min_sales reached by cumulative sales
3. The affiliate's own rate / type
4. The program default rate / type
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List, Tuple, Union

from app.models.affiliate import CommissionType, RuleType


CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value) -> Decimal:
    """Quantize to cents, rounding half up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


# ============================================================================
# Rule variants
# ============================================================================

@dataclass(frozen=True)
class CategoryOverride:
    category: str
    rate: Decimal
    commission_type: CommissionType = CommissionType.PERCENTAGE
    fixed_amount: Decimal = ZERO


@dataclass(frozen=True)
class TieredRule:
    min_sales: Decimal
    rate: Decimal


Rule = Union[CategoryOverride, TieredRule]


def rule_from_row(row) -> Rule:
    """Map an AffiliateCommissionRule row to its rule variant."""
    if row.rule_type == RuleType.CATEGORY.value:
        return CategoryOverride(
            category=row.category,
            rate=to_decimal(row.commission_rate),
            commission_type=CommissionType(row.commission_type),
            fixed_amount=to_decimal(row.fixed_amount),
        )
    if row.rule_type == RuleType.TIER.value:
        return TieredRule(min_sales=to_decimal(row.min_sales), rate=to_decimal(row.commission_rate))
    raise ValueError(f"Unknown commission rule type: {row.rule_type}")


# ============================================================================
# Inputs / output
# ============================================================================

@dataclass(frozen=True)
class LineItem:
    line_item_id: str
    product_id: Optional[str]
    category: Optional[str]
    price: Decimal
    quantity: int

    @property
    def amount(self) -> Decimal:
        return money(to_decimal(self.price) * self.quantity)


@dataclass(frozen=True)
class AffiliateTerms:
    rate: Optional[Decimal]
    commission_type: Optional[CommissionType]
    fixed_amount: Decimal = ZERO

    @classmethod
    def from_affiliate(cls, affiliate) -> "AffiliateTerms":
        return cls(
            rate=to_decimal(affiliate.commission_rate) if affiliate.commission_rate is not None else None,
            commission_type=CommissionType(affiliate.commission_type) if affiliate.commission_type else None,
            fixed_amount=to_decimal(affiliate.fixed_commission_amount),
        )


@dataclass(frozen=True)
class ProgramTerms:
    default_rate: Decimal
    default_type: CommissionType
    default_fixed_amount: Decimal
    processing_fee: Decimal
    vendor_fee: Decimal
    category_overrides: Tuple[CategoryOverride, ...] = ()
    tiers: Tuple[TieredRule, ...] = ()

    @classmethod
    def from_program(cls, program, rules: Optional[List[Rule]] = None) -> "ProgramTerms":
        if rules is None:
            rules = [rule_from_row(row) for row in program.rules]
        return cls(
            default_rate=to_decimal(program.default_commission_rate),
            default_type=CommissionType(program.default_commission_type),
            default_fixed_amount=to_decimal(program.default_fixed_amount),
            processing_fee=to_decimal(program.processing_fee),
            vendor_fee=to_decimal(program.vendor_fee),
            category_overrides=tuple(r for r in rules if isinstance(r, CategoryOverride)),
            tiers=tuple(r for r in rules if isinstance(r, TieredRule)),
        )


@dataclass(frozen=True)
class CommissionResult:
    rate: Decimal
    commission_type: CommissionType
    source: str
    gross: Decimal
    platform_fee: Decimal
    vendor_fee: Decimal
    net: Decimal
    fee_exceeds_gross: bool = False
    review_reasons: Tuple[str, ...] = field(default_factory=tuple)


# ============================================================================
# Evaluation
# ============================================================================

def split_fees(
    gross: Decimal,
    platform_pct: Decimal,
    vendor_pct: Decimal,
) -> Tuple[Decimal, Decimal, Decimal, bool]:
    """
    Return (platform_fee, vendor_fee, net, fees_exceeded).

    Fees never push net below zero: when they would, they are scaled
    down proportionally so that they add up to exactly the gross amount.
    """
    gross = money(gross)
    platform_pct = to_decimal(platform_pct)
    vendor_pct = to_decimal(vendor_pct)

    platform_fee = money(gross * platform_pct / HUNDRED)
    vendor_fee = money(gross * vendor_pct / HUNDRED)

    exceeded = platform_fee + vendor_fee > gross
    if exceeded:
        platform_fee = money(gross * platform_pct / (platform_pct + vendor_pct))
        vendor_fee = gross - platform_fee

    return platform_fee, vendor_fee, gross - platform_fee - vendor_fee, exceeded


def select_rate(
    line_item: LineItem,
    affiliate: AffiliateTerms,
    program: ProgramTerms,
    cumulative_sales: Decimal = ZERO,
) -> Tuple[Decimal, CommissionType, Decimal, str]:
    """Return (rate, type, fixed_amount, source) by rule precedence."""
    if line_item.category:
        for override in program.category_overrides:
            if override.category == line_item.category:
                return override.rate, override.commission_type, override.fixed_amount, "category"

    reached = [tier for tier in program.tiers if to_decimal(cumulative_sales) >= tier.min_sales]
    if reached:
        tier = max(reached, key=lambda t: t.min_sales)
        return tier.rate, CommissionType.PERCENTAGE, ZERO, "tier"

    if affiliate.rate is not None and affiliate.commission_type is not None:
        return affiliate.rate, affiliate.commission_type, affiliate.fixed_amount, "affiliate"

    return program.default_rate, program.default_type, program.default_fixed_amount, "program"


def compute_commission(
    line_item: LineItem,
    affiliate: AffiliateTerms,
    program: ProgramTerms,
    cumulative_sales: Decimal = ZERO,
) -> CommissionResult:
    """
    Compute gross commission, fees and net for one line item.

    Fixed commissions apply once per line item regardless of quantity.
    If fees would exceed the gross amount they are scaled down so that net
    is exactly zero and the result is flagged for review.
    """
    rate, commission_type, fixed_amount, source = select_rate(
        line_item, affiliate, program, cumulative_sales
    )

    if commission_type == CommissionType.FIXED:
        gross = money(fixed_amount)
    else:
        gross = money(to_decimal(line_item.price) * line_item.quantity * rate / HUNDRED)

    platform_fee, vendor_fee, net, fee_exceeds_gross = split_fees(
        gross, program.processing_fee, program.vendor_fee
    )
    reasons = ("FeeExceedsGross",) if fee_exceeds_gross else ()

    return CommissionResult(
        rate=money(rate),
        commission_type=commission_type,
        source=source,
        gross=gross,
        platform_fee=platform_fee,
        vendor_fee=vendor_fee,
        net=net,
        fee_exceeds_gross=fee_exceeds_gross,
        review_reasons=reasons,
    )
