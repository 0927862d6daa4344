"""Tests for conversion attribution against clicks and program settings."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from app.models.affiliate import AffiliateClick, AffiliateCommission, CommissionType, RuleType
from app.schemas.affiliate import CommissionRuleCreate, ProgramUpdate
from app.services.attribution_service import order_time
from app.services.order_event_service import OrderEventService
from app.services.program_service import ProgramService
from tests.conftest import make_click, order_event, reload


def days_ago(days: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


async def commission_for(session, order_id: str) -> AffiliateCommission:
    result = await session.execute(
        select(AffiliateCommission).where(AffiliateCommission.order_id == order_id)
    )
    return result.scalar_one()


class TestClickMatching:
    async def test_click_in_window_is_converted(self, db_session, affiliate):
        click = await make_click(db_session, affiliate, "visitor-a", created_at=days_ago(1))

        await OrderEventService(db_session).handle_order_completed(
            order_event("ORD-A1", affiliate.referral_code, visitor_id="visitor-a")
        )

        await reload(db_session, click)
        assert click.converted is True
        assert click.order_id == "ORD-A1"
        assert (await commission_for(db_session, "ORD-A1")).click_id == click.id

    async def test_click_outside_window_is_left_alone(self, db_session, affiliate):
        click = await make_click(db_session, affiliate, "visitor-b", created_at=days_ago(10))

        result = await OrderEventService(db_session).handle_order_completed(
            order_event("ORD-B1", affiliate.referral_code, visitor_id="visitor-b")
        )

        assert result["attributed"] is True
        await reload(db_session, click)
        assert click.converted is False
        assert (await commission_for(db_session, "ORD-B1")).click_id is None

    async def test_latest_click_is_used_when_multiple_conversions_allowed(self, db_session, affiliate):
        older = await make_click(db_session, affiliate, "visitor-c", created_at=days_ago(2))
        newer = await make_click(db_session, affiliate, "visitor-c", created_at=days_ago(1))

        await OrderEventService(db_session).handle_order_completed(
            order_event("ORD-C1", affiliate.referral_code, visitor_id="visitor-c")
        )

        await reload(db_session, older)
        await reload(db_session, newer)
        assert newer.converted is True
        assert older.converted is False

    async def test_single_conversion_programs_convert_one_click(self, db_session, program, affiliate):
        program.allow_multiple_conversions = False
        await db_session.commit()
        first = await make_click(db_session, affiliate, "visitor-d", created_at=days_ago(2))
        second = await make_click(db_session, affiliate, "visitor-d", created_at=days_ago(1))

        service = OrderEventService(db_session)
        await service.handle_order_completed(order_event("ORD-D1", affiliate.referral_code, visitor_id="visitor-d"))
        result = await service.handle_order_completed(
            order_event("ORD-D2", affiliate.referral_code, visitor_id="visitor-d")
        )

        await reload(db_session, first)
        await reload(db_session, second)
        assert first.converted is True
        assert second.converted is False
        assert result["attributed"] is True
        assert (await commission_for(db_session, "ORD-D2")).click_id is None

    async def test_redelivery_does_not_convert_a_second_click(self, db_session, affiliate):
        await make_click(db_session, affiliate, "visitor-e", created_at=days_ago(2))
        await make_click(db_session, affiliate, "visitor-e", created_at=days_ago(1))

        service = OrderEventService(db_session)
        event = order_event("ORD-E1", affiliate.referral_code, visitor_id="visitor-e")
        await service.handle_order_completed(event)
        await service.handle_order_completed(event)

        converted = (await db_session.execute(
            select(AffiliateClick.order_id).where(
                AffiliateClick.visitor_id == "visitor-e", AffiliateClick.converted.is_(True)
            )
        )).scalars().all()
        assert converted == ["ORD-E1"]

    async def test_window_is_measured_from_order_completion(self, db_session, affiliate):
        click = await make_click(db_session, affiliate, "visitor-w", created_at=days_ago(10))
        event = order_event("ORD-W1", affiliate.referral_code, visitor_id="visitor-w").model_copy(
            update={"completed_at": days_ago(5)}
        )

        await OrderEventService(db_session).handle_order_completed(event)

        await reload(db_session, click)
        assert click.converted is True
        assert (await commission_for(db_session, "ORD-W1")).click_id == click.id

    async def test_click_after_completion_does_not_convert(self, db_session, affiliate):
        click = await make_click(db_session, affiliate, "visitor-g", created_at=days_ago(1))
        event = order_event("ORD-G1", affiliate.referral_code, visitor_id="visitor-g").model_copy(
            update={"completed_at": days_ago(2)}
        )

        await OrderEventService(db_session).handle_order_completed(event)

        await reload(db_session, click)
        assert click.converted is False

    def test_naive_completion_time_is_utc(self):
        naive = datetime(2024, 3, 1, 12, 0)
        assert order_time(naive, datetime.now(timezone.utc)) == naive.replace(tzinfo=timezone.utc)
        assert order_time(None, naive) is naive


class TestStrictMatching:
    async def test_order_without_click_is_not_attributed(self, db_session, program, affiliate):
        program.require_click_match = True
        await db_session.commit()

        result = await OrderEventService(db_session).handle_order_completed(
            order_event("ORD-F1", affiliate.referral_code, visitor_id="visitor-f")
        )
        assert result["attributed"] is False

    async def test_order_with_click_is_attributed(self, db_session, program, affiliate):
        program.require_click_match = True
        await db_session.commit()
        await make_click(db_session, affiliate, "visitor-g", created_at=days_ago(1))

        result = await OrderEventService(db_session).handle_order_completed(
            order_event("ORD-G1", affiliate.referral_code, visitor_id="visitor-g")
        )
        assert result["attributed"] is True

    async def test_disabled_program_attributes_nothing(self, db_session, program, affiliate):
        program.enabled = False
        await db_session.commit()

        result = await OrderEventService(db_session).handle_order_completed(
            order_event("ORD-H1", affiliate.referral_code)
        )
        assert result["attributed"] is False


class TestProgramRules:
    async def test_tier_applies_once_cumulative_sales_reach_it(self, db_session, program, affiliate):
        await ProgramService(db_session).update(
            program.vendor_id,
            ProgramUpdate(rules=[
                CommissionRuleCreate(rule_type=RuleType.TIER, min_sales=Decimal("1000"), commission_rate=Decimal("15")),
            ]),
        )

        service = OrderEventService(db_session)
        await service.handle_order_completed(
            order_event("ORD-T1", affiliate.referral_code, lines=(("L1", "1000.00", 1),))
        )
        await service.handle_order_completed(
            order_event("ORD-T2", affiliate.referral_code, lines=(("L1", "100.00", 1),))
        )

        first = await commission_for(db_session, "ORD-T1")
        second = await commission_for(db_session, "ORD-T2")
        assert first.commission_rate == Decimal("10.00")
        assert second.commission_rate == Decimal("15.00")
        assert second.commission_amount == Decimal("15.00")

    async def test_category_override_is_recorded(self, db_session, program, affiliate):
        await ProgramService(db_session).update(
            program.vendor_id,
            ProgramUpdate(rules=[
                CommissionRuleCreate(
                    rule_type=RuleType.CATEGORY,
                    category="electronics",
                    commission_rate=Decimal("0"),
                    commission_type=CommissionType.FIXED,
                    fixed_amount=Decimal("7.50"),
                ),
            ]),
        )

        await OrderEventService(db_session).handle_order_completed(
            order_event("ORD-K1", affiliate.referral_code, category="electronics")
        )

        entry = await commission_for(db_session, "ORD-K1")
        assert entry.commission_type == CommissionType.FIXED.value
        assert entry.commission_amount == Decimal("7.50")
        assert entry.product_category == "electronics"
