"""
Shared pytest fixtures for all tests.

Each test gets a fresh SQLite database file (aiosqlite driver) with the
full schema created, plus helpers to build programs, affiliates, clicks
and completed orders.
"""

import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Ensure test environment before the app settings load
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_affiliates.db")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("REDIS_URL", "")

from app.core.security import PrincipalRole, create_access_token  # noqa: E402
from app.config import settings  # noqa: E402
from app.database import Base, build_engine, build_session_factory, get_db  # noqa: E402
from app.models.affiliate import (  # noqa: E402
    Affiliate,
    AffiliateClick,
    AffiliateProgram,
    AffiliateStatus,
)
from app.schemas.affiliate import OrderCompletedEvent, OrderLineItemEvent  # noqa: E402
from app.services.cache_service import CacheService, InMemoryCache  # noqa: E402


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Create an async SQLite engine with all tables."""
    from app import models  # noqa: F401

    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'affiliates.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(async_engine) -> async_sessionmaker:
    return build_session_factory(async_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def cache() -> CacheService:
    return CacheService(InMemoryCache(), ttl=60)


# ============================================================================
# APP FIXTURES
# ============================================================================


@pytest_asyncio.fixture
async def client(session_factory, cache) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the app with the test database and cache."""
    from app.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.session_factory = session_factory
    app.state.cache = cache

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def auth_headers(
    user_id: uuid.UUID,
    role: PrincipalRole = PrincipalRole.AFFILIATE,
    vendor_id: Optional[uuid.UUID] = None,
) -> dict:
    token = create_access_token(user_id, role=role, vendor_id=vendor_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def webhook_headers() -> dict:
    return {"X-Webhook-Secret": settings.WEBHOOK_SECRET}


# ============================================================================
# DATA FIXTURES
# ============================================================================


@pytest.fixture
def vendor_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest_asyncio.fixture
async def program(db_session, vendor_id) -> AffiliateProgram:
    """10% program with a 3% platform fee and no vendor fee."""
    program = AffiliateProgram(
        vendor_id=vendor_id,
        default_commission_rate=Decimal("10.00"),
        processing_fee=Decimal("3.00"),
        vendor_fee=Decimal("0.00"),
        min_payout_amount=Decimal("10.00"),
        conversion_window_days=7,
        rules=[],
    )
    db_session.add(program)
    await db_session.commit()
    return program


async def make_affiliate(
    session: AsyncSession,
    program: AffiliateProgram,
    code: str,
    status: AffiliateStatus = AffiliateStatus.APPROVED,
    rate: Decimal = Decimal("10.00"),
) -> Affiliate:
    affiliate = Affiliate(
        user_id=uuid.uuid4(),
        vendor_id=program.vendor_id,
        program_id=program.id,
        status=status.value,
        commission_rate=rate,
        referral_code=code,
    )
    session.add(affiliate)
    await session.commit()
    return affiliate


@pytest_asyncio.fixture
async def affiliate(db_session, program) -> Affiliate:
    return await make_affiliate(db_session, program, "AFF12345")


async def make_click(
    session: AsyncSession,
    affiliate: Affiliate,
    visitor_id: str,
    created_at: Optional[datetime] = None,
    converted: bool = False,
) -> AffiliateClick:
    click = AffiliateClick(
        affiliate_id=affiliate.id,
        vendor_id=affiliate.vendor_id,
        visitor_id=visitor_id,
        converted=converted,
        created_at=created_at or datetime.now(timezone.utc),
    )
    session.add(click)
    await session.commit()
    return click


def order_event(
    order_id: str,
    referral_code: Optional[str],
    lines=(("L1", "100.00", 2),),
    visitor_id: Optional[str] = None,
    vendor_id: Optional[uuid.UUID] = None,
    category: Optional[str] = None,
) -> OrderCompletedEvent:
    return OrderCompletedEvent(
        order_id=order_id,
        referral_code=referral_code,
        visitor_id=visitor_id,
        line_items=[
            OrderLineItemEvent(
                line_item_id=line_id,
                product_id=f"P-{line_id}",
                vendor_id=vendor_id,
                category=category,
                price=Decimal(price),
                quantity=quantity,
            )
            for line_id, price, quantity in lines
        ],
    )


async def reload(session: AsyncSession, obj):
    """Re-read a row after core UPDATEs bypassed the identity map."""
    await session.refresh(obj)
    return obj
