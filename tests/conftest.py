import os
from decimal import Decimal
from types import SimpleNamespace

import pytest

# Configure the application before it is imported
os.environ['DATABASE_URL'] = 'sqlite+aiosqlite://'
os.environ['CACHE_ENABLED'] = 'false'
os.environ['ENV_MODE'] = 'development'

import httpx
from sqlalchemy.pool import NullPool

from cafe_orders.core.auth import Actor, RequestContext
from cafe_orders.database import build_engine, build_session_maker, get_db, init_db
from cafe_orders.main import app
from cafe_orders.models import (
    Category,
    Product,
    ProductSize,
    ProductTopping,
    SizeOption,
    Topping,
    User,
    UserRole,
    utcnow,
)
from cafe_orders.services import guest_sessions, invitations
from cafe_orders.services.credentials import issue_token
from cafe_orders.services.notifications import reset_unread_count_cache
from cafe_orders.services.order_state import reset_state_machine


@pytest.fixture(autouse=True)
def fresh_singletons():
    """Rebuild cached state machine and cache for every test."""
    reset_state_machine()
    reset_unread_count_cache()
    yield
    reset_state_machine()
    reset_unread_count_cache()


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so every session gets its own connection."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return build_session_maker(engine)


@pytest.fixture
async def session(session_maker):
    """Create database session for testing."""
    async with session_maker() as session:
        yield session


@pytest.fixture
async def client(session_maker):
    """HTTP client bound to the test database."""
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url='http://test') as client:
        yield client
    app.dependency_overrides.clear()


# =============================================================================
# USERS
# =============================================================================

async def _create_user(session, name, email, role):
    user = User(name=name, email=email, role=role)
    session.add(user)
    await session.commit()
    return user


@pytest.fixture
async def admin(session):
    return await _create_user(session, 'Cafe Admin', 'admin@test.com', UserRole.ADMIN)


@pytest.fixture
async def owner(session):
    return await _create_user(session, 'Shop Owner', 'owner@test.com', UserRole.SHOP_OWNER)


@pytest.fixture
async def staff(session):
    return await _create_user(session, 'Counter Staff', 'staff@test.com', UserRole.STAFF)


@pytest.fixture
async def customer(session):
    return await _create_user(session, 'Regular Customer', 'customer@test.com', UserRole.USER)


@pytest.fixture
def ctx_for():
    """Build a request context for a user, optionally with guest session data."""
    def build(user, now=None, session_id=None, table_number=None, token_id=None):
        return RequestContext(
            actor=Actor.for_user(user),
            now=now or utcnow(),
            token_id=token_id,
            session_id=session_id,
            table_number=table_number,
        )
    return build


@pytest.fixture
async def bearer(session):
    """Issue a bearer token for a user and return the request headers."""
    async def build(user):
        _, plain = await issue_token(session, user, name='test')
        await session.commit()
        return {'Authorization': f'Bearer {plain}'}
    return build


# =============================================================================
# CATALOG
# =============================================================================

@pytest.fixture
async def catalog(session):
    """
    Latte (medium 3.00) offering Vanilla Syrup at 0.50 (list price 0.99),
    an unavailable Seasonal Tea, an unavailable Honey topping offered for
    Latte, and Cinnamon which Latte does not offer.
    """
    coffee = Category(name='Coffee')
    latte = Product(name='Latte', category=coffee, is_available=True)
    latte_medium = ProductSize(product=latte, size=SizeOption.MEDIUM, price=Decimal('3.00'))
    latte_large = ProductSize(product=latte, size=SizeOption.LARGE, price=Decimal('4.25'))

    seasonal = Product(name='Seasonal Tea', category=coffee, is_available=False)
    seasonal_small = ProductSize(product=seasonal, size=SizeOption.SMALL, price=Decimal('2.00'))

    vanilla = Topping(name='Vanilla Syrup', price=Decimal('0.99'), is_available=True)
    honey = Topping(name='Honey', price=Decimal('0.40'), is_available=False)
    cinnamon = Topping(name='Cinnamon', price=Decimal('0.25'), is_available=True)

    session.add_all([
        coffee, latte, latte_medium, latte_large, seasonal, seasonal_small,
        vanilla, honey, cinnamon,
        ProductTopping(product=latte, topping=vanilla, price=Decimal('0.50')),
        ProductTopping(product=latte, topping=honey, price=Decimal('0.40')),
    ])
    await session.commit()

    return SimpleNamespace(
        latte=latte,
        latte_medium=latte_medium,
        latte_large=latte_large,
        seasonal=seasonal,
        seasonal_small=seasonal_small,
        vanilla=vanilla,
        honey=honey,
        cinnamon=cinnamon,
    )


# =============================================================================
# GUESTS
# =============================================================================

@pytest.fixture
async def table_invitation(session, owner, ctx_for):
    """Active QR invitation for table 5."""
    return await invitations.create_table_invitation(session, ctx_for(owner), '5')


@pytest.fixture
async def guest(session, table_invitation, ctx_for):
    """A redeemed guest session at table 5 and its request context."""
    now = utcnow()
    result = await guest_sessions.redeem_invitation(session, table_invitation.token, now)
    ctx = ctx_for(
        result.user,
        now=now,
        session_id=result.session_id,
        table_number=result.table_number,
        token_id=result.token_id,
    )
    return SimpleNamespace(
        user=result.user,
        token=result.token,
        result=result,
        ctx=ctx,
        headers={'Authorization': f'Bearer {result.token}'},
    )
