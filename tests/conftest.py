import pytest
from datetime import datetime, timezone
from decimal import Decimal
import os
import tempfile
import uuid

# Tests run against a throwaway SQLite file unless a database is provided
if 'DATABASE_URL' not in os.environ:
    _db_dir = tempfile.mkdtemp(prefix='restobill-tests-')
    os.environ['DATABASE_URL'] = f"sqlite:///{os.path.join(_db_dir, 'restobill.db')}"

from restobill import create_app
from restobill.database import get_session, create_schema
from restobill.models import (
    Coupon, CouponType, CouponStatus, CouponAudience,
    LoyaltyProgram, LoyaltyProgramStatus, BillingConfig
)
from restobill.services.bill_service import TaxConfig
from restobill.services.order_service import OrderLifecycle
from restobill.utils.clock import FixedClock

NOON = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope='session')
def app():
    """Create application instance for testing."""
    app = create_app('config.Config')
    app.config['TESTING'] = True
    app.config['DEFAULT_TAX_ENABLED'] = True
    app.config['DEFAULT_TAX_RATE'] = '8'
    create_schema()
    return app


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def session(app):
    """Create database session for testing."""
    session = get_session()
    yield session
    session.rollback()
    session.remove()


@pytest.fixture(scope='function')
def restaurant_id():
    """Unique restaurant id so tests never share counters or coupons."""
    return uuid.uuid4().int % 10**9


@pytest.fixture(scope='function')
def other_restaurant_id():
    return uuid.uuid4().int % 10**9 + 10**9


@pytest.fixture(scope='function')
def clock():
    return FixedClock(NOON)


@pytest.fixture(scope='function')
def lifecycle(session, clock):
    """Order lifecycle with an 8% default tax."""
    return OrderLifecycle(session, clock=clock, default_tax=TaxConfig(enabled=True, rate=Decimal('8')))


@pytest.fixture(scope='function')
def make_coupon(session, restaurant_id):
    """Factory for committed coupons of the fixture restaurant."""
    def _make(code='SAVE10', **overrides):
        fields = dict(
            restaurant_id=restaurant_id,
            code=code,
            name=f'Coupon {code}',
            type=CouponType.PERCENTAGE,
            value=Decimal('10'),
            max_discount=Decimal('3.00'),
            valid_from=datetime(2024, 1, 1, tzinfo=timezone.utc),
            valid_until=datetime(2099, 12, 31, 23, 59, tzinfo=timezone.utc),
            usage_limit=100,
            used_count=0,
            status=CouponStatus.ACTIVE,
            applicable_to=CouponAudience.ALL,
        )
        fields.update(overrides)
        coupon = Coupon(**fields)
        session.add(coupon)
        session.commit()
        return coupon
    return _make


@pytest.fixture(scope='function')
def make_program(session, restaurant_id):
    """Factory for committed loyalty programs of the fixture restaurant."""
    def _make(**overrides):
        fields = dict(
            restaurant_id=restaurant_id,
            name='Points Club',
            points_per_dollar=Decimal('1'),
            points_per_order=10,
            total_points_issued=0,
            total_members=0,
            status=LoyaltyProgramStatus.ACTIVE,
        )
        fields.update(overrides)
        program = LoyaltyProgram(**fields)
        session.add(program)
        session.commit()
        return program
    return _make


@pytest.fixture(scope='function')
def billing_config(session, restaurant_id):
    """Restaurant-specific tax settings (5%, EUR)."""
    config = BillingConfig(restaurant_id=restaurant_id, tax_enabled=True, tax_rate=Decimal('5'), currency='EUR')
    session.add(config)
    session.commit()
    return config


@pytest.fixture(scope='function')
def items():
    """Two lines, $25.00 subtotal."""
    return [
        {'menu_item_id': 1, 'name': 'Burger', 'quantity': 1, 'unit_price': '18.00'},
        {'menu_item_id': 2, 'name': 'Fries', 'quantity': 2, 'unit_price': '3.50'},
    ]


@pytest.fixture(scope='function')
def advance(lifecycle):
    """Walk an order through the happy path up to a status."""
    def _advance(order_id, status):
        for step in ('CONFIRMED', 'PREPARING', 'READY', 'COMPLETED'):
            lifecycle.transition_order(order_id, step)
            if step == status:
                break
    return _advance
