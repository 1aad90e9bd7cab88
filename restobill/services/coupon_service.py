"""
Coupon service.

Validation is a pure function of the coupon, the order and the clock; it
never touches counters. Redemption is the separate, serialized step that
increments ``used_count`` once per order.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import update, or_
from sqlalchemy.orm import Session

from restobill.models import (
    Coupon, CouponRedemption, CouponType, CouponStatus, CouponAudience,
    Order, OrderStatus, normalize_coupon_code
)
from restobill.exceptions import (
    NotFoundError, CouponInactive, CouponExpired, CouponExhausted,
    CouponNotApplicable, BelowMinimumOrder
)
from restobill.utils.clock import as_utc
from restobill.utils.money import Money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppliedDiscount:
    """A discount a coupon grants to a specific order."""
    coupon_id: int
    code: str
    amount: Money


def find_coupon(session: Session, restaurant_id: int, code: str) -> Optional[Coupon]:
    """Case-insensitive lookup of a restaurant's coupon."""
    normalized = normalize_coupon_code(code)
    if not normalized:
        return None
    return session.query(Coupon).filter(
        Coupon.restaurant_id == restaurant_id,
        Coupon.code == normalized
    ).first()


def resolve_customer_class(session: Session, restaurant_id: int, customer_id: Optional[int],
                           exclude_order_id: Optional[int] = None) -> CouponAudience:
    """
    Classify the customer for ``applicable_to`` checks.

    A customer with a completed order at this restaurant is existing; everyone
    else, anonymous orders included, counts as new.
    """
    if customer_id is None:
        return CouponAudience.NEW_CUSTOMERS

    query = session.query(Order.id).filter(
        Order.restaurant_id == restaurant_id,
        Order.customer_id == customer_id,
        Order.status == OrderStatus.COMPLETED
    )
    if exclude_order_id is not None:
        query = query.filter(Order.id != exclude_order_id)

    if query.first() is not None:
        return CouponAudience.EXISTING_CUSTOMERS
    return CouponAudience.NEW_CUSTOMERS


def compute_discount(coupon: Coupon, lines, subtotal: Money) -> Money:
    """Discount granted by a coupon that already passed validation, never above the subtotal."""
    coupon_type = CouponType(coupon.type)

    if coupon_type == CouponType.PERCENTAGE:
        discount = subtotal.percent(coupon.value)
        if coupon.max_discount is not None:
            discount = min(discount, Money.of(coupon.max_discount, 'max_discount'))

    elif coupon_type == CouponType.FIXED:
        discount = Money.of(coupon.value, 'value')

    else:
        # free_item: one unit of the cheapest line; min() keeps the first on ties
        if not lines:
            return Money.zero()
        cheapest = min(lines, key=lambda line: line.unit_price_money)
        discount = cheapest.unit_price_money

    return min(discount, subtotal)


def validate_coupon(coupon: Coupon, order: Order, customer_class: CouponAudience,
                    now: datetime) -> AppliedDiscount:
    """
    Decide whether ``coupon`` applies to ``order`` and compute its discount.

    Checks run in a fixed order and the first failure wins:
    status, validity window, usage limit, audience, minimum order amount.

    Raises:
        CouponInactive, CouponExpired, CouponExhausted,
        CouponNotApplicable, BelowMinimumOrder
    """
    code = coupon.code
    payload = {'coupon_code': code}

    # 1. Status
    if CouponStatus(coupon.status) != CouponStatus.ACTIVE:
        raise CouponInactive(f'Coupon {code} is not active', payload)

    # 2. Validity window (inclusive)
    now = as_utc(now)
    if now < as_utc(coupon.valid_from) or now > as_utc(coupon.valid_until):
        raise CouponExpired(f'Coupon {code} is not valid at this time', payload)

    # 3. Usage limit
    used = coupon.used_count or 0
    if coupon.usage_limit is not None and used >= coupon.usage_limit:
        raise CouponExhausted(f'Coupon {code} has reached its usage limit', payload)

    # 4. Audience
    audience = CouponAudience(coupon.applicable_to or CouponAudience.ALL)
    if audience != CouponAudience.ALL and audience != CouponAudience(customer_class):
        raise CouponNotApplicable(f'Coupon {code} is only for {audience.value.replace("_", " ")}', payload)

    # 5. Minimum order amount
    subtotal = order.subtotal_money
    if coupon.min_order_amount is not None:
        minimum = Money.of(coupon.min_order_amount, 'min_order_amount')
        if subtotal < minimum:
            raise BelowMinimumOrder(
                f'Coupon {code} requires a minimum order of {minimum}',
                {'coupon_code': code, 'min_order_amount': str(minimum.amount)}
            )

    return AppliedDiscount(
        coupon_id=coupon.id,
        code=code,
        amount=compute_discount(coupon, order.lines, subtotal)
    )


def redeem_coupon(session: Session, coupon_id: int, order: Order,
                  customer_class: CouponAudience, now: datetime) -> AppliedDiscount:
    """
    Consume one use of a coupon for ``order`` inside the caller's transaction.

    The coupon row is locked and re-validated, then ``used_count`` is bumped
    with a conditional UPDATE so concurrent redemptions can never exceed the
    usage limit. A second redemption for the same order is a no-op that
    returns the recorded discount. The caller commits or rolls back.

    Raises:
        NotFoundError: if the coupon does not exist
        CouponError: any validation failure, CouponExhausted when the limit
            was reached by a concurrent redemption
    """
    coupon = session.query(Coupon).filter(
        Coupon.id == coupon_id
    ).with_for_update().populate_existing().first()
    if not coupon:
        raise NotFoundError(f'Coupon {coupon_id} not found')

    existing = session.query(CouponRedemption).filter_by(
        coupon_id=coupon_id, order_id=order.id
    ).first()
    if existing:
        logger.info(f"Coupon {coupon.code} already redeemed for order {order.id}")
        return AppliedDiscount(coupon_id=coupon.id, code=coupon.code, amount=Money.of(existing.discount))

    applied = validate_coupon(coupon, order, customer_class, now)

    result = session.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon.id,
            or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit)
        )
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise CouponExhausted(f'Coupon {coupon.code} has reached its usage limit', {'coupon_code': coupon.code})

    session.add(CouponRedemption(
        coupon_id=coupon.id,
        order_id=order.id,
        discount=applied.amount.amount,
        redeemed_at=now
    ))
    session.flush()
    session.expire(coupon, ['used_count'])

    logger.info(f"Coupon {coupon.code} redeemed for order {order.id}: -{applied.amount}")
    return applied
