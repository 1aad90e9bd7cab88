"""
Bill service - Multi-Restaurant.
Computes bill totals, issues sequentially numbered bills and records payment.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Iterable

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from restobill.models import Bill, BillSequence, BillingConfig, Order, normalize_payment_method
from restobill.exceptions import BusinessLogicError, NotFoundError, BillAlreadyPaid, PersistenceUnavailable
from restobill.services.coupon_service import AppliedDiscount
from restobill.utils.money import Money, parse_rate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaxConfig:
    """Tax settings used for one bill."""
    enabled: bool
    rate: Decimal  # percent
    currency: str = 'USD'

    @classmethod
    def from_app_config(cls, config) -> 'TaxConfig':
        """Defaults for restaurants without a billing_config row."""
        return cls(
            enabled=bool(config.get('DEFAULT_TAX_ENABLED', True)),
            rate=parse_rate(config.get('DEFAULT_TAX_RATE', '0'), 'DEFAULT_TAX_RATE'),
            currency=config.get('DEFAULT_CURRENCY', 'USD'),
        )

    @property
    def effective_rate(self) -> Decimal:
        return self.rate if self.enabled else Decimal('0')


NO_TAX = TaxConfig(enabled=False, rate=Decimal('0'))


@dataclass(frozen=True)
class BillTotals:
    """Result of the bill computation, before a number is assigned."""
    subtotal: Money
    tax: Money
    discount: Money
    total: Money
    tax_rate: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {
            'subtotal': str(self.subtotal.amount),
            'tax_rate': str(self.tax_rate),
            'tax': str(self.tax.amount),
            'discount': str(self.discount.amount),
            'total': str(self.total.amount),
        }


def compute_bill(lines: Iterable, tax_config: TaxConfig,
                 applied_discount: Optional[AppliedDiscount] = None) -> BillTotals:
    """
    Compute bill totals from order lines.

    Fixed order:
        1. subtotal = sum of line subtotals
        2. tax on the pre-discount subtotal (zero when tax is disabled)
        3. discount, clamped to subtotal + tax
        4. total = subtotal + tax - discount, never below zero
    """
    subtotal = Money.sum(line.line_total_money for line in lines)

    rate = parse_rate(tax_config.effective_rate, 'tax_rate')
    tax = subtotal.percent(rate) if tax_config.enabled else Money.zero()

    discount = applied_discount.amount if applied_discount else Money.zero()
    discount = min(discount, subtotal + tax)

    total = (subtotal + tax).minus_clamped(discount)

    return BillTotals(subtotal=subtotal, tax=tax, discount=discount, total=total, tax_rate=rate)


def load_tax_config(session: Session, restaurant_id: int, default: TaxConfig = NO_TAX) -> TaxConfig:
    """Tax settings of a restaurant, falling back to ``default``."""
    config = session.query(BillingConfig).filter_by(restaurant_id=restaurant_id).first()
    if not config:
        return default
    return TaxConfig(
        enabled=bool(config.tax_enabled),
        rate=parse_rate(config.tax_rate, 'tax_rate'),
        currency=config.currency or default.currency
    )


def format_bill_number(prefix: str, sequence: int) -> str:
    return f"{prefix}-{sequence:06d}"


def allocate_next_bill_number(session: Session, restaurant_id: int) -> int:
    """
    Take the next bill sequence of a restaurant inside the caller's transaction.

    The increment is a single UPDATE on the restaurant's counter row, so it
    holds that row's lock until commit; a rollback gives the number back and
    sequences stay gap-free.
    """
    if _bump_sequence(session, restaurant_id):
        return _current_sequence(session, restaurant_id)

    # First bill of the restaurant: create the counter row
    try:
        with session.begin_nested():
            session.add(BillSequence(restaurant_id=restaurant_id, last_number=1))
        return 1
    except IntegrityError:
        # A concurrent first bill created it; the savepoint is rolled back
        logger.info(f"Bill sequence for restaurant {restaurant_id} created concurrently, retrying")

    if not _bump_sequence(session, restaurant_id):
        raise BusinessLogicError(f'Could not allocate a bill number for restaurant {restaurant_id}')
    return _current_sequence(session, restaurant_id)


def _bump_sequence(session: Session, restaurant_id: int) -> bool:
    result = session.execute(
        update(BillSequence)
        .where(BillSequence.restaurant_id == restaurant_id)
        .values(last_number=BillSequence.last_number + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _current_sequence(session: Session, restaurant_id: int) -> int:
    return session.query(BillSequence.last_number).filter(
        BillSequence.restaurant_id == restaurant_id
    ).scalar()


def issue_bill(session: Session, order: Order, totals: BillTotals, now: datetime,
               prefix: str = 'INV', currency: str = 'USD',
               coupon_code: Optional[str] = None, coupon_rejection: Optional[str] = None) -> Bill:
    """Persist the bill of a completed order. The caller owns the transaction."""
    sequence = allocate_next_bill_number(session, order.restaurant_id)

    bill = Bill(
        restaurant_id=order.restaurant_id,
        order_id=order.id,
        sequence=sequence,
        bill_number=format_bill_number(prefix, sequence),
        subtotal=totals.subtotal.amount,
        tax_rate=totals.tax_rate,
        tax=totals.tax.amount,
        discount=totals.discount.amount,
        total=totals.total.amount,
        currency=currency,
        coupon_code=coupon_code,
        coupon_rejection=coupon_rejection,
        created_at=now
    )
    session.add(bill)
    session.flush()

    logger.info(f"Bill {bill.bill_number} issued for order {order.id}: total {totals.total}")
    return bill


def get_bill(session: Session, order_id: int) -> Bill:
    bill = session.query(Bill).filter(Bill.order_id == order_id).first()
    if not bill:
        raise NotFoundError(f'No bill for order {order_id}')
    return bill


def mark_bill_paid(session: Session, bill_id: int, now: datetime, payment_method: str = None,
                   restaurant_id: int = None) -> Bill:
    """
    Stamp a bill as paid. ``paid_at`` is set once and never cleared.

    Raises:
        NotFoundError: unknown bill (or not owned by ``restaurant_id``)
        BillAlreadyPaid: the bill already carries a payment
    """
    try:
        method = normalize_payment_method(payment_method)
    except ValueError as e:
        raise BusinessLogicError(str(e))

    try:
        query = session.query(Bill).filter(Bill.id == bill_id)
        if restaurant_id is not None:
            query = query.filter(Bill.restaurant_id == restaurant_id)
        bill = query.with_for_update().populate_existing().first()

        if not bill:
            raise NotFoundError(f'Bill {bill_id} not found')
        if bill.paid_at is not None:
            raise BillAlreadyPaid(bill.bill_number)

        bill.paid_at = now
        bill.payment_method = method
        session.commit()
        logger.info(f"Bill {bill.bill_number} paid ({method})")
        return bill

    except (BusinessLogicError, NotFoundError) as e:
        session.rollback()
        raise e
    except SQLAlchemyError as e:
        session.rollback()
        raise PersistenceUnavailable(f"Could not record payment for bill {bill_id}: {e}") from e
