"""Bill model."""
import enum
from sqlalchemy import (
    Column, BigInteger, Integer, String, Numeric, DateTime, ForeignKey,
    UniqueConstraint, CheckConstraint, event, inspect
)
from sqlalchemy.orm import relationship
from restobill.database import Base, BigIntPK
from restobill.exceptions import ImmutableBillError

# Only the payment stamp may change after a bill is issued
PAYMENT_FIELDS = frozenset({'paid_at', 'payment_method'})


class PaymentMethod(enum.Enum):
    """Payment methods accepted when settling a bill."""
    CASH = "CASH"
    CARD = "CARD"
    UPI = "UPI"
    WALLET = "WALLET"


def normalize_payment_method(value) -> str:
    """
    Normalize payment method value to string for DB storage.

    Args:
        value: Can be None, PaymentMethod enum, or string

    Returns:
        str: one of the PaymentMethod values (CASH when missing)

    Raises:
        ValueError: If value is invalid
    """
    if value is None:
        return PaymentMethod.CASH.value

    if isinstance(value, PaymentMethod):
        return value.value

    normalized = str(value).upper().strip()
    if normalized in PaymentMethod.__members__:
        return normalized
    allowed = ', '.join(PaymentMethod.__members__)
    raise ValueError(f"Invalid payment method: {value}. Must be one of {allowed}.")


class Bill(Base):
    """
    Bill issued when an order is completed.

    One bill per order; ``sequence`` is gap-free per restaurant and
    ``bill_number`` is its printable form.
    """

    __tablename__ = 'bill'
    __table_args__ = (
        UniqueConstraint('restaurant_id', 'sequence', name='uq_bill_restaurant_sequence'),
        UniqueConstraint('restaurant_id', 'bill_number', name='uq_bill_restaurant_number'),
        CheckConstraint('total >= 0', name='ck_bill_total_non_negative'),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    restaurant_id = Column(BigInteger, nullable=False, index=True)
    order_id = Column(BigInteger, ForeignKey('restaurant_order.id'), nullable=False, unique=True)
    sequence = Column(Integer, nullable=False)
    bill_number = Column(String(32), nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)
    tax_rate = Column(Numeric(5, 2), nullable=False, default=0)
    tax = Column(Numeric(10, 2), nullable=False)
    discount = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default='USD')

    # Coupon snapshot: the redeemed code, or why a supplied code was not applied
    coupon_code = Column(String(64), nullable=True)
    coupon_rejection = Column(String(64), nullable=True)

    payment_method = Column(String(20), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    # Weak reference: lookup only, nothing cascades from the bill to the order
    order = relationship('Order', viewonly=True)

    @property
    def is_paid(self) -> bool:
        return self.paid_at is not None

    def __repr__(self):
        return f"<Bill(id={self.id}, number='{self.bill_number}', total={self.total})>"


@event.listens_for(Bill, 'before_update')
def _guard_bill_immutability(mapper, connection, target):
    state = inspect(target)
    for attr in mapper.column_attrs:
        history = state.attrs[attr.key].history
        if not history.has_changes():
            continue
        if attr.key not in PAYMENT_FIELDS:
            raise ImmutableBillError(f'Bill field {attr.key!r} cannot change once issued')
        if history.deleted and history.deleted[0] is not None:
            raise ImmutableBillError(f'Bill field {attr.key!r} was already set')
