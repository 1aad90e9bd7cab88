"""Order model and its status state machine table."""
from sqlalchemy import Column, BigInteger, Integer, String, DateTime, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from restobill.database import Base, BigIntPK
from restobill.utils.money import Money
import enum


class OrderStatus(str, enum.Enum):
    """Order status enum."""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY = "READY"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


# Allowed next statuses. READY cannot be cancelled through this table.
STATUS_FLOW = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

# Shared by the order and its history so PostgreSQL gets a single enum type
order_status_type = Enum(OrderStatus, name='order_status')


class Order(Base):
    """
    Customer order placed at a restaurant table.

    ``version`` is the optimistic concurrency counter: an UPDATE issued from a
    stale copy matches no row and SQLAlchemy raises StaleDataError.
    """

    __tablename__ = 'restaurant_order'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    restaurant_id = Column(BigInteger, nullable=False, index=True)
    table_id = Column(BigInteger, nullable=False)
    customer_id = Column(BigInteger, nullable=True, index=True)
    status = Column(order_status_type, nullable=False, default=OrderStatus.PENDING)
    applied_coupon_code = Column(String(64), nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    lines = relationship(
        'OrderLine', back_populates='order', cascade='all, delete-orphan',
        order_by='OrderLine.position'
    )
    history = relationship(
        'OrderStatusEvent', back_populates='order', cascade='all, delete-orphan',
        order_by='OrderStatusEvent.id'
    )

    __mapper_args__ = {'version_id_col': version}

    @property
    def order_number(self) -> str:
        return f"ORD-{self.id:06d}" if self.id is not None else "ORD-NEW"

    @property
    def subtotal_money(self) -> Money:
        return Money.sum(line.line_total_money for line in self.lines)

    @property
    def subtotal(self):
        """Sum of the line subtotals, always derived from the lines."""
        return self.subtotal_money.amount

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def allowed_next(self):
        return STATUS_FLOW[self.status]

    def __repr__(self):
        status = self.status.value if self.status else None
        return f"<Order(id={self.id}, restaurant_id={self.restaurant_id}, status={status})>"
