"""Order status history (append-only)."""
from sqlalchemy import Column, BigInteger, String, DateTime, ForeignKey, UniqueConstraint, event
from sqlalchemy.orm import relationship
from restobill.database import Base, BigIntPK
from restobill.exceptions import BusinessLogicError
from restobill.models.order import order_status_type


IDEMPOTENCY_KEY_MAX_LENGTH = 64


class OrderStatusEvent(Base):
    """One entry of an order's status history."""

    __tablename__ = 'order_status_event'
    __table_args__ = (
        UniqueConstraint('order_id', 'idempotency_key', name='uq_order_status_event_idempotency'),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    order_id = Column(BigInteger, ForeignKey('restaurant_order.id'), nullable=False, index=True)
    status = Column(order_status_type, nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)

    # Caller supplied key that makes a transition request replay-safe
    idempotency_key = Column(String(IDEMPOTENCY_KEY_MAX_LENGTH), nullable=True)

    order = relationship('Order', back_populates='history')

    def __repr__(self):
        return f"<OrderStatusEvent(order_id={self.order_id}, status={self.status.value})>"


@event.listens_for(OrderStatusEvent, 'before_update')
def _reject_history_rewrite(mapper, connection, target):
    raise BusinessLogicError('Order status history is append-only')
