"""
SQLAlchemy-backed persistence used by the order lifecycle.

Every method works inside the session's current transaction; nothing is
visible to other callers until ``commit`` returns.
"""
import logging
import time
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session

from restobill.models import Order, OrderStatusEvent, Coupon, Bill, CouponAudience
from restobill.exceptions import NotFoundError, PersistenceUnavailable
from restobill.services import bill_service, coupon_service, loyalty_service
from restobill.services.bill_service import BillTotals, TaxConfig
from restobill.services.coupon_service import AppliedDiscount
from restobill.utils.money import Money

logger = logging.getLogger(__name__)


class OrderStore:
    """Persistence interface of the order engine (transactional, all-or-nothing)."""

    def __init__(self, session: Session):
        self.session = session

    # -----------------------------------------------------
    # Orders
    # -----------------------------------------------------

    def load_order(self, order_id: int, for_update: bool = False) -> Order:
        query = self.session.query(Order).filter(Order.id == order_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        order = query.first()
        if not order:
            raise NotFoundError(f'Order {order_id} not found')
        return order

    def save_order(self, order: Order) -> Order:
        self.session.add(order)
        self.session.flush()
        return order

    def find_status_event(self, order_id: int, idempotency_key: str) -> Optional[OrderStatusEvent]:
        return self.session.query(OrderStatusEvent).filter_by(
            order_id=order_id, idempotency_key=idempotency_key
        ).first()

    def customer_class(self, order: Order) -> CouponAudience:
        return coupon_service.resolve_customer_class(
            self.session, order.restaurant_id, order.customer_id, exclude_order_id=order.id
        )

    # -----------------------------------------------------
    # Coupons
    # -----------------------------------------------------

    def load_coupon(self, restaurant_id: int, code: str) -> Optional[Coupon]:
        return coupon_service.find_coupon(self.session, restaurant_id, code)

    def increment_coupon_usage(self, coupon_id: int, order: Order, customer_class: CouponAudience,
                               now: datetime) -> AppliedDiscount:
        return coupon_service.redeem_coupon(self.session, coupon_id, order, customer_class, now)

    # -----------------------------------------------------
    # Bills
    # -----------------------------------------------------

    def load_tax_config(self, restaurant_id: int, default: TaxConfig) -> TaxConfig:
        return bill_service.load_tax_config(self.session, restaurant_id, default)

    def allocate_next_bill_number(self, restaurant_id: int) -> int:
        return bill_service.allocate_next_bill_number(self.session, restaurant_id)

    def save_bill(self, order: Order, totals: BillTotals, now: datetime, **kwargs) -> Bill:
        return bill_service.issue_bill(self.session, order, totals, now, **kwargs)

    def load_bill(self, order_id: int) -> Bill:
        return bill_service.get_bill(self.session, order_id)

    # -----------------------------------------------------
    # Loyalty
    # -----------------------------------------------------

    def update_loyalty_balance(self, order: Order, total: Money, now: datetime) -> Dict[int, int]:
        """Accrue the order under every loyalty program of its restaurant."""
        earned = {}
        for program in loyalty_service.programs_for_restaurant(self.session, order.restaurant_id):
            earned[program.id] = loyalty_service.accrue_points(self.session, program, order, total, now)
        return earned

    # -----------------------------------------------------
    # Transactions
    # -----------------------------------------------------

    def commit(self, deadline: Optional[float] = None) -> None:
        """
        Commit the unit of work.

        ``deadline`` is a ``time.monotonic()`` instant; past it the caller's
        timeout has expired and nothing is committed.
        """
        if deadline is not None and time.monotonic() > deadline:
            raise PersistenceUnavailable('Deadline exceeded before commit; nothing was saved')
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
