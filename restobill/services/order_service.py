"""
Order lifecycle service with transactional completion - Multi-Restaurant.

Handles order creation, status transitions and the side effects of
completing an order: coupon redemption, bill issuing and loyalty accrual,
all committed together or not at all.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from restobill.models import (
    Order, OrderLine, OrderStatus, OrderStatusEvent, Bill, STATUS_FLOW,
    IDEMPOTENCY_KEY_MAX_LENGTH, normalize_coupon_code
)
from restobill.exceptions import (
    RestobillError, BusinessLogicError, NotFoundError, CouponError,
    InvalidTransition, OrderAlreadyFinalized, OrderNotEditable, IdempotencyConflict,
    CouponConsumptionFailed, CouponExhausted, PersistenceUnavailable
)
from restobill.services import bill_service, coupon_service
from restobill.services.bill_service import BillTotals, TaxConfig, NO_TAX
from restobill.services.coupon_service import AppliedDiscount
from restobill.services.order_store import OrderStore
from restobill.utils.clock import SystemClock
from restobill.utils.locks import KeyedLock, LockTimeout, order_locks
from restobill.utils.money import Money, parse_quantity

logger = logging.getLogger(__name__)


@dataclass
class BillPreview:
    """What the bill would be if the order completed now."""
    totals: BillTotals
    coupon_code: Optional[str] = None
    coupon_rejection: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        rv = self.totals.to_dict()
        rv['coupon_code'] = self.coupon_code
        rv['coupon_rejection'] = self.coupon_rejection
        return rv


@dataclass
class CompletionOutcome:
    bill: Bill
    points: Dict[int, int] = field(default_factory=dict)
    applied: Optional[AppliedDiscount] = None


def allowed_transitions(status) -> List[OrderStatus]:
    """Next statuses reachable from ``status``, in lifecycle order."""
    targets = STATUS_FLOW[OrderStatus(status)]
    return [s for s in OrderStatus if s in targets]


def parse_line_items(line_items: List[Dict[str, Any]]) -> List[OrderLine]:
    """
    Build order lines from caller data, validating amounts.

    Each item needs ``menu_item_id``, ``quantity`` and ``unit_price`` (the menu
    price at ordering time); ``name`` is optional.
    """
    if not line_items:
        raise BusinessLogicError('An order needs at least one line item')

    lines = []
    for position, item in enumerate(line_items):
        if not isinstance(item, dict):
            raise BusinessLogicError(f'Line {position + 1}: expected an object')

        menu_item_id = item.get('menu_item_id')
        if menu_item_id is None:
            raise BusinessLogicError(f'Line {position + 1}: menu_item_id is required')
        try:
            menu_item_id = int(menu_item_id)
        except (TypeError, ValueError):
            raise BusinessLogicError(f'Line {position + 1}: menu_item_id must be an integer')

        quantity = parse_quantity(item.get('quantity'))
        unit_price = Money.of(item.get('unit_price'), 'unit_price')

        lines.append(OrderLine(
            position=position,
            menu_item_id=menu_item_id,
            name_snapshot=item.get('name'),
            quantity=quantity,
            unit_price=unit_price.amount
        ))
    return lines


def _parse_status(value) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value).upper().strip() if value is not None else value)
    except ValueError:
        raise BusinessLogicError(f'Unknown order status: {value!r}')


class OrderLifecycle:
    """
    State machine for restaurant orders.

    PENDING -> CONFIRMED -> PREPARING -> READY -> COMPLETED, with CANCELLED
    reachable from PENDING, CONFIRMED and PREPARING. COMPLETED and CANCELLED
    are terminal.
    """

    def __init__(self, session: Session, clock=None, default_tax: TaxConfig = NO_TAX,
                 bill_prefix: str = 'INV', locks: KeyedLock = None,
                 default_timeout: Optional[float] = None, store: OrderStore = None):
        self.session = session
        self.store = store or OrderStore(session)
        self.clock = clock or SystemClock()
        self.default_tax = default_tax
        self.bill_prefix = bill_prefix
        self.locks = locks or order_locks
        self.default_timeout = default_timeout

    @classmethod
    def from_config(cls, session: Session, config, clock=None) -> 'OrderLifecycle':
        """Build a lifecycle from a Flask config mapping."""
        return cls(
            session,
            clock=clock,
            default_tax=TaxConfig.from_app_config(config),
            bill_prefix=config.get('BILL_NUMBER_PREFIX', 'INV'),
            default_timeout=config.get('TRANSITION_TIMEOUT_SECONDS'),
        )

    # =====================================================
    # ORDERS
    # =====================================================

    def create_order(self, restaurant_id: int, table_id: int, line_items: List[Dict[str, Any]],
                     customer_id: int = None, coupon_code: str = None) -> Order:
        """
        Create a PENDING order. Unit prices are snapshotted as given.

        A coupon code, when supplied, is validated right away so the caller
        can retry with another code.
        """
        if restaurant_id is None or table_id is None:
            raise BusinessLogicError('restaurant_id and table_id are required')

        lines = parse_line_items(line_items)
        now = self.clock.now()

        try:
            order = Order(
                restaurant_id=restaurant_id,
                table_id=table_id,
                customer_id=customer_id,
                status=OrderStatus.PENDING,
                created_at=now,
                updated_at=now,
                lines=lines,
                history=[OrderStatusEvent(status=OrderStatus.PENDING, occurred_at=now)]
            )

            if coupon_code:
                self.session.add(order)
                self.session.flush()
                self._attach_coupon(order, coupon_code, now)

            self.store.save_order(order)
            self.store.commit()
            logger.info(f"Order {order.id} created for restaurant {restaurant_id}, table {table_id}")
            return order

        except RestobillError:
            self.store.rollback()
            raise
        except SQLAlchemyError as e:
            self.store.rollback()
            raise PersistenceUnavailable(f'Could not create order: {e}') from e

    def get_order(self, order_id: int) -> Order:
        return self.store.load_order(order_id)

    def replace_line_items(self, order_id: int, line_items: List[Dict[str, Any]]) -> Order:
        """Replace the lines of a PENDING order; later statuses freeze them."""
        with self._order_lock(order_id):
            try:
                order = self.store.load_order(order_id, for_update=True)
                if order.status != OrderStatus.PENDING:
                    raise OrderNotEditable(order.id, order.status.value)

                order.lines = parse_line_items(line_items)
                order.updated_at = self.clock.now()
                self.store.save_order(order)
                self.store.commit()
                return order

            except StaleDataError as e:
                self.store.rollback()
                raise self._conflict_error(order_id, OrderStatus.PENDING) from e
            except RestobillError:
                self.store.rollback()
                raise
            except SQLAlchemyError as e:
                self.store.rollback()
                raise PersistenceUnavailable(f'Could not update order {order_id}: {e}') from e

    # =====================================================
    # COUPONS
    # =====================================================

    def apply_coupon(self, order_id: int, code: str) -> Order:
        """
        Attach a coupon code to an open order after validating it.

        Validation only: the coupon's usage is consumed at completion.
        """
        with self._order_lock(order_id):
            try:
                order = self.store.load_order(order_id, for_update=True)
                if order.is_terminal:
                    raise OrderAlreadyFinalized(order.id, order.status.value)

                now = self.clock.now()
                self._attach_coupon(order, code, now)
                order.updated_at = now
                self.store.save_order(order)
                self.store.commit()
                return order

            except RestobillError:
                self.store.rollback()
                raise
            except SQLAlchemyError as e:
                self.store.rollback()
                raise PersistenceUnavailable(f'Could not apply coupon to order {order_id}: {e}') from e

    def remove_coupon(self, order_id: int) -> Order:
        with self._order_lock(order_id):
            try:
                order = self.store.load_order(order_id, for_update=True)
                if order.is_terminal:
                    raise OrderAlreadyFinalized(order.id, order.status.value)

                order.applied_coupon_code = None
                order.updated_at = self.clock.now()
                self.store.save_order(order)
                self.store.commit()
                return order

            except RestobillError:
                self.store.rollback()
                raise
            except SQLAlchemyError as e:
                self.store.rollback()
                raise PersistenceUnavailable(f'Could not remove coupon from order {order_id}: {e}') from e

    def _attach_coupon(self, order: Order, code: str, now) -> None:
        coupon = self.store.load_coupon(order.restaurant_id, code)
        if not coupon:
            raise NotFoundError(f'Coupon {normalize_coupon_code(code)} not found')
        coupon_service.validate_coupon(coupon, order, self.store.customer_class(order), now)
        order.applied_coupon_code = coupon.code

    def _evaluate_coupon(self, order: Order, now) -> Tuple[Optional[AppliedDiscount], Optional[str]]:
        """
        Validate the order's coupon without consuming it.

        Returns the discount, or None plus the reason the code does not apply.
        """
        if not order.applied_coupon_code:
            return None, None

        coupon = self.store.load_coupon(order.restaurant_id, order.applied_coupon_code)
        if not coupon:
            return None, NotFoundError.code

        try:
            applied = coupon_service.validate_coupon(coupon, order, self.store.customer_class(order), now)
        except CouponError as e:
            logger.info(f"Coupon {coupon.code} not applied to order {order.id}: {e.code}")
            return None, e.code
        return applied, None

    # =====================================================
    # BILLING
    # =====================================================

    def preview_bill(self, order_id: int) -> BillPreview:
        """Compute the bill the order would get now. Nothing is persisted or consumed."""
        try:
            order = self.store.load_order(order_id)
            now = self.clock.now()
            applied, rejection = self._evaluate_coupon(order, now)
            tax_config = self.store.load_tax_config(order.restaurant_id, self.default_tax)
            totals = bill_service.compute_bill(order.lines, tax_config, applied)
            return BillPreview(
                totals=totals,
                coupon_code=applied.code if applied else None,
                coupon_rejection=rejection
            )
        finally:
            self.store.rollback()

    def get_bill(self, order_id: int) -> Bill:
        return self.store.load_bill(order_id)

    def mark_bill_paid(self, bill_id: int, payment_method: str = None) -> Bill:
        return bill_service.mark_bill_paid(self.session, bill_id, self.clock.now(), payment_method)

    # =====================================================
    # TRANSITIONS
    # =====================================================

    def transition_order(self, order_id: int, target_status, idempotency_key: str = None,
                         timeout: Optional[float] = None) -> Order:
        """
        Move an order to ``target_status``.

        Only one transition per order runs at a time. Completing an order
        redeems its coupon, issues the bill and accrues loyalty points in the
        same commit as the status change.

        Args:
            order_id: order to move
            target_status: OrderStatus or its name
            idempotency_key: replaying a key returns the order untouched
            timeout: seconds to wait for the order and to reach commit

        Raises:
            OrderAlreadyFinalized: the order is COMPLETED or CANCELLED
            InvalidTransition: target not reachable from the current status
            CouponConsumptionFailed: the coupon could not be redeemed; nothing changed
            PersistenceUnavailable: store failure or timeout; nothing committed
        """
        target = _parse_status(target_status)
        if idempotency_key is not None and len(idempotency_key) > IDEMPOTENCY_KEY_MAX_LENGTH:
            raise BusinessLogicError(
                f'Idempotency key must be at most {IDEMPOTENCY_KEY_MAX_LENGTH} characters'
            )
        if timeout is None:
            timeout = self.default_timeout
        deadline = time.monotonic() + timeout if timeout is not None else None

        with self._order_lock(order_id, timeout):
            order, outcome = self._transition_locked(order_id, target, idempotency_key, deadline)

        if outcome is not None:
            _record_completion(outcome)
        logger.info(f"Order {order_id} -> {target.value}")
        return order

    def _transition_locked(self, order_id: int, target: OrderStatus, idempotency_key: Optional[str],
                           deadline: Optional[float]) -> Tuple[Order, Optional[CompletionOutcome]]:
        outcome = None
        try:
            order = self.store.load_order(order_id, for_update=True)

            if idempotency_key:
                previous = self.store.find_status_event(order.id, idempotency_key)
                if previous is not None:
                    if previous.status != target:
                        raise IdempotencyConflict(idempotency_key)
                    logger.info(f"Replayed transition {idempotency_key!r} for order {order.id}")
                    self.store.rollback()
                    return order, None

            current = order.status
            if order.is_terminal:
                raise OrderAlreadyFinalized(order.id, current.value)
            if target not in STATUS_FLOW[current]:
                raise InvalidTransition(current.value, target.value)

            now = self.clock.now()
            if target == OrderStatus.COMPLETED:
                outcome = self._complete(order, now)

            order.status = target
            order.updated_at = now
            order.history.append(OrderStatusEvent(
                status=target, occurred_at=now, idempotency_key=idempotency_key
            ))
            self.store.save_order(order)
            self.store.commit(deadline)
            _record_transition(target)
            return order, outcome

        except (StaleDataError, IntegrityError) as e:
            # Another process moved the order first
            self.store.rollback()
            raise self._conflict_error(order_id, target) from e
        except RestobillError:
            self.store.rollback()
            raise
        except SQLAlchemyError as e:
            self.store.rollback()
            raise PersistenceUnavailable(f'Could not transition order {order_id}: {e}') from e

    def _complete(self, order: Order, now) -> CompletionOutcome:
        """Completion side effects; runs inside the transition's transaction."""
        applied, rejection = self._evaluate_coupon(order, now)

        if rejection == CouponExhausted.code:
            # Used up by other orders since it was applied
            _record_redemption('failed')
            raise CouponConsumptionFailed(order.applied_coupon_code, rejection)

        if applied is not None:
            try:
                applied = self.store.increment_coupon_usage(
                    applied.coupon_id, order, self.store.customer_class(order), now
                )
            except (CouponError, NotFoundError) as e:
                _record_redemption('failed')
                raise CouponConsumptionFailed(order.applied_coupon_code, e.code) from e

        tax_config = self.store.load_tax_config(order.restaurant_id, self.default_tax)
        totals = bill_service.compute_bill(order.lines, tax_config, applied)
        bill = self.store.save_bill(
            order, totals, now,
            prefix=self.bill_prefix,
            currency=tax_config.currency,
            coupon_code=applied.code if applied else None,
            coupon_rejection=rejection
        )
        points = self.store.update_loyalty_balance(order, totals.total, now)
        return CompletionOutcome(bill=bill, points=points, applied=applied)

    def _conflict_error(self, order_id: int, target: OrderStatus) -> RestobillError:
        """Error for a caller that lost a race on ``order_id``."""
        try:
            fresh = self.store.load_order(order_id)
            status = fresh.status
        finally:
            self.store.rollback()
        if status in (OrderStatus.COMPLETED, OrderStatus.CANCELLED):
            return OrderAlreadyFinalized(order_id, status.value)
        return InvalidTransition(status.value, target.value)

    def _order_lock(self, order_id: int, timeout: Optional[float] = None):
        return _LockGuard(self.locks, order_id, timeout if timeout is not None else self.default_timeout)


class _LockGuard:
    """Hold the per-order lock, reporting a timeout as PersistenceUnavailable."""

    def __init__(self, locks: KeyedLock, order_id: int, timeout: Optional[float]):
        self._cm = locks.hold(order_id, timeout)
        self._order_id = order_id

    def __enter__(self):
        try:
            return self._cm.__enter__()
        except LockTimeout as e:
            raise PersistenceUnavailable(f'Timed out waiting for order {self._order_id}') from e

    def __exit__(self, exc_type, exc, tb):
        return self._cm.__exit__(exc_type, exc, tb)


# =====================================================
# PRIVATE HELPERS
# =====================================================

def _record_transition(target: OrderStatus):
    """Gracefully attempt to count the transition in Prometheus."""
    try:
        from restobill.blueprints.metrics import order_transitions_total
        order_transitions_total.labels(status=target.value).inc()
    except Exception as e:
        logger.warning(f"Failed to record transition metric: {e}")


def _record_redemption(outcome: str):
    try:
        from restobill.blueprints.metrics import coupon_redemptions_total
        coupon_redemptions_total.labels(outcome=outcome).inc()
    except Exception as e:
        logger.warning(f"Failed to record redemption metric: {e}")


def _record_completion(outcome: CompletionOutcome):
    try:
        from restobill.blueprints.metrics import bills_issued_total, loyalty_points_issued_total
        bills_issued_total.inc()
        loyalty_points_issued_total.inc(sum(outcome.points.values()))
    except Exception as e:
        logger.warning(f"Failed to record completion metrics: {e}")
    if outcome.applied is not None:
        _record_redemption('redeemed')
