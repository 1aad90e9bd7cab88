"""
Integration tests for the order lifecycle against a real database.
"""

import pytest
import time
from decimal import Decimal
from types import SimpleNamespace
from restobill.models import (
    Order, OrderStatus, Bill, CouponRedemption, CouponStatus, CouponAudience, CouponType,
    LoyaltyAccrual, LoyaltyMember, LoyaltyProgramStatus, STATUS_FLOW, IDEMPOTENCY_KEY_MAX_LENGTH
)
from restobill.services import bill_service, loyalty_service, order_store
from restobill.services.order_store import OrderStore
from restobill.utils.locks import order_locks
from restobill.utils.money import Money
from restobill.exceptions import (
    InvalidTransition, OrderAlreadyFinalized, OrderNotEditable, IdempotencyConflict, NotFoundError,
    BillAlreadyPaid, BusinessLogicError, CouponConsumptionFailed, CouponExhausted, CouponInactive,
    ImmutableBillError, PersistenceUnavailable
)


def assert_history_follows_table(order):
    statuses = [event.status for event in order.history]
    assert statuses[0] == OrderStatus.PENDING
    for previous, current in zip(statuses, statuses[1:]):
        assert current in STATUS_FLOW[previous]


class TestCreateOrder:
    """Tests for order creation."""

    def test_new_order_is_pending(self, lifecycle, restaurant_id, items):
        order = lifecycle.create_order(restaurant_id, table_id=4, line_items=items)

        assert order.id is not None
        assert order.status == OrderStatus.PENDING
        assert order.order_number == f"ORD-{order.id:06d}"
        assert order.subtotal == Decimal('25.00')
        assert [line.name_snapshot for line in order.lines] == ['Burger', 'Fries']
        assert [event.status for event in order.history] == [OrderStatus.PENDING]

    def test_coupon_validated_at_creation(self, lifecycle, restaurant_id, items, make_coupon):
        make_coupon('SAVE10')
        order = lifecycle.create_order(restaurant_id, 4, items, coupon_code=' save10 ')
        assert order.applied_coupon_code == 'SAVE10'

    def test_invalid_coupon_rejects_creation(self, lifecycle, session, restaurant_id, items, make_coupon):
        make_coupon('OFF', status=CouponStatus.PAUSED)
        with pytest.raises(CouponInactive):
            lifecycle.create_order(restaurant_id, 4, items, coupon_code='OFF')
        assert session.query(Order).filter_by(restaurant_id=restaurant_id).count() == 0

    def test_unknown_coupon(self, lifecycle, restaurant_id, items):
        with pytest.raises(NotFoundError):
            lifecycle.create_order(restaurant_id, 4, items, coupon_code='NOPE')


class TestTransitions:
    """Tests for the status state machine."""

    def test_full_happy_path(self, lifecycle, restaurant_id, items, advance):
        order = lifecycle.create_order(restaurant_id, 1, items)
        advance(order.id, 'COMPLETED')

        order = lifecycle.get_order(order.id)
        assert order.status == OrderStatus.COMPLETED
        assert [e.status for e in order.history] == [
            OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PREPARING,
            OrderStatus.READY, OrderStatus.COMPLETED
        ]
        assert_history_follows_table(order)

    def test_skipping_a_step_is_rejected(self, lifecycle, restaurant_id, items):
        order = lifecycle.create_order(restaurant_id, 1, items)
        with pytest.raises(InvalidTransition) as exc_info:
            lifecycle.transition_order(order.id, OrderStatus.READY)
        assert exc_info.value.payload == {'current_status': 'PENDING', 'target_status': 'READY'}
        assert lifecycle.get_order(order.id).status == OrderStatus.PENDING

    def test_ready_cannot_be_cancelled(self, lifecycle, restaurant_id, items, advance):
        order = lifecycle.create_order(restaurant_id, 1, items)
        advance(order.id, 'READY')
        with pytest.raises(InvalidTransition):
            lifecycle.transition_order(order.id, 'CANCELLED')

    def test_unknown_status(self, lifecycle, restaurant_id, items):
        order = lifecycle.create_order(restaurant_id, 1, items)
        with pytest.raises(BusinessLogicError):
            lifecycle.transition_order(order.id, 'SERVED')

    def test_unknown_order(self, lifecycle):
        with pytest.raises(NotFoundError):
            lifecycle.transition_order(987654321, 'CONFIRMED')

    def test_completing_twice(self, lifecycle, session, restaurant_id, items, advance):
        order = lifecycle.create_order(restaurant_id, 1, items)
        order_id = order.id
        advance(order_id, 'COMPLETED')

        for _ in range(2):
            with pytest.raises(OrderAlreadyFinalized):
                lifecycle.transition_order(order_id, 'COMPLETED')

        assert session.query(Bill).filter_by(order_id=order_id).count() == 1

    def test_cancelled_is_terminal(self, lifecycle, restaurant_id, items):
        order = lifecycle.create_order(restaurant_id, 1, items)
        lifecycle.transition_order(order.id, 'CANCELLED')
        for target in ('PENDING', 'CONFIRMED', 'COMPLETED', 'CANCELLED'):
            with pytest.raises(OrderAlreadyFinalized):
                lifecycle.transition_order(order.id, target)

    def test_cancellation_has_no_billing_side_effects(self, lifecycle, session, restaurant_id, items,
                                                      make_coupon, make_program):
        coupon = make_coupon('SAVE10')
        program = make_program()
        order = lifecycle.create_order(restaurant_id, 1, items, customer_id=55, coupon_code='SAVE10')
        lifecycle.transition_order(order.id, 'CONFIRMED')
        lifecycle.transition_order(order.id, 'CANCELLED')

        assert session.query(Bill).filter_by(order_id=order.id).count() == 0
        assert session.query(LoyaltyAccrual).filter_by(order_id=order.id).count() == 0
        session.refresh(coupon)
        session.refresh(program)
        assert coupon.used_count == 0
        assert program.total_points_issued == 0

    def test_timestamps_come_from_the_clock(self, lifecycle, clock, restaurant_id, items):
        order = lifecycle.create_order(restaurant_id, 1, items)
        clock.advance(minutes=5)
        lifecycle.transition_order(order.id, 'CONFIRMED')

        order = lifecycle.get_order(order.id)
        first, second = order.history
        assert (second.occurred_at - first.occurred_at).total_seconds() == 300


class TestIdempotency:
    """Tests for Idempotency-Key replays."""

    def test_replay_returns_order_without_side_effects(self, lifecycle, session, restaurant_id, items, advance):
        order = lifecycle.create_order(restaurant_id, 1, items)
        advance(order.id, 'READY')

        first = lifecycle.transition_order(order.id, 'COMPLETED', idempotency_key='pay-1')
        replay = lifecycle.transition_order(order.id, 'COMPLETED', idempotency_key='pay-1')

        assert first.id == replay.id
        assert replay.status == OrderStatus.COMPLETED
        assert session.query(Bill).filter_by(order_id=order.id).count() == 1
        assert len(lifecycle.get_order(order.id).history) == 5

    def test_key_reused_for_another_target(self, lifecycle, restaurant_id, items):
        order = lifecycle.create_order(restaurant_id, 1, items)
        lifecycle.transition_order(order.id, 'CONFIRMED', idempotency_key='k-1')
        with pytest.raises(IdempotencyConflict):
            lifecycle.transition_order(order.id, 'PREPARING', idempotency_key='k-1')


class TestLineItems:
    """Tests for line item immutability."""

    def test_pending_order_lines_can_be_replaced(self, lifecycle, restaurant_id, items):
        order = lifecycle.create_order(restaurant_id, 1, items)
        order = lifecycle.replace_line_items(order.id, [{'menu_item_id': 3, 'quantity': 4, 'unit_price': '2.00'}])
        assert order.subtotal == Decimal('8.00')
        assert len(order.lines) == 1

    def test_lines_frozen_after_confirmation(self, lifecycle, restaurant_id, items):
        order = lifecycle.create_order(restaurant_id, 1, items)
        lifecycle.transition_order(order.id, 'CONFIRMED')
        with pytest.raises(OrderNotEditable):
            lifecycle.replace_line_items(order.id, items)
        assert lifecycle.get_order(order.id).subtotal == Decimal('25.00')


class TestCompletionBilling:
    """Tests for the bill, coupon and loyalty side effects of completion."""

    def test_save10_scenario(self, lifecycle, session, restaurant_id, items, advance, make_coupon, make_program):
        coupon = make_coupon('SAVE10')
        program = make_program()
        order = lifecycle.create_order(restaurant_id, 1, items, customer_id=77, coupon_code='SAVE10')
        order_id = order.id
        advance(order_id, 'COMPLETED')

        bill = lifecycle.get_bill(order_id)
        assert bill.subtotal == Decimal('25.00')
        assert bill.tax == Decimal('2.00')
        assert bill.discount == Decimal('2.50')
        assert bill.total == Decimal('24.50')
        assert bill.total == bill.subtotal + bill.tax - bill.discount
        assert bill.coupon_code == 'SAVE10'
        assert bill.coupon_rejection is None
        assert bill.bill_number == 'INV-000001'

        session.refresh(coupon)
        assert coupon.used_count == 1
        assert session.query(CouponRedemption).filter_by(order_id=order_id).count() == 1

        member = session.query(LoyaltyMember).filter_by(program_id=program.id, customer_id=77).one()
        assert member.points_balance == 34
        session.refresh(program)
        assert program.total_points_issued == 34
        assert program.total_members == 1

    def test_below_minimum_scenario(self, lifecycle, session, restaurant_id, items, advance, make_coupon):
        coupon = make_coupon('BIG30', type=CouponType.FIXED, value=Decimal('5.00'), max_discount=None)
        order = lifecycle.create_order(restaurant_id, 1, items, coupon_code='BIG30')
        coupon.min_order_amount = Decimal('30.00')
        session.commit()

        advance(order.id, 'COMPLETED')

        bill = lifecycle.get_bill(order.id)
        assert bill.discount == Decimal('0.00')
        assert bill.total == Decimal('27.00')
        assert bill.coupon_code is None
        assert bill.coupon_rejection == 'BelowMinimumOrder'
        session.refresh(coupon)
        assert coupon.used_count == 0

    def test_preview_matches_bill_and_consumes_nothing(self, lifecycle, session, restaurant_id, items, advance,
                                                      make_coupon):
        coupon = make_coupon('SAVE10')
        order = lifecycle.create_order(restaurant_id, 1, items, coupon_code='SAVE10')
        advance(order.id, 'READY')

        preview = lifecycle.preview_bill(order.id)
        assert preview.totals.total.amount == Decimal('24.50')
        assert preview.coupon_code == 'SAVE10'
        session.refresh(coupon)
        assert coupon.used_count == 0

        lifecycle.transition_order(order.id, 'COMPLETED')
        assert lifecycle.get_bill(order.id).total == preview.totals.total.amount

    def test_restaurant_billing_config_wins(self, lifecycle, restaurant_id, items, advance, billing_config):
        order = lifecycle.create_order(restaurant_id, 1, items)
        advance(order.id, 'COMPLETED')

        bill = lifecycle.get_bill(order.id)
        assert bill.tax_rate == Decimal('5.00')
        assert bill.tax == Decimal('1.25')
        assert bill.currency == 'EUR'
        assert bill.total == Decimal('26.25')

    def test_existing_customer_coupon(self, lifecycle, restaurant_id, items, advance, make_coupon):
        make_coupon('WELCOME', applicable_to=CouponAudience.NEW_CUSTOMERS)

        first = lifecycle.create_order(restaurant_id, 1, items, customer_id=9, coupon_code='WELCOME')
        advance(first.id, 'COMPLETED')
        assert lifecycle.get_bill(first.id).coupon_code == 'WELCOME'

        second = lifecycle.create_order(restaurant_id, 1, items, customer_id=9)
        with pytest.raises(BusinessLogicError) as exc_info:
            lifecycle.apply_coupon(second.id, 'WELCOME')
        assert exc_info.value.code == 'CouponNotApplicable'

    def test_anonymous_order_earns_no_points(self, lifecycle, session, restaurant_id, items, advance, make_program):
        program = make_program()
        order = lifecycle.create_order(restaurant_id, 1, items)
        advance(order.id, 'COMPLETED')

        session.refresh(program)
        assert program.total_points_issued == 0
        assert session.query(LoyaltyAccrual).filter_by(order_id=order.id).count() == 0

    def test_paused_program_earns_nothing_but_completes(self, lifecycle, session, restaurant_id, items, advance,
                                                         make_program):
        program = make_program(status=LoyaltyProgramStatus.PAUSED)
        order = lifecycle.create_order(restaurant_id, 1, items, customer_id=3)
        advance(order.id, 'COMPLETED')

        assert lifecycle.get_order(order.id).status == OrderStatus.COMPLETED
        session.refresh(program)
        assert program.total_points_issued == 0

    def test_failed_redemption_rolls_back_everything(self, lifecycle, session, restaurant_id, items, advance,
                                                     make_coupon, make_program, monkeypatch):
        coupon = make_coupon('SAVE10')
        program = make_program()
        order = lifecycle.create_order(restaurant_id, 1, items, customer_id=12, coupon_code='SAVE10')
        order_id = order.id
        advance(order_id, 'READY')

        def exhausted(self, coupon_id, order, customer_class, now):
            raise CouponExhausted('Coupon SAVE10 has reached its usage limit')

        monkeypatch.setattr(OrderStore, 'increment_coupon_usage', exhausted)

        with pytest.raises(CouponConsumptionFailed) as exc_info:
            lifecycle.transition_order(order_id, 'COMPLETED')
        assert exc_info.value.reason == 'CouponExhausted'

        assert lifecycle.get_order(order_id).status == OrderStatus.READY
        assert session.query(Bill).filter_by(order_id=order_id).count() == 0
        assert session.query(LoyaltyAccrual).filter_by(order_id=order_id).count() == 0
        session.refresh(coupon)
        session.refresh(program)
        assert coupon.used_count == 0
        assert program.total_points_issued == 0

    def test_removed_coupon_is_not_applied(self, lifecycle, restaurant_id, items, advance, make_coupon):
        make_coupon('SAVE10')
        order = lifecycle.create_order(restaurant_id, 1, items, coupon_code='SAVE10')
        lifecycle.remove_coupon(order.id)
        advance(order.id, 'COMPLETED')
        assert lifecycle.get_bill(order.id).discount == Decimal('0.00')

    def test_no_coupon_change_after_completion(self, lifecycle, restaurant_id, items, advance, make_coupon):
        make_coupon('SAVE10')
        order = lifecycle.create_order(restaurant_id, 1, items)
        advance(order.id, 'COMPLETED')
        with pytest.raises(OrderAlreadyFinalized):
            lifecycle.apply_coupon(order.id, 'SAVE10')


class TestBills:
    """Tests for bill numbering and payment."""

    def test_numbers_are_sequential_per_restaurant(self, lifecycle, restaurant_id, other_restaurant_id, items,
                                                   advance):
        numbers = []
        for rid in (restaurant_id, restaurant_id, other_restaurant_id, restaurant_id):
            order = lifecycle.create_order(rid, 1, items)
            advance(order.id, 'COMPLETED')
            numbers.append(lifecycle.get_bill(order.id).bill_number)

        assert numbers == ['INV-000001', 'INV-000002', 'INV-000001', 'INV-000003']

    def test_no_bill_before_completion(self, lifecycle, restaurant_id, items):
        order = lifecycle.create_order(restaurant_id, 1, items)
        with pytest.raises(NotFoundError):
            lifecycle.get_bill(order.id)

    def test_mark_paid_once(self, lifecycle, restaurant_id, items, advance, clock):
        order = lifecycle.create_order(restaurant_id, 1, items)
        advance(order.id, 'COMPLETED')
        bill_id = lifecycle.get_bill(order.id).id

        bill = lifecycle.mark_bill_paid(bill_id, 'card')
        assert bill.is_paid
        assert bill.payment_method == 'CARD'

        with pytest.raises(BillAlreadyPaid):
            lifecycle.mark_bill_paid(bill_id, 'CASH')
        assert lifecycle.get_bill(order.id).payment_method == 'CARD'

    def test_invalid_payment_method(self, lifecycle, restaurant_id, items, advance):
        order = lifecycle.create_order(restaurant_id, 1, items)
        advance(order.id, 'COMPLETED')
        with pytest.raises(BusinessLogicError):
            lifecycle.mark_bill_paid(lifecycle.get_bill(order.id).id, 'BITCOIN')

    def test_issued_bill_amounts_cannot_change(self, lifecycle, session, restaurant_id, items, advance):
        order = lifecycle.create_order(restaurant_id, 1, items)
        advance(order.id, 'COMPLETED')

        bill = lifecycle.get_bill(order.id)
        bill.total = Decimal('1.00')
        with pytest.raises(ImmutableBillError):
            session.flush()
        session.rollback()

    def test_store_allocates_inside_transaction(self, session, restaurant_id):
        store = OrderStore(session)
        assert store.allocate_next_bill_number(restaurant_id) == 1
        assert store.allocate_next_bill_number(restaurant_id) == 2
        store.rollback()
        assert bill_service.allocate_next_bill_number(session, restaurant_id) == 1
        session.rollback()


class TestCouponUsedUpBeforeCompletion:
    """A coupon exhausted by other orders fails the completion that still carries it."""

    def test_second_completion_fails_and_stays_ready(self, lifecycle, session, restaurant_id, items, advance,
                                                      make_coupon, make_program):
        coupon = make_coupon('ONCE', usage_limit=1)
        program = make_program()
        first = lifecycle.create_order(restaurant_id, 1, items, customer_id=31, coupon_code='ONCE')
        second = lifecycle.create_order(restaurant_id, 2, items, customer_id=32, coupon_code='ONCE')
        first_id, second_id = first.id, second.id
        advance(first_id, 'READY')
        advance(second_id, 'READY')

        lifecycle.transition_order(first_id, 'COMPLETED')
        with pytest.raises(CouponConsumptionFailed) as exc_info:
            lifecycle.transition_order(second_id, 'COMPLETED')
        assert exc_info.value.reason == 'CouponExhausted'
        assert exc_info.value.status_code == 409

        assert lifecycle.get_order(second_id).status == OrderStatus.READY
        assert session.query(Bill).filter_by(order_id=second_id).count() == 0
        assert session.query(LoyaltyAccrual).filter_by(order_id=second_id).count() == 0
        session.refresh(coupon)
        session.refresh(program)
        assert coupon.used_count == 1
        assert program.total_points_issued == 34

    def test_order_completes_once_the_code_is_removed(self, lifecycle, restaurant_id, items, advance,
                                                      make_coupon):
        make_coupon('ONCE', usage_limit=1)
        first = lifecycle.create_order(restaurant_id, 1, items, coupon_code='ONCE')
        second = lifecycle.create_order(restaurant_id, 2, items, coupon_code='ONCE')
        first_id, second_id = first.id, second.id
        advance(first_id, 'COMPLETED')
        advance(second_id, 'READY')

        with pytest.raises(CouponConsumptionFailed):
            lifecycle.transition_order(second_id, 'COMPLETED')

        lifecycle.remove_coupon(second_id)
        lifecycle.transition_order(second_id, 'COMPLETED')
        bill = lifecycle.get_bill(second_id)
        assert bill.discount == Decimal('0.00')
        assert bill.total == Decimal('27.00')


class TestTimeouts:
    """Lock and commit deadlines surface as PersistenceUnavailable with nothing saved."""

    def test_busy_order_lock_times_out(self, lifecycle, restaurant_id, items):
        order = lifecycle.create_order(restaurant_id, 1, items)
        order_id = order.id

        with order_locks.hold(order_id):
            with pytest.raises(PersistenceUnavailable) as exc_info:
                lifecycle.transition_order(order_id, 'CONFIRMED', timeout=0.05)
        assert exc_info.value.status_code == 503

        order = lifecycle.get_order(order_id)
        assert order.status == OrderStatus.PENDING
        assert len(order.history) == 1

    def test_deadline_passed_before_commit(self, lifecycle, session, restaurant_id, items, advance,
                                           make_coupon, make_program, monkeypatch):
        coupon = make_coupon('SAVE10')
        program = make_program()
        order = lifecycle.create_order(restaurant_id, 1, items, customer_id=14, coupon_code='SAVE10')
        order_id = order.id
        advance(order_id, 'READY')

        # The commit check sees a clock far past any deadline
        monkeypatch.setattr(order_store, 'time', SimpleNamespace(monotonic=lambda: float('inf')))

        with pytest.raises(PersistenceUnavailable):
            lifecycle.transition_order(order_id, 'COMPLETED', timeout=5)

        assert lifecycle.get_order(order_id).status == OrderStatus.READY
        assert session.query(Bill).filter_by(order_id=order_id).count() == 0
        assert session.query(LoyaltyAccrual).filter_by(order_id=order_id).count() == 0
        session.refresh(coupon)
        session.refresh(program)
        assert coupon.used_count == 0
        assert program.total_points_issued == 0

    def test_store_commit_after_deadline_saves_nothing(self, lifecycle, session, restaurant_id, items):
        order_id = lifecycle.create_order(restaurant_id, 1, items).id
        store = OrderStore(session)

        order = store.load_order(order_id, for_update=True)
        order.table_id = 99
        with pytest.raises(PersistenceUnavailable):
            store.commit(deadline=time.monotonic() - 1)
        store.rollback()

        assert store.load_order(order_id).table_id == 1


class TestLoyaltyAccrualOnce:
    """Accrual is recorded per (program, order) and never credited twice."""

    def test_repeated_accrual_credits_once(self, lifecycle, session, clock, restaurant_id, items, make_program):
        program = make_program()
        order = lifecycle.create_order(restaurant_id, 1, items, customer_id=21)
        total = Money.of('24.50')

        first = loyalty_service.accrue_points(session, program, order, total, clock.now())
        again = loyalty_service.accrue_points(session, program, order, total, clock.now())
        session.commit()

        assert first == again == 34
        assert session.query(LoyaltyAccrual).filter_by(program_id=program.id, order_id=order.id).count() == 1
        member = session.query(LoyaltyMember).filter_by(program_id=program.id, customer_id=21).one()
        assert member.points_balance == 34
        session.refresh(program)
        assert program.total_points_issued == 34
        assert program.total_members == 1

    def test_store_reaccrual_after_completion(self, lifecycle, session, clock, restaurant_id, items, advance,
                                              make_program):
        program = make_program()
        order = lifecycle.create_order(restaurant_id, 1, items, customer_id=22)
        order_id = order.id
        advance(order_id, 'COMPLETED')

        order = lifecycle.get_order(order_id)
        earned = OrderStore(session).update_loyalty_balance(order, Money.of('27.00'), clock.now())
        session.commit()

        assert earned == {program.id: 37}
        assert loyalty_service.get_balance(session, program.id, 22) == 37
        session.refresh(program)
        assert program.total_points_issued == 37


class TestIdempotencyKeyLength:

    def test_overlong_key_rejected_before_any_change(self, lifecycle, restaurant_id, items):
        order = lifecycle.create_order(restaurant_id, 1, items)
        with pytest.raises(BusinessLogicError):
            lifecycle.transition_order(order.id, 'CONFIRMED', idempotency_key='k' * 65)
        assert lifecycle.get_order(order.id).status == OrderStatus.PENDING

    def test_longest_allowed_key(self, lifecycle, restaurant_id, items):
        order = lifecycle.create_order(restaurant_id, 1, items)
        key = 'k' * IDEMPOTENCY_KEY_MAX_LENGTH
        lifecycle.transition_order(order.id, 'CONFIRMED', idempotency_key=key)
        replay = lifecycle.transition_order(order.id, 'CONFIRMED', idempotency_key=key)
        assert len(replay.history) == 2
