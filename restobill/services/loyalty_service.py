"""Loyalty accrual service."""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from restobill.models import LoyaltyProgram, LoyaltyProgramStatus, LoyaltyMember, LoyaltyAccrual, Order
from restobill.utils.money import Money

logger = logging.getLogger(__name__)


def calculate_points(program: LoyaltyProgram, total: Money) -> int:
    """
    Points earned for an order total under a program's rules.

    ``floor(total * points_per_dollar) + points_per_order``; a missing rule
    contributes nothing and programs that are not active earn nothing.
    """
    if LoyaltyProgramStatus(program.status) != LoyaltyProgramStatus.ACTIVE:
        return 0

    points = 0
    if program.points_per_dollar is not None:
        points += total.scaled_floor(program.points_per_dollar)
    if program.points_per_order is not None:
        points += int(program.points_per_order)
    return max(points, 0)


def programs_for_restaurant(session: Session, restaurant_id: int) -> List[LoyaltyProgram]:
    return session.query(LoyaltyProgram).filter(
        LoyaltyProgram.restaurant_id == restaurant_id
    ).order_by(LoyaltyProgram.id).all()


def get_balance(session: Session, program_id: int, customer_id: int) -> int:
    member = session.query(LoyaltyMember).filter_by(program_id=program_id, customer_id=customer_id).first()
    return member.points_balance if member else 0


def accrue_points(session: Session, program: LoyaltyProgram, order: Order, total: Money,
                  now: datetime) -> int:
    """
    Credit the points of a completed order to the customer's balance.

    Runs inside the completion transaction; the caller commits. Accrual is
    recorded per (program, order), so calling it again for the same order
    returns the recorded points without crediting twice.

    Returns:
        int: points earned by this order
    """
    existing = session.query(LoyaltyAccrual).filter_by(program_id=program.id, order_id=order.id).first()
    if existing:
        logger.info(f"Order {order.id} already accrued {existing.points} points in program {program.id}")
        return existing.points

    if order.customer_id is None:
        # Anonymous order: no balance to credit
        return 0

    points = calculate_points(program, total)

    session.add(LoyaltyAccrual(
        program_id=program.id,
        order_id=order.id,
        customer_id=order.customer_id,
        points=points,
        accrued_at=now
    ))

    if points > 0:
        update_loyalty_balance(session, program, order.customer_id, points, now)

    session.flush()
    logger.info(f"Order {order.id} earned {points} points in program {program.id}")
    return points


def update_loyalty_balance(session: Session, program: LoyaltyProgram, customer_id: int,
                           points: int, now: Optional[datetime] = None) -> LoyaltyMember:
    """
    Add points to a member balance, enrolling the customer on first accrual.

    Counters are bumped with in-database increments so concurrent completions
    for the same program do not lose updates.
    """
    member = session.query(LoyaltyMember).filter_by(
        program_id=program.id, customer_id=customer_id
    ).with_for_update().first()

    new_member = member is None
    if new_member:
        member = LoyaltyMember(program_id=program.id, customer_id=customer_id, points_balance=0, joined_at=now)
        session.add(member)
        session.flush()

    session.execute(
        update(LoyaltyMember)
        .where(LoyaltyMember.id == member.id)
        .values(points_balance=LoyaltyMember.points_balance + points)
        .execution_options(synchronize_session=False)
    )
    session.execute(
        update(LoyaltyProgram)
        .where(LoyaltyProgram.id == program.id)
        .values(
            total_points_issued=LoyaltyProgram.total_points_issued + points,
            total_members=LoyaltyProgram.total_members + (1 if new_member else 0)
        )
        .execution_options(synchronize_session=False)
    )
    session.expire(member, ['points_balance'])
    session.expire(program, ['total_points_issued', 'total_members'])
    return member
