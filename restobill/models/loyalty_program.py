"""Loyalty program models."""
import enum
from sqlalchemy import (
    Column, BigInteger, Integer, String, Text, Numeric, DateTime, Enum, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from restobill.database import Base, BigIntPK


class LoyaltyProgramType(str, enum.Enum):
    POINTS = 'points'
    STAMPS = 'stamps'
    TIER = 'tier'


class LoyaltyProgramStatus(str, enum.Enum):
    ACTIVE = 'active'
    INACTIVE = 'inactive'
    PAUSED = 'paused'


class LoyaltyProgram(Base):
    """
    Loyalty program of a restaurant.

    Earning rules: ``points_per_dollar`` and ``points_per_order`` are both
    optional and add up when both are present.
    """

    __tablename__ = 'loyalty_program'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    restaurant_id = Column(BigInteger, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(Enum(LoyaltyProgramType, name='loyalty_program_type'), nullable=False,
                  default=LoyaltyProgramType.POINTS)
    points_per_dollar = Column(Numeric(10, 2), nullable=True)
    points_per_order = Column(Integer, nullable=True)
    total_points_issued = Column(BigInteger, nullable=False, default=0)
    total_members = Column(Integer, nullable=False, default=0)
    status = Column(Enum(LoyaltyProgramStatus, name='loyalty_program_status'), nullable=False,
                    default=LoyaltyProgramStatus.ACTIVE)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    members = relationship('LoyaltyMember', back_populates='program')

    def __repr__(self):
        return f"<LoyaltyProgram(id={self.id}, name='{self.name}', status={self.status.value})>"


class LoyaltyMember(Base):
    """A customer's point balance in one program."""

    __tablename__ = 'loyalty_member'
    __table_args__ = (
        UniqueConstraint('program_id', 'customer_id', name='uq_loyalty_member_customer'),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    program_id = Column(BigInteger, ForeignKey('loyalty_program.id'), nullable=False)
    customer_id = Column(BigInteger, nullable=False, index=True)
    points_balance = Column(BigInteger, nullable=False, default=0)
    joined_at = Column(DateTime(timezone=True), nullable=False)

    program = relationship('LoyaltyProgram', back_populates='members')

    def __repr__(self):
        return f"<LoyaltyMember(program_id={self.program_id}, customer_id={self.customer_id}, points={self.points_balance})>"


class LoyaltyAccrual(Base):
    """Points credited for one completed order; at most one per (program, order)."""

    __tablename__ = 'loyalty_accrual'
    __table_args__ = (
        UniqueConstraint('program_id', 'order_id', name='uq_loyalty_accrual_order'),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    program_id = Column(BigInteger, ForeignKey('loyalty_program.id'), nullable=False)
    order_id = Column(BigInteger, ForeignKey('restaurant_order.id'), nullable=False)
    customer_id = Column(BigInteger, nullable=True)
    points = Column(Integer, nullable=False)
    accrued_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<LoyaltyAccrual(program_id={self.program_id}, order_id={self.order_id}, points={self.points})>"
