"""Coupon model."""
import enum
from sqlalchemy import (
    Column, BigInteger, Integer, String, Text, Numeric, DateTime, Enum,
    UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import validates
from sqlalchemy.sql import func
from restobill.database import Base, BigIntPK


class CouponType(str, enum.Enum):
    PERCENTAGE = 'percentage'
    FIXED = 'fixed'
    FREE_ITEM = 'free_item'


class CouponStatus(str, enum.Enum):
    ACTIVE = 'active'
    INACTIVE = 'inactive'
    EXPIRED = 'expired'
    PAUSED = 'paused'


class CouponAudience(str, enum.Enum):
    """Who may redeem the coupon (``applicableTo``)."""
    ALL = 'all'
    NEW_CUSTOMERS = 'new_customers'
    EXISTING_CUSTOMERS = 'existing_customers'


def normalize_coupon_code(code) -> str:
    """Codes are case-insensitive; they are stored and looked up upper-cased."""
    return (code or '').strip().upper()


class Coupon(Base):
    """
    Promotional code owned by the restaurant configuration.

    The engine reads the configuration and only ever touches ``used_count``.
    """

    __tablename__ = 'coupon'
    __table_args__ = (
        UniqueConstraint('restaurant_id', 'code', name='uq_coupon_restaurant_code'),
        CheckConstraint('valid_from <= valid_until', name='ck_coupon_validity_window'),
        CheckConstraint('used_count >= 0', name='ck_coupon_used_count'),
        CheckConstraint(
            'usage_limit IS NULL OR used_count <= usage_limit',
            name='ck_coupon_usage_limit'
        ),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    restaurant_id = Column(BigInteger, nullable=False, index=True)
    code = Column(String(64), nullable=False)
    name = Column(String(200), nullable=True)
    description = Column(Text, nullable=True)
    type = Column(Enum(CouponType, name='coupon_type'), nullable=False)
    value = Column(Numeric(10, 2), nullable=False)
    min_order_amount = Column(Numeric(10, 2), nullable=True)
    max_discount = Column(Numeric(10, 2), nullable=True)  # percentage coupons only
    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=False)
    usage_limit = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    status = Column(Enum(CouponStatus, name='coupon_status'), nullable=False, default=CouponStatus.ACTIVE)
    applicable_to = Column(
        Enum(CouponAudience, name='coupon_audience'), nullable=False, default=CouponAudience.ALL
    )
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    @validates('code')
    def _normalize_code(self, key, value):
        return normalize_coupon_code(value)

    @property
    def remaining_uses(self):
        if self.usage_limit is None:
            return None
        return max(self.usage_limit - (self.used_count or 0), 0)

    def __repr__(self):
        return f"<Coupon(id={self.id}, code='{self.code}', used={self.used_count}/{self.usage_limit})>"
