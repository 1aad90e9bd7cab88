"""Coupon Redemption model."""
from sqlalchemy import Column, BigInteger, Numeric, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from restobill.database import Base, BigIntPK


class CouponRedemption(Base):
    """One consumed use of a coupon, at most one per (coupon, order)."""

    __tablename__ = 'coupon_redemption'
    __table_args__ = (
        UniqueConstraint('coupon_id', 'order_id', name='uq_coupon_redemption_order'),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    coupon_id = Column(BigInteger, ForeignKey('coupon.id'), nullable=False, index=True)
    order_id = Column(BigInteger, ForeignKey('restaurant_order.id'), nullable=False)
    discount = Column(Numeric(10, 2), nullable=False)
    redeemed_at = Column(DateTime(timezone=True), nullable=False)

    coupon = relationship('Coupon')

    def __repr__(self):
        return f"<CouponRedemption(coupon_id={self.coupon_id}, order_id={self.order_id})>"
