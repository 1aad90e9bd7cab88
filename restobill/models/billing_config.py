"""Billing configuration model (tax settings per restaurant)."""
from sqlalchemy import Column, BigInteger, Boolean, Numeric, String, DateTime, CheckConstraint
from sqlalchemy.sql import func
from restobill.database import Base, BigIntPK


class BillingConfig(Base):
    """Tax and currency settings, managed by the restaurant configuration screens."""

    __tablename__ = 'billing_config'
    __table_args__ = (
        CheckConstraint('tax_rate >= 0 AND tax_rate <= 100', name='ck_billing_config_tax_rate'),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    restaurant_id = Column(BigInteger, nullable=False, unique=True)
    tax_enabled = Column(Boolean, nullable=False, default=True)
    tax_rate = Column(Numeric(5, 2), nullable=False, default=0)  # percent
    currency = Column(String(3), nullable=False, default='USD')
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<BillingConfig(restaurant_id={self.restaurant_id}, tax_enabled={self.tax_enabled}, tax_rate={self.tax_rate})>"
