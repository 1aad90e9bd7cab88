"""Models package - exports all SQLAlchemy models."""
# Orders
from restobill.models.order import Order, OrderStatus, STATUS_FLOW, TERMINAL_STATUSES
from restobill.models.order_line import OrderLine
from restobill.models.order_status_event import OrderStatusEvent, IDEMPOTENCY_KEY_MAX_LENGTH

# Billing
from restobill.models.bill import Bill, PaymentMethod, normalize_payment_method
from restobill.models.bill_sequence import BillSequence
from restobill.models.billing_config import BillingConfig

# Promotions
from restobill.models.coupon import Coupon, CouponType, CouponStatus, CouponAudience, normalize_coupon_code
from restobill.models.coupon_redemption import CouponRedemption
from restobill.models.loyalty_program import (
    LoyaltyProgram, LoyaltyProgramType, LoyaltyProgramStatus, LoyaltyMember, LoyaltyAccrual
)

__all__ = [
    'Order', 'OrderStatus', 'STATUS_FLOW', 'TERMINAL_STATUSES', 'OrderLine', 'OrderStatusEvent',
    'IDEMPOTENCY_KEY_MAX_LENGTH',
    'Bill', 'PaymentMethod', 'normalize_payment_method', 'BillSequence', 'BillingConfig',
    'Coupon', 'CouponType', 'CouponStatus', 'CouponAudience', 'normalize_coupon_code', 'CouponRedemption',
    'LoyaltyProgram', 'LoyaltyProgramType', 'LoyaltyProgramStatus', 'LoyaltyMember', 'LoyaltyAccrual',
]
