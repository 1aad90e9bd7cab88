"""Custom exceptions for the Restobill order and billing engine."""


class RestobillError(Exception):
    """Base exception for all application errors."""
    code = 'InternalError'

    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['code'] = self.code
        rv['status'] = 'error'
        return rv


class BusinessLogicError(RestobillError):
    """Exception raised for business logic violations."""
    code = 'BusinessLogicError'

    def __init__(self, message, status_code=400, payload=None):
        super().__init__(message, status_code, payload)


class NotFoundError(RestobillError):
    """Exception raised when a resource is not found."""
    code = 'NotFound'

    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)


class InvalidAmount(BusinessLogicError):
    """A negative or malformed amount, rate or quantity."""
    code = 'InvalidAmount'


# =====================================================
# ORDER LIFECYCLE
# =====================================================

class InvalidTransition(BusinessLogicError):
    """The requested status is not reachable from the current one."""
    code = 'InvalidTransition'

    def __init__(self, current, target):
        super().__init__(
            f'Cannot move order from {current} to {target}',
            status_code=409,
            payload={'current_status': current, 'target_status': target}
        )


class OrderAlreadyFinalized(BusinessLogicError):
    """The order is COMPLETED or CANCELLED and accepts no transitions."""
    code = 'OrderAlreadyFinalized'

    def __init__(self, order_id, status):
        super().__init__(
            f'Order {order_id} is already {status}',
            status_code=409,
            payload={'order_id': order_id, 'current_status': status}
        )


class OrderNotEditable(BusinessLogicError):
    """Line items can only change while the order is PENDING."""
    code = 'OrderNotEditable'

    def __init__(self, order_id, status):
        super().__init__(
            f'Order {order_id} can no longer be edited (status {status})',
            status_code=409,
            payload={'order_id': order_id, 'current_status': status}
        )


class IdempotencyConflict(BusinessLogicError):
    """An idempotency key was reused for a different transition."""
    code = 'IdempotencyConflict'

    def __init__(self, key):
        super().__init__(f'Idempotency key {key!r} was already used for another transition', status_code=409)


# =====================================================
# COUPONS
# =====================================================

class CouponError(BusinessLogicError):
    """Base class for coupon validation failures. Recoverable by the caller."""
    code = 'CouponError'

    def __init__(self, message, payload=None):
        super().__init__(message, status_code=422, payload=payload)


class CouponInactive(CouponError):
    code = 'CouponInactive'


class CouponExpired(CouponError):
    code = 'CouponExpired'


class CouponExhausted(CouponError):
    code = 'CouponExhausted'


class CouponNotApplicable(CouponError):
    code = 'CouponNotApplicable'


class BelowMinimumOrder(CouponError):
    code = 'BelowMinimumOrder'


class CouponConsumptionFailed(BusinessLogicError):
    """The coupon validated but could not be redeemed while completing the order."""
    code = 'CouponConsumptionFailed'

    def __init__(self, coupon_code, reason):
        super().__init__(
            f'Coupon {coupon_code} could not be redeemed: {reason}',
            status_code=409,
            payload={'coupon_code': coupon_code, 'reason': reason}
        )
        self.reason = reason


# =====================================================
# BILLING
# =====================================================

class BillAlreadyPaid(BusinessLogicError):
    code = 'BillAlreadyPaid'

    def __init__(self, bill_number):
        super().__init__(f'Bill {bill_number} is already paid', status_code=409)


class ImmutableBillError(BusinessLogicError):
    """Raised when something other than the payment stamp changes on a bill."""
    code = 'ImmutableBill'


# =====================================================
# INFRASTRUCTURE
# =====================================================

class PersistenceUnavailable(RestobillError):
    """The store failed or timed out. Nothing was committed; retry with backoff."""
    code = 'PersistenceUnavailable'

    def __init__(self, message="Persistence layer unavailable"):
        super().__init__(message, 503)
