"""Orders blueprint: JSON API over the order lifecycle - Multi-Restaurant."""
from flask import Blueprint, request, jsonify, current_app
from sqlalchemy import text

from restobill.database import get_session
from restobill.models import Order, Bill
from restobill.services.order_service import OrderLifecycle, allowed_transitions
from restobill.exceptions import BusinessLogicError

orders_bp = Blueprint('orders', __name__)


def _lifecycle() -> OrderLifecycle:
    return OrderLifecycle.from_config(get_session(), current_app.config)


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise BusinessLogicError('Request body must be a JSON object')
    return payload


def _optional_int(payload: dict, key: str):
    value = payload.get(key)
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BusinessLogicError(f'{key} must be an integer')


def serialize_order(order: Order) -> dict:
    return {
        'id': order.id,
        'order_number': order.order_number,
        'restaurant_id': order.restaurant_id,
        'table_id': order.table_id,
        'customer_id': order.customer_id,
        'status': order.status.value,
        'allowed_transitions': [s.value for s in allowed_transitions(order.status)],
        'coupon_code': order.applied_coupon_code,
        'subtotal': str(order.subtotal),
        'lines': [
            {
                'menu_item_id': line.menu_item_id,
                'name': line.name_snapshot,
                'quantity': line.quantity,
                'unit_price': str(line.unit_price_money.amount),
                'line_total': str(line.line_total),
            }
            for line in order.lines
        ],
        'history': [
            {'status': event.status.value, 'occurred_at': event.occurred_at.isoformat()}
            for event in order.history
        ],
        'created_at': order.created_at.isoformat() if order.created_at else None,
        'updated_at': order.updated_at.isoformat() if order.updated_at else None,
    }


def serialize_bill(bill: Bill) -> dict:
    return {
        'id': bill.id,
        'bill_number': bill.bill_number,
        'order_id': bill.order_id,
        'restaurant_id': bill.restaurant_id,
        'subtotal': str(bill.subtotal),
        'tax_rate': str(bill.tax_rate),
        'tax': str(bill.tax),
        'discount': str(bill.discount),
        'total': str(bill.total),
        'currency': bill.currency,
        'coupon_code': bill.coupon_code,
        'coupon_rejection': bill.coupon_rejection,
        'is_paid': bill.is_paid,
        'payment_method': bill.payment_method,
        'paid_at': bill.paid_at.isoformat() if bill.paid_at else None,
        'created_at': bill.created_at.isoformat() if bill.created_at else None,
    }


@orders_bp.route('/orders', methods=['POST'])
def create_order():
    """
    Create a PENDING order.

    Body:
        restaurant_id, table_id, customer_id (optional), coupon_code (optional),
        items: [{menu_item_id, name, quantity, unit_price}]
    """
    payload = _json_body()
    items = payload.get('items')
    if items is not None and not isinstance(items, list):
        raise BusinessLogicError('items must be a list')

    order = _lifecycle().create_order(
        restaurant_id=_optional_int(payload, 'restaurant_id'),
        table_id=_optional_int(payload, 'table_id'),
        line_items=items or [],
        customer_id=_optional_int(payload, 'customer_id'),
        coupon_code=payload.get('coupon_code')
    )
    return jsonify(serialize_order(order)), 201


@orders_bp.route('/orders/<int:order_id>', methods=['GET'])
def get_order(order_id):
    order = _lifecycle().get_order(order_id)
    return jsonify(serialize_order(order))


@orders_bp.route('/orders/<int:order_id>/items', methods=['PUT'])
def replace_items(order_id):
    payload = _json_body()
    items = payload.get('items')
    if not isinstance(items, list):
        raise BusinessLogicError('items must be a list')
    order = _lifecycle().replace_line_items(order_id, items)
    return jsonify(serialize_order(order))


@orders_bp.route('/orders/<int:order_id>/transition', methods=['POST'])
def transition(order_id):
    """Move an order to the requested status; replays are keyed by Idempotency-Key."""
    payload = _json_body()
    if not payload.get('status'):
        raise BusinessLogicError('status is required')

    order = _lifecycle().transition_order(
        order_id,
        payload['status'],
        idempotency_key=request.headers.get('Idempotency-Key')
    )
    return jsonify(serialize_order(order))


@orders_bp.route('/orders/<int:order_id>/coupon', methods=['POST'])
def apply_coupon(order_id):
    payload = _json_body()
    code = (payload.get('code') or '').strip()
    if not code:
        raise BusinessLogicError('code is required')
    order = _lifecycle().apply_coupon(order_id, code)
    return jsonify(serialize_order(order))


@orders_bp.route('/orders/<int:order_id>/coupon', methods=['DELETE'])
def remove_coupon(order_id):
    order = _lifecycle().remove_coupon(order_id)
    return jsonify(serialize_order(order))


@orders_bp.route('/orders/<int:order_id>/bill/preview', methods=['GET'])
def preview_bill(order_id):
    preview = _lifecycle().preview_bill(order_id)
    return jsonify(preview.to_dict())


@orders_bp.route('/orders/<int:order_id>/bill', methods=['GET'])
def get_bill(order_id):
    bill = _lifecycle().get_bill(order_id)
    return jsonify(serialize_bill(bill))


@orders_bp.route('/bills/<int:bill_id>/pay', methods=['POST'])
def pay_bill(bill_id):
    payload = _json_body()
    bill = _lifecycle().mark_bill_paid(bill_id, payload.get('payment_method'))
    return jsonify(serialize_bill(bill))


@orders_bp.route('/health')
def health():
    """
    Health check endpoint that validates database connection.

    Returns:
        200: Healthy (DB connected)
        500: Unhealthy (DB error)
    """
    try:
        session = get_session()
        row = session.execute(text("SELECT 1 as health_check")).fetchone()
        session.rollback()

        if row and row[0] == 1:
            return jsonify({'status': 'healthy', 'database': 'connected'}), 200
        return jsonify({
            'status': 'unhealthy',
            'database': 'error',
            'message': 'Unexpected query result'
        }), 500

    except Exception as e:
        current_app.logger.error(f"Health check failed: {e}")
        return jsonify({
            'status': 'unhealthy',
            'database': 'disconnected',
            'error': str(e)
        }), 500
