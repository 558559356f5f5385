"""Borrower-facing fine payment endpoints.

The checkout flow is: create an order, let the gateway widget collect the
payment, then post the widget's order id, payment id and signature back to
`/verify`.
"""
from flask import Blueprint, g, jsonify, request

from library_fines.models.borrow import Borrow
from library_fines.services import get_services
from library_fines.services.fine_selector import FineContext
from library_fines.utils.decorators import login_required
from library_fines.utils.errors import BadRequest, Forbidden, NotFound

payment_bp = Blueprint('payments', __name__)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequest('Request body must be a JSON object')
    return data


@payment_bp.route('/create-order', methods=['POST'])
@login_required
def create_order():
    """Create a gateway order for a fine.

    Body:
        borrow_id: Borrow record whose fine is being paid.
        amount: Amount the borrower expects to pay.
    """
    data = _json_body()
    descriptor = get_services().payments.create_order(
        data.get('borrow_id'), data.get('amount'), g.user.id, is_admin=g.user.is_admin()
    )
    return jsonify({'success': True, **descriptor})


@payment_bp.route('/attempt', methods=['POST'])
@login_required
def mark_attempted():
    data = _json_body()
    if not data.get('order_id'):
        raise BadRequest('Order ID is required')
    order = get_services().payments.mark_attempted(data['order_id'], user=g.user)
    return jsonify({'success': True, 'status': order.status})


@payment_bp.route('/verify', methods=['POST'])
@login_required
def verify():
    """Verify the signature returned by the checkout widget."""
    data = _json_body()
    confirmation = get_services().payments.verify_payment(
        data.get('order_id'), data.get('payment_id'), data.get('signature')
    )
    message = ('Payment already processed' if confirmation.already_processed
               else 'Payment verified successfully')
    return jsonify({
        'success': True,
        'message': message,
        'payment': confirmation.to_dict(),
    })


@payment_bp.route('/failure', methods=['POST'])
@login_required
def report_failure():
    data = _json_body()
    if not data.get('order_id'):
        raise BadRequest('Order ID is required')
    reason = data.get('reason') or 'Payment failed at gateway'
    order = get_services().payments.report_failure(data['order_id'], reason, user=g.user)
    return jsonify({
        'success': True,
        'message': 'Payment failure recorded',
        'status': order.status,
    })


@payment_bp.route('/order/<order_id>', methods=['GET'])
@login_required
def order_status(order_id: str):
    """Poll a payment order after the checkout widget closes."""
    order = get_services().payments.get_order_status(order_id, user=g.user)
    return jsonify({'success': True, 'order': order})


@payment_bp.route('/fine/<borrow_id>', methods=['GET'])
@login_required
def get_fine(borrow_id: str):
    """Current fine of one of the caller's borrows."""
    borrow = Borrow.get_by_id(borrow_id)
    if borrow is None:
        raise NotFound('Borrow record not found')
    if borrow.user_id != g.user.id and not g.user.is_admin():
        raise Forbidden('Access denied. You can only view your own fines.')

    result = get_services().selector.calculate_smart(
        FineContext(record=borrow, user_id=borrow.user_id, is_admin=g.user.is_admin())
    )
    return jsonify({
        'success': True,
        'fine': result.to_dict(),
        'recorded_fine': round(borrow.fine, 2),
        'payment_status': borrow.payment_status,
    })
