"""Admin endpoints for payment reconciliation and monitoring."""
from flask import Blueprint, jsonify, request

from library_fines.scheduled_tasks import get_payment_order_stats
from library_fines.services import get_services
from library_fines.utils.decorators import role_required
from library_fines.utils.errors import BadRequest

admin_payment_bp = Blueprint('admin_payments', __name__)


@admin_payment_bp.route('/reconcile/<borrow_id>', methods=['POST'])
@role_required('admin')
def reconcile_borrow(borrow_id: str):
    report = get_services().reconciliation.reconcile_borrow(borrow_id)
    return jsonify({'success': True, 'report': report.to_dict()})


@admin_payment_bp.route('/reconcile-all', methods=['POST'])
@role_required('admin')
def reconcile_all():
    """Reconcile every order created in the last `hours` hours (default 24)."""
    data = request.get_json(silent=True) or {}
    hours = data.get('hours')
    if hours is not None:
        try:
            hours = int(hours)
        except (TypeError, ValueError):
            raise BadRequest('Hours must be a whole number')
        if hours <= 0:
            raise BadRequest('Hours must be positive')
    summary = get_services().reconciliation.reconcile_all(hours)
    return jsonify({'success': True, 'summary': summary.to_dict()})


@admin_payment_bp.route('/stats', methods=['GET'])
@role_required('admin')
def stats():
    return jsonify({
        'success': True,
        'stats': get_services().reconciliation.get_stats(),
        'orders': get_payment_order_stats(),
    })


@admin_payment_bp.route('/metrics', methods=['GET'])
@role_required('admin')
def metrics():
    return jsonify({'success': True, 'metrics': get_services().metrics.snapshot()})
