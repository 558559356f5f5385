"""Admin endpoints for fine adjustments, settlement and audit trails."""
from flask import Blueprint, g, jsonify, request

from library_fines.services import get_services
from library_fines.utils.decorators import role_required
from library_fines.utils.errors import BadRequest

admin_fine_bp = Blueprint('admin_fines', __name__)


@admin_fine_bp.route('/audit-trail/<borrow_id>', methods=['GET'])
@role_required('admin')
def audit_trail(borrow_id: str):
    trail = get_services().audit.get_audit_trail(borrow_id)
    return jsonify({'success': True, **trail})


@admin_fine_bp.route('/user-audit-trail/<user_id>', methods=['GET'])
@role_required('admin')
def user_audit_trail(user_id: str):
    entries = get_services().audit.get_user_audit_trail(user_id)
    return jsonify({
        'success': True,
        'user_id': user_id,
        'total': len(entries),
        'audit_trail': entries,
    })


@admin_fine_bp.route('/adjust/<borrow_id>', methods=['POST'])
@role_required('admin')
def adjust(borrow_id: str):
    """Set a new fine on a borrow record.

    Body:
        new_fine: Fine after the adjustment (>= 0).
        reason: Why the fine changed. Required.
        notes: Free-form notes (optional).
    """
    data = request.get_json(silent=True) or {}
    if 'new_fine' not in data:
        raise BadRequest('New fine amount is required')
    entry = get_services().audit.adjust_fine(
        g.user.id, borrow_id, data['new_fine'], data.get('reason'), data.get('notes', '')
    )
    return jsonify({
        'success': True,
        'message': 'Fine adjusted successfully',
        'audit_entry': entry.to_dict(),
    })


@admin_fine_bp.route('/settle/<borrow_id>', methods=['POST'])
@role_required('admin')
def settle(borrow_id: str):
    """Apply a verified payment to the borrow's fine."""
    data = request.get_json(silent=True) or {}
    if not data.get('payment_id'):
        raise BadRequest('Payment ID is required')
    settlement = get_services().payments.settle_fine(borrow_id, data['payment_id'])
    return jsonify({'success': True, **settlement})


@admin_fine_bp.route('/bulk-calculate', methods=['POST'])
@role_required('admin')
def bulk_calculate():
    data = request.get_json(silent=True) or {}
    borrow_ids = data.get('borrow_ids')
    if not isinstance(borrow_ids, list) or not borrow_ids:
        raise BadRequest('A non-empty list of borrow IDs is required')
    summary = get_services().selector.bulk_calculate(
        borrow_ids,
        batch_size=data.get('batch_size'),
        parallel=bool(data.get('parallel', True)),
        force_mode=data.get('mode'),
    )
    return jsonify({'success': True, **summary})
