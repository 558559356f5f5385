"""Append-only audit trail of manual fine changes."""
import logging
from typing import Any, Dict, List

from library_fines.config.config import Config
from library_fines.models.borrow import Borrow
from library_fines.models.fine_audit import FineAuditEntry
from library_fines.models.system_log import SystemLog
from library_fines.services.fine_engine import format_money
from library_fines.services.unit_of_work import run_atomic
from library_fines.utils.errors import BadRequest, NotFound

logger = logging.getLogger(__name__)


def _validate_fine(value) -> float:
    try:
        amount = round(float(value), 2)
    except (TypeError, ValueError):
        raise BadRequest('Fine amount must be a number')
    if amount < 0:
        raise BadRequest('Fine amount cannot be negative')
    return amount


def _validate_reason(reason) -> str:
    reason = (reason or '').strip()
    if not reason:
        raise BadRequest('Reason is required for fine adjustments')
    return reason


class AuditTrailService:

    def __init__(self, config=Config):
        self.config = config

    def record_adjustment(self, acting_user_id: str, borrow_id: str, old_fine, new_fine,
                          reason: str, notes: str = '') -> FineAuditEntry:
        """Append an entry without touching the fine itself.

        Raises:
            BadRequest: negative fine or missing reason.
            NotFound: the borrow record does not exist.
        """
        old_fine = _validate_fine(old_fine)
        new_fine = _validate_fine(new_fine)
        reason = _validate_reason(reason)

        def apply():
            borrow = Borrow.get_by_id(borrow_id)
            if borrow is None:
                raise NotFound('Borrow record not found')
            entry = FineAuditEntry.create(acting_user_id, borrow.id, old_fine, new_fine,
                                          reason, notes)
            borrow.fine_audit_trail.append(entry.to_dict())
            borrow.save(commit=False)
            return entry

        return run_atomic(apply, f'audit entry for borrow {borrow_id}')

    def adjust_fine(self, acting_user_id: str, borrow_id: str, new_fine, reason: str,
                    notes: str = '') -> FineAuditEntry:
        """Set a new fine and log the change in the same save.

        Raises:
            BadRequest: negative fine or missing reason.
            NotFound: the borrow record does not exist.
        """
        new_fine = _validate_fine(new_fine)
        reason = _validate_reason(reason)

        def apply():
            borrow = Borrow.get_by_id(borrow_id)
            if borrow is None:
                raise NotFound('Borrow record not found')
            entry = FineAuditEntry.create(acting_user_id, borrow.id, borrow.fine, new_fine,
                                          reason, notes)
            borrow.fine_audit_trail.append(entry.to_dict())
            borrow.fine = new_fine
            borrow.save(commit=False)

            symbol = self.config.CURRENCY_SYMBOL
            SystemLog.add(
                'Fine Adjusted',
                f'Fine on borrow {borrow.id} changed from {format_money(entry.old_fine, symbol)} '
                f'to {format_money(entry.new_fine, symbol)}: {reason}',
                'admin',
                acting_user_id,
                commit=False,
            )
            return entry

        entry = run_atomic(apply, f'fine adjustment for borrow {borrow_id}')
        logger.info(f"Fine adjusted on borrow {borrow_id} by {acting_user_id}: "
                    f"{entry.old_fine:.2f} -> {entry.new_fine:.2f}")
        return entry

    def get_audit_trail(self, borrow_id: str) -> Dict[str, Any]:
        borrow = Borrow.get_by_id(borrow_id)
        if borrow is None:
            raise NotFound('Borrow record not found')
        return {
            'borrow_id': borrow.id,
            'current_fine': round(borrow.fine, 2),
            'formatted_fine': format_money(borrow.fine, self.config.CURRENCY_SYMBOL),
            'audit_trail': [FineAuditEntry.from_dict(item).to_dict()
                            for item in borrow.fine_audit_trail],
        }

    def get_user_audit_trail(self, user_id: str) -> List[Dict[str, Any]]:
        """All adjustments across the user's borrows, newest first."""
        entries = []
        for borrow in Borrow.get_user_borrows(user_id):
            for item in borrow.fine_audit_trail:
                entry = FineAuditEntry.from_dict(item).to_dict()
                entry['book_id'] = borrow.book_id
                entry['borrow_date'] = borrow.borrow_date
                entries.append(entry)
        entries.sort(key=lambda entry: entry['timestamp'], reverse=True)
        return entries
