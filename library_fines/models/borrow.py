"""Borrow record model.

A borrow record is one loan of one book copy to one user. Besides the loan
dates it carries the fine owed, the append-only fine audit trail, the payment
history and the state of the payment currently in flight.
"""
import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from library_fines.models.database import get_db
from library_fines.utils.dates import now_str, parse_datetime, to_db
from library_fines.utils.errors import StaleRecordError

PAYMENT_NONE = 'none'
PAYMENT_PENDING = 'pending'
PAYMENT_COMPLETED = 'completed'
PAYMENT_STATUSES = (PAYMENT_NONE, PAYMENT_PENDING, PAYMENT_COMPLETED)


def _load_json_list(value) -> List[Dict[str, Any]]:
    if isinstance(value, list):
        return value
    if not value:
        return []
    try:
        loaded = json.loads(value)
    except (TypeError, ValueError):
        return []
    return loaded if isinstance(loaded, list) else []


class Borrow:
    def __init__(self, id, user_id, book_id, borrow_date, due_date=None,
                 return_date=None, fine=0.0, fine_audit_trail='[]',
                 payments='[]', payment_status=PAYMENT_NONE,
                 gateway_order_id=None, gateway_payment_id=None,
                 name='', email='', notified=0, last_notified_at=None,
                 version=0):
        self.id = id
        self.user_id = user_id
        self.book_id = book_id
        self.name = name
        self.email = email
        self.borrow_date = borrow_date
        self.due_date = due_date
        self.return_date = return_date
        self.fine = float(fine) if fine else 0.0
        self.fine_audit_trail = _load_json_list(fine_audit_trail)
        self.payments = _load_json_list(payments)
        self.payment_status = payment_status or PAYMENT_NONE
        self.gateway_order_id = gateway_order_id
        self.gateway_payment_id = gateway_payment_id
        self.notified = bool(notified)
        self.last_notified_at = last_notified_at
        self.version = int(version or 0)

    # ---------- Convenience properties ----------
    @property
    def is_returned(self) -> bool:
        return self.return_date is not None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PAYMENT_COMPLETED

    @property
    def due_at(self) -> Optional[datetime]:
        return parse_datetime(self.due_date)

    @property
    def returned_at(self) -> Optional[datetime]:
        return parse_datetime(self.return_date)

    def find_payment(self, gateway_payment_id: str) -> Optional[Dict[str, Any]]:
        """Return the payment history entry for a gateway payment id."""
        for payment in self.payments:
            if payment.get('gateway_payment_id') == gateway_payment_id:
                return payment
        return None

    # ==================== QUERIES ====================

    @staticmethod
    def get_by_id(borrow_id):
        """Get borrow by ID"""
        db = get_db()
        row = db.execute('SELECT * FROM borrows WHERE id = ?', (borrow_id,)).fetchone()
        if row:
            return Borrow(**dict(row))
        return None

    @staticmethod
    def get_by_gateway_order_id(gateway_order_id):
        """Get the borrow whose in-flight payment uses this gateway order."""
        db = get_db()
        row = db.execute(
            'SELECT * FROM borrows WHERE gateway_order_id = ?',
            (gateway_order_id,)
        ).fetchone()
        if row:
            return Borrow(**dict(row))
        return None

    @staticmethod
    def get_user_borrows(user_id, limit=None):
        """Get borrows for a user, most recent first."""
        db = get_db()
        query = 'SELECT * FROM borrows WHERE user_id = ? ORDER BY borrow_date DESC'
        params = (user_id,)
        if limit:
            query += ' LIMIT ?'
            params = (user_id, int(limit))
        rows = db.execute(query, params).fetchall()
        return [Borrow(**dict(row)) for row in rows]

    @staticmethod
    def get_book_borrows(book_id):
        """Get all borrows of a book."""
        db = get_db()
        rows = db.execute(
            'SELECT * FROM borrows WHERE book_id = ? ORDER BY borrow_date DESC',
            (book_id,)
        ).fetchall()
        return [Borrow(**dict(row)) for row in rows]

    @staticmethod
    def get_overdue_borrows(user_id=None, now=None):
        """Get borrows that are past due and not yet returned."""
        db = get_db()
        now_value = to_db(now or datetime.now())

        if user_id:
            rows = db.execute(
                'SELECT * FROM borrows WHERE user_id = ? AND return_date IS NULL '
                'AND datetime(due_date) < datetime(?) ORDER BY due_date ASC',
                (user_id, now_value)
            ).fetchall()
        else:
            rows = db.execute(
                'SELECT * FROM borrows WHERE return_date IS NULL '
                'AND datetime(due_date) < datetime(?) ORDER BY due_date ASC',
                (now_value,)
            ).fetchall()

        return [Borrow(**dict(row)) for row in rows]

    @staticmethod
    def count_with_payments() -> Dict[str, int]:
        """Count borrows carrying payment history and the entries they hold."""
        db = get_db()
        rows = db.execute("SELECT payments FROM borrows WHERE payments != '[]'").fetchall()
        totals = [len(_load_json_list(row['payments'])) for row in rows]
        return {
            'total_borrows_with_payments': sum(1 for count in totals if count > 0),
            'total_payments': sum(totals),
        }

    # ==================== PERSISTENCE ====================

    @staticmethod
    def create(user_id, book_id, due_date, borrow_date=None, name='', email='',
               return_date=None, fine=0.0):
        """Create a new borrow record with no fine and no payment."""
        db = get_db()
        borrow_id = str(uuid.uuid4())
        db.execute('''
            INSERT INTO borrows (id, user_id, book_id, name, email, borrow_date,
                                 due_date, return_date, fine, payment_status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (borrow_id, user_id, book_id, name, email,
              to_db(borrow_date) or now_str(), to_db(due_date),
              to_db(return_date), float(fine), PAYMENT_NONE))
        db.commit()
        return Borrow.get_by_id(borrow_id)

    def save(self, commit: bool = True) -> None:
        """Write the mutable fields back using a version check.

        Raises:
            StaleRecordError: another writer updated the row since it was read.
            ValueError: the fine is negative or a returned record was reopened.
        """
        if self.fine < 0:
            raise ValueError('Fine cannot be negative')

        db = get_db()
        current = db.execute(
            'SELECT return_date FROM borrows WHERE id = ?', (self.id,)
        ).fetchone()
        if current is not None and current['return_date'] and not self.return_date:
            raise ValueError('Return date cannot be cleared once set')

        cursor = db.execute('''
            UPDATE borrows
               SET return_date = ?, fine = ?, fine_audit_trail = ?, payments = ?,
                   payment_status = ?, gateway_order_id = ?, gateway_payment_id = ?,
                   notified = ?, last_notified_at = ?, version = version + 1
             WHERE id = ? AND version = ?
        ''', (to_db(self.return_date), round(self.fine, 2),
              json.dumps(self.fine_audit_trail), json.dumps(self.payments),
              self.payment_status, self.gateway_order_id, self.gateway_payment_id,
              int(self.notified), self.last_notified_at, self.id, self.version))

        if cursor.rowcount == 0:
            raise StaleRecordError('borrows', self.id)

        self.version += 1
        if commit:
            db.commit()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'book_id': self.book_id,
            'name': self.name,
            'email': self.email,
            'borrow_date': self.borrow_date,
            'due_date': self.due_date,
            'return_date': self.return_date,
            'fine': round(self.fine, 2),
            'payment_status': self.payment_status,
            'gateway_order_id': self.gateway_order_id,
            'gateway_payment_id': self.gateway_payment_id,
            'payments': list(self.payments),
            'fine_audit_trail': list(self.fine_audit_trail),
        }

    # ==================== FINE AGGREGATES ====================

    @staticmethod
    def sum_fines_between(user_id, start: datetime, end: datetime, exclude_id=None) -> float:
        """Sum fines returned inside [start, end) plus fines still accruing."""
        db = get_db()
        row = db.execute('''
            SELECT COALESCE(SUM(fine), 0) AS total FROM borrows
             WHERE user_id = ? AND id != ? AND fine > 0
               AND (return_date IS NULL
                    OR (datetime(return_date) >= datetime(?) AND datetime(return_date) < datetime(?)))
        ''', (user_id, exclude_id or '', to_db(start), to_db(end))).fetchone()
        return float(row['total'])

    @staticmethod
    def sum_outstanding_fines(user_id, exclude_id=None) -> float:
        """Sum fines on the user's borrows that have not been paid."""
        db = get_db()
        row = db.execute('''
            SELECT COALESCE(SUM(fine), 0) AS total FROM borrows
             WHERE user_id = ? AND id != ? AND payment_status != ?
        ''', (user_id, exclude_id or '', PAYMENT_COMPLETED)).fetchone()
        return float(row['total'])
