"""Payment order model.

One row per gateway order attempt, kept apart from the borrow record so that
several attempts for the same fine can be tracked and reconciled.
"""
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from library_fines.models.database import get_db
from library_fines.utils.dates import now_str, to_db
from library_fines.utils.errors import StaleRecordError

CREATED = 'created'
ATTEMPTED = 'attempted'
PAID = 'paid'
FAILED = 'failed'
ABANDONED = 'abandoned'
ORDER_STATUSES = (CREATED, ATTEMPTED, PAID, FAILED, ABANDONED)

# failed -> paid is only taken when the gateway reports a capture.
ALLOWED_TRANSITIONS = {
    CREATED: {ATTEMPTED, PAID, FAILED, ABANDONED},
    ATTEMPTED: {PAID, FAILED, ABANDONED},
    FAILED: {PAID},
    PAID: set(),
    ABANDONED: set(),
}


class DuplicateOrderError(Exception):
    """Raised when a gateway order id is already stored."""


class InvalidTransitionError(Exception):
    """Raised when a status change would move an order backwards."""


class PaymentOrder:
    def __init__(self, id, borrow_id, user_id, gateway_order_id, amount,
                 currency='INR', status=CREATED, created_at=None,
                 updated_at=None, expires_at=None, version=0):
        self.id = id
        self.borrow_id = borrow_id
        self.user_id = user_id
        self.gateway_order_id = gateway_order_id
        self.amount = float(amount)
        self.currency = currency
        self.status = status
        self.created_at = created_at
        self.updated_at = updated_at
        self.expires_at = expires_at
        self.version = int(version or 0)

    @staticmethod
    def can_transition(old_status: str, new_status: str) -> bool:
        return new_status in ALLOWED_TRANSITIONS.get(old_status, set())

    # ==================== QUERIES ====================

    @staticmethod
    def get_by_id(order_id):
        db = get_db()
        row = db.execute('SELECT * FROM payment_orders WHERE id = ?', (order_id,)).fetchone()
        return PaymentOrder(**dict(row)) if row else None

    @staticmethod
    def get_by_gateway_order_id(gateway_order_id):
        db = get_db()
        row = db.execute(
            'SELECT * FROM payment_orders WHERE gateway_order_id = ?',
            (gateway_order_id,)
        ).fetchone()
        return PaymentOrder(**dict(row)) if row else None

    @staticmethod
    def get_for_borrow(borrow_id) -> List['PaymentOrder']:
        db = get_db()
        rows = db.execute(
            'SELECT * FROM payment_orders WHERE borrow_id = ? ORDER BY created_at ASC',
            (borrow_id,)
        ).fetchall()
        return [PaymentOrder(**dict(row)) for row in rows]

    @staticmethod
    def get_created_since(since: datetime, statuses) -> List['PaymentOrder']:
        """Get orders created at or after `since` with one of the statuses."""
        db = get_db()
        placeholders = ', '.join('?' for _ in statuses)
        rows = db.execute(
            f'SELECT * FROM payment_orders WHERE created_at >= ? '
            f'AND status IN ({placeholders}) ORDER BY created_at ASC',
            (to_db(since), *statuses)
        ).fetchall()
        return [PaymentOrder(**dict(row)) for row in rows]

    @staticmethod
    def count_by_status() -> Dict[str, int]:
        db = get_db()
        rows = db.execute(
            'SELECT status, COUNT(*) AS count FROM payment_orders GROUP BY status'
        ).fetchall()
        return {row['status']: row['count'] for row in rows}

    # ==================== PERSISTENCE ====================

    @staticmethod
    def create(borrow_id, user_id, gateway_order_id, amount, currency='INR',
               expires_at=None, created_at=None, commit=True) -> 'PaymentOrder':
        """Insert a new order in `created` status.

        Raises:
            DuplicateOrderError: the gateway order id is already stored.
        """
        db = get_db()
        order_id = str(uuid.uuid4())
        now = to_db(created_at) if created_at else now_str()
        try:
            db.execute('''
                INSERT INTO payment_orders (id, borrow_id, user_id, gateway_order_id,
                                            amount, currency, status, created_at,
                                            updated_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (order_id, borrow_id, user_id, gateway_order_id, float(amount),
                  currency, CREATED, now, now, to_db(expires_at)))
        except sqlite3.IntegrityError as e:
            raise DuplicateOrderError(gateway_order_id) from e
        if commit:
            db.commit()
        return PaymentOrder.get_by_id(order_id)

    def transition(self, new_status: str, commit: bool = True) -> None:
        """Move the order to `new_status` with a version check.

        Raises:
            InvalidTransitionError: the move is not allowed from the current status.
            StaleRecordError: the row changed since it was read.
        """
        if new_status == self.status:
            return
        if not self.can_transition(self.status, new_status):
            raise InvalidTransitionError(
                f'Cannot move payment order {self.gateway_order_id} '
                f'from {self.status} to {new_status}'
            )

        db = get_db()
        updated_at = now_str()
        cursor = db.execute('''
            UPDATE payment_orders
               SET status = ?, updated_at = ?, version = version + 1
             WHERE id = ? AND version = ?
        ''', (new_status, updated_at, self.id, self.version))
        if cursor.rowcount == 0:
            raise StaleRecordError('payment_orders', self.id)

        self.status = new_status
        self.updated_at = updated_at
        self.version += 1
        if commit:
            db.commit()

    @staticmethod
    def mark_abandoned_before(cutoff: datetime, now: Optional[datetime] = None) -> int:
        """Mark `created` orders older than the cutoff as abandoned."""
        db = get_db()
        cursor = db.execute('''
            UPDATE payment_orders
               SET status = ?, updated_at = ?, version = version + 1
             WHERE status = ? AND created_at < ?
        ''', (ABANDONED, to_db(now) if now else now_str(), CREATED, to_db(cutoff)))
        db.commit()
        return cursor.rowcount

    @staticmethod
    def delete_abandoned_before(cutoff: datetime) -> int:
        """Delete abandoned orders whose last update is older than the cutoff."""
        db = get_db()
        cursor = db.execute(
            'DELETE FROM payment_orders WHERE status = ? AND updated_at < ?',
            (ABANDONED, to_db(cutoff))
        )
        db.commit()
        return cursor.rowcount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'borrow_id': self.borrow_id,
            'user_id': self.user_id,
            'gateway_order_id': self.gateway_order_id,
            'amount': round(self.amount, 2),
            'currency': self.currency,
            'status': self.status,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'expires_at': self.expires_at,
        }
