"""System log model for tracking fine and payment activity.

Scheduled sweeps, reconciliation corrections and manual fine adjustments are
written here so admins can review them next to the payment statistics.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from library_fines.models.database import get_db


class SystemLog:
    """Persistent activity log.

    This class provides static methods for adding and retrieving
    log entries. No instances are created.
    """

    @staticmethod
    def add(action: str, details: str, log_type: str = 'info',
            user_id: Optional[str] = None, commit: bool = True) -> str:
        """Add a new system log entry.

        Args:
            action: The action being logged.
            details: Detailed description of the action.
            log_type: Log level ('info', 'warning', 'error', 'admin', 'system').
            user_id: ID of user who performed the action (optional).
            commit: Commit immediately; pass False to join the caller's transaction.

        Returns:
            The ID of the created log entry.
        """
        db = get_db()
        log_id = str(uuid.uuid4())
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

        db.execute('''
            INSERT INTO system_logs (id, timestamp, action, details, log_type, user_id)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (log_id, timestamp, action, details, log_type, user_id))
        if commit:
            db.commit()
        return log_id

    @staticmethod
    def get_recent(limit: int = 50, log_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get recent log entries, optionally of one type."""
        db = get_db()
        if log_type:
            logs = db.execute('''
                SELECT * FROM system_logs WHERE log_type = ?
                ORDER BY timestamp DESC LIMIT ?
            ''', (log_type, limit)).fetchall()
        else:
            logs = db.execute('''
                SELECT * FROM system_logs ORDER BY timestamp DESC LIMIT ?
            ''', (limit,)).fetchall()
        return [dict(log) for log in logs]
