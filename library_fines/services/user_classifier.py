"""Fine-policy classification and borrowing history of a user.

Read-only: lookups never raise for unknown users, they fall back to the
Standard classification and an empty history.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from library_fines.config.config import Config
from library_fines.models.borrow import Borrow
from library_fines.models.user import User

logger = logging.getLogger(__name__)


class UserClassification(Enum):
    STANDARD = 'standard'
    STUDENT = 'student'
    FACULTY = 'faculty'
    ADMIN = 'admin'

    @classmethod
    def parse(cls, value) -> Optional['UserClassification']:
        if isinstance(value, cls):
            return value
        if not value:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


@dataclass
class BorrowingHistory:
    total_borrows: int = 0
    on_time_returns: int = 0
    late_returns: int = 0
    currently_overdue: int = 0
    total_fines: float = 0.0
    average_return_delay: float = 0.0
    reliability_score: float = 100.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class UserClassifier:
    """Derives classification and history from the user and borrow stores."""

    def __init__(self, user_store=User, borrow_store=Borrow, config=Config):
        self.user_store = user_store
        self.borrow_store = borrow_store
        self.config = config

    def _is_academic_email(self, user) -> bool:
        domain = getattr(user, 'email_domain', '')
        return bool(domain) and any(
            domain.endswith(suffix) for suffix in self.config.ACADEMIC_EMAIL_SUFFIXES
        )

    def classify(self, user_id: str) -> UserClassification:
        """Return the user's fine classification, Standard when unknown."""
        if not user_id:
            return UserClassification.STANDARD
        try:
            user = self.user_store.get_by_id(user_id)
        except Exception as e:
            logger.warning(f"Could not load user {user_id} for classification: {e}")
            return UserClassification.STANDARD
        if not user:
            return UserClassification.STANDARD

        explicit = UserClassification.parse(getattr(user, 'classification', None))
        if explicit:
            return explicit
        if user.is_admin():
            return UserClassification.ADMIN
        if self._is_academic_email(user):
            return UserClassification.STUDENT
        return UserClassification.STANDARD

    def borrowing_history(self, user_id: str, now: Optional[datetime] = None) -> BorrowingHistory:
        """Summarize the user's most recent borrows."""
        if not user_id:
            return BorrowingHistory()
        try:
            borrows = self.borrow_store.get_user_borrows(
                user_id, limit=self.config.HISTORY_WINDOW
            )
        except Exception as e:
            logger.warning(f"Could not load borrow history for {user_id}: {e}")
            return BorrowingHistory()

        now = now or datetime.now()
        history = BorrowingHistory(total_borrows=len(borrows))
        delays = []

        for borrow in borrows:
            history.total_fines += borrow.fine
            due = borrow.due_at
            returned = borrow.returned_at
            if returned is not None:
                if due is None or returned.date() <= due.date():
                    history.on_time_returns += 1
                    delays.append(0)
                else:
                    history.late_returns += 1
                    delays.append((returned.date() - due.date()).days)
            elif due is not None and due < now:
                history.currently_overdue += 1

        history.total_fines = round(history.total_fines, 2)
        if delays:
            history.average_return_delay = round(sum(delays) / len(delays), 2)
        if history.total_borrows:
            history.reliability_score = round(
                history.on_time_returns / history.total_borrows * 100, 2
            )
        return history

    def has_excellent_history(self, user_id: str) -> bool:
        history = self.borrowing_history(user_id)
        return (history.reliability_score >= self.config.EXCELLENT_RELIABILITY_SCORE
                and history.total_borrows >= self.config.EXCELLENT_MIN_BORROWS)

    def is_first_time_borrower(self, user_id: str) -> bool:
        return self.borrowing_history(user_id).total_borrows <= 1
