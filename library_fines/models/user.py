"""User model module.

Read access to library members for fine classification. Account management
and authentication are handled by the auth module.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from library_fines.models.database import get_db


class User:
    def __init__(self, id, email, name, role='user', classification=None,
                 member_since=None, **kwargs):
        self.id = id
        self.email = email
        self.name = name
        self.role = role
        self.classification = classification
        self.member_since = member_since

    def is_admin(self) -> bool:
        return self.role == 'admin'

    @property
    def email_domain(self) -> str:
        if not self.email or '@' not in self.email:
            return ''
        return self.email.rsplit('@', 1)[1].lower()

    @staticmethod
    def get_by_id(user_id: str) -> Optional['User']:
        """Get user by ID."""
        db = get_db()
        row = db.execute('SELECT * FROM users WHERE id = ?', (user_id,)).fetchone()
        if not row:
            return None
        return User(**dict(row))

    @staticmethod
    def get_by_email(email: str) -> Optional['User']:
        """Get user by email."""
        db = get_db()
        row = db.execute('SELECT * FROM users WHERE email = ?', (email,)).fetchone()
        if not row:
            return None
        return User(**dict(row))

    @staticmethod
    def create(email: str, name: str, role: str = 'user',
               classification: Optional[str] = None) -> Optional['User']:
        """Create new user."""
        if User.get_by_email(email):
            return None

        user_id = str(uuid.uuid4())
        member_since = datetime.now().strftime('%Y-%m-%d')

        db = get_db()
        db.execute('''
            INSERT INTO users (id, email, name, role, classification, member_since)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (user_id, email, name, role, classification, member_since))
        db.commit()
        return User.get_by_id(user_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'email': self.email,
            'name': self.name,
            'role': self.role,
            'classification': self.classification,
            'member_since': self.member_since,
        }
