"""Authentication and authorization decorators.

Routes in this package answer with JSON, so an anonymous or unauthorized
caller gets a 401/403 error body instead of a redirect.
"""
from functools import wraps
from typing import Callable, Tuple

from flask import g, session
from werkzeug.exceptions import Unauthorized

from library_fines.models.user import User
from library_fines.utils.errors import Forbidden


def _load_user() -> User:
    if 'user_id' not in session:
        raise Unauthorized('Please login to access this resource')
    user = User.get_by_id(session['user_id'])
    if not user:
        session.clear()
        raise Unauthorized('User not found. Please login again.')
    g.user = user
    return user


def login_required(f: Callable) -> Callable:
    """Decorator to require a logged in user; sets `g.user`.

    Example:
        @payment_bp.route('/create-order', methods=['POST'])
        @login_required
        def create_order():
            ...
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        _load_user()
        return f(*args, **kwargs)
    return decorated_function


def role_required(*roles: Tuple[str]) -> Callable:
    """Decorator to require specific user roles for a route.

    Admin users always have access. Other users must have one of the
    specified roles.
    """
    def decorator(f: Callable) -> Callable:
        @wraps(f)
        def decorated_function(*args, **kwargs):
            user = _load_user()

            # Admin users have access to all routes
            if user.is_admin() or user.role in roles:
                return f(*args, **kwargs)

            raise Forbidden('You do not have permission to access this resource')

        return decorated_function
    return decorator
