"""
Models package

    Borrow        - loan record carrying fine, audit trail and payment state (borrow.py)
    PaymentOrder  - one gateway order attempt for a fine (payment_order.py)
    FineAuditEntry - immutable manual fine adjustment (fine_audit.py)
    User, Book    - read-only collaborators used for classification and rates
"""
from library_fines.models.book import Book
from library_fines.models.borrow import Borrow
from library_fines.models.database import close_db, get_db, init_db
from library_fines.models.fine_audit import FineAuditEntry
from library_fines.models.payment_order import PaymentOrder
from library_fines.models.system_config import SystemConfig
from library_fines.models.system_log import SystemLog
from library_fines.models.user import User

__all__ = [
    'Book', 'Borrow', 'FineAuditEntry', 'PaymentOrder',
    'SystemConfig', 'SystemLog', 'User',
    'init_db', 'get_db', 'close_db'
]
