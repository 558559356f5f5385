import hashlib
import hmac
import itertools
from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from library_fines.app import create_app
from library_fines.config.config import TestConfig
from library_fines.models.book import Book
from library_fines.models.borrow import Borrow
from library_fines.models.user import User
from library_fines.services.metrics import PaymentMetrics
from library_fines.services.payment_gateway import RazorpayGateway

KEY_ID = TestConfig.GATEWAY_KEY_ID
KEY_SECRET = TestConfig.GATEWAY_KEY_SECRET


def sign(order_id, payment_id, secret=KEY_SECRET):
    """Signature the checkout widget would hand back for a genuine payment."""
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


@pytest.fixture
def config(tmp_path):
    class Config(TestConfig):
        DATABASE_PATH = str(tmp_path / 'library.db')
    return Config


@pytest.fixture
def razorpay_client():
    """Stand-in for `razorpay.Client`; tests set return values per call."""
    client = Mock()
    order_ids = itertools.count(1)
    client.order.create.side_effect = lambda data, timeout=None: {
        'id': f"order_test{next(order_ids):04d}",
        'amount': data['amount'],
        'currency': data['currency'],
        'receipt': data['receipt'],
        'status': 'created',
        'created_at': 1704067200,
    }
    client.order.payments.return_value = {'items': []}
    return client


@pytest.fixture
def gateway(razorpay_client):
    return RazorpayGateway(KEY_ID, KEY_SECRET, timeout=30, client=razorpay_client)


@pytest.fixture
def metrics():
    return PaymentMetrics(alert_threshold=0.10)


@pytest.fixture
def app(config, gateway, metrics):
    app = create_app(config, gateway=gateway, metrics=metrics)
    with app.app_context():
        yield app


@pytest.fixture
def services(app):
    return app.extensions['library_fines']


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    counter = {'n': 0}

    def _make_user(email=None, role='user', classification=None, name='Test User'):
        counter['n'] += 1
        return User.create(email or f"user{counter['n']}@example.com", name,
                           role=role, classification=classification)
    return _make_user


@pytest.fixture
def make_book(app):
    def _make_book(category='standard', title='Test Book'):
        return Book.create(title, category=category)
    return _make_book


@pytest.fixture
def make_borrow(app, make_book):
    def _make_borrow(user, due_date, return_date=None, book=None, fine=0.0, borrow_date=None):
        book = book or make_book()
        due = due_date if isinstance(due_date, datetime) else datetime.fromisoformat(str(due_date))
        return Borrow.create(
            user.id, book.id, due,
            borrow_date=borrow_date or due - timedelta(days=14),
            return_date=return_date,
            fine=fine,
        )
    return _make_borrow


@pytest.fixture
def login(client):
    def _login(user):
        with client.session_transaction() as session:
            session['user_id'] = user.id
    return _login
