from datetime import datetime

import pytest

from library_fines.models.borrow import PAYMENT_COMPLETED, PAYMENT_NONE, PAYMENT_PENDING, Borrow
from library_fines.models.payment_order import ATTEMPTED, CREATED, FAILED, PaymentOrder
from tests.conftest import KEY_ID, sign


@pytest.fixture
def reader(make_user):
    return make_user(email='reader@example.com')


@pytest.fixture
def admin(make_user):
    return make_user(email='admin@example.com', role='admin')


@pytest.fixture
def fined_borrow(reader, make_borrow):
    return make_borrow(reader, datetime(2024, 1, 1), return_date=datetime(2024, 1, 11), fine=4.5)


def create_order(client, borrow_id, amount=4.5):
    return client.post('/api/payments/create-order', json={'borrow_id': borrow_id, 'amount': amount})


def test_payment_routes_require_login(client, fined_borrow):
    response = create_order(client, fined_borrow.id)

    assert response.status_code == 401
    assert response.get_json()['success'] is False


def test_checkout_flow(client, login, reader, fined_borrow, metrics):
    login(reader)

    created = create_order(client, fined_borrow.id)
    assert created.status_code == 200
    body = created.get_json()
    assert body['key_id'] == KEY_ID
    assert body['order']['amount'] == 4.5
    assert body['borrow_record']['formatted_fine'] == '₹4.50'
    order_id = body['order']['id']

    verified = client.post('/api/payments/verify', json={
        'order_id': order_id, 'payment_id': 'pay_1', 'signature': sign(order_id, 'pay_1'),
    })
    assert verified.status_code == 200
    assert verified.get_json()['message'] == 'Payment verified successfully'
    assert verified.get_json()['payment']['amount'] == 4.5

    replay = client.post('/api/payments/verify', json={
        'order_id': order_id, 'payment_id': 'pay_1', 'signature': sign(order_id, 'pay_1'),
    })
    assert replay.get_json()['message'] == 'Payment already processed'

    assert Borrow.get_by_id(fined_borrow.id).payment_status == PAYMENT_COMPLETED
    assert metrics.snapshot()['total_success'] == 3
    assert metrics.snapshot()['total_failures'] == 0


def test_verify_with_bad_signature(client, login, reader, fined_borrow):
    login(reader)
    order_id = create_order(client, fined_borrow.id).get_json()['order']['id']

    response = client.post('/api/payments/verify', json={
        'order_id': order_id, 'payment_id': 'pay_1', 'signature': 'f' * 64,
    })

    assert response.status_code == 400
    assert response.get_json() == {'success': False, 'message': 'Payment verification failed'}


def test_amount_mismatch_is_rejected(client, login, reader, fined_borrow):
    login(reader)

    response = create_order(client, fined_borrow.id, amount=3.0)

    assert response.status_code == 400
    assert 'does not match outstanding fine' in response.get_json()['message']


def test_cannot_pay_another_users_fine(client, login, make_user, fined_borrow):
    login(make_user(email='other@example.com'))

    response = create_order(client, fined_borrow.id)

    assert response.status_code == 403


def test_non_json_body_is_rejected(client, login, reader):
    login(reader)

    response = client.post('/api/payments/verify', data='not json', content_type='text/plain')

    assert response.status_code == 400


def test_attempt_and_failure(client, login, reader, fined_borrow):
    login(reader)
    order_id = create_order(client, fined_borrow.id).get_json()['order']['id']

    attempted = client.post('/api/payments/attempt', json={'order_id': order_id})
    assert attempted.get_json()['status'] == ATTEMPTED

    failed = client.post('/api/payments/failure', json={'order_id': order_id, 'reason': 'Card declined'})
    assert failed.status_code == 200
    assert failed.get_json()['status'] == FAILED
    assert Borrow.get_by_id(fined_borrow.id).payment_status == PAYMENT_NONE
    assert PaymentOrder.get_by_gateway_order_id(order_id).status == FAILED


def test_attempt_requires_order_id(client, login, reader):
    login(reader)

    assert client.post('/api/payments/attempt', json={}).status_code == 400


@pytest.mark.parametrize('path', ['/api/payments/attempt', '/api/payments/failure'])
def test_other_users_cannot_touch_an_order(client, login, reader, make_user, fined_borrow, path):
    login(reader)
    order_id = create_order(client, fined_borrow.id).get_json()['order']['id']
    login(make_user(email='intruder@example.com'))

    response = client.post(path, json={'order_id': order_id})

    assert response.status_code == 403
    assert PaymentOrder.get_by_gateway_order_id(order_id).status == CREATED
    assert Borrow.get_by_id(fined_borrow.id).payment_status == PAYMENT_PENDING


def test_order_status(client, login, reader, admin, make_user, fined_borrow):
    login(reader)
    order_id = create_order(client, fined_borrow.id).get_json()['order']['id']

    own = client.get(f'/api/payments/order/{order_id}')
    assert own.status_code == 200
    assert own.get_json()['order']['status'] == CREATED

    login(admin)
    assert client.get(f'/api/payments/order/{order_id}').status_code == 200

    login(make_user(email='curious@example.com'))
    assert client.get(f'/api/payments/order/{order_id}').status_code == 403
    assert client.get('/api/payments/order/order_missing').status_code == 404


def test_get_fine(client, login, reader, fined_borrow):
    login(reader)

    response = client.get(f'/api/payments/fine/{fined_borrow.id}')

    body = response.get_json()
    assert response.status_code == 200
    assert body['recorded_fine'] == 4.5
    assert body['payment_status'] == PAYMENT_NONE
    assert body['fine']['total_fine'] >= 0


def test_get_fine_of_other_user_is_forbidden(client, login, make_user, fined_borrow):
    login(make_user(email='nosy@example.com'))

    assert client.get(f'/api/payments/fine/{fined_borrow.id}').status_code == 403


def test_get_fine_missing_borrow(client, login, reader):
    login(reader)

    assert client.get('/api/payments/fine/missing').status_code == 404


@pytest.mark.parametrize('method, path', [
    ('get', '/api/admin/fines/audit-trail/x'),
    ('post', '/api/admin/fines/adjust/x'),
    ('post', '/api/admin/fines/bulk-calculate'),
    ('post', '/api/admin/payments/reconcile/x'),
    ('get', '/api/admin/payments/stats'),
    ('get', '/api/admin/payments/metrics'),
])
def test_admin_routes_reject_regular_users(client, login, reader, method, path):
    login(reader)

    response = getattr(client, method)(path)

    assert response.status_code == 403


def test_admin_adjusts_fine(client, login, admin, fined_borrow):
    login(admin)

    response = client.post(f'/api/admin/fines/adjust/{fined_borrow.id}', json={
        'new_fine': 1.5, 'reason': 'Book returned during closure',
    })

    assert response.status_code == 200
    assert response.get_json()['audit_entry']['adjustment'] == -3.0
    trail = client.get(f'/api/admin/fines/audit-trail/{fined_borrow.id}').get_json()
    assert trail['current_fine'] == 1.5
    assert len(trail['audit_trail']) == 1

    user_trail = client.get(f'/api/admin/fines/user-audit-trail/{fined_borrow.user_id}').get_json()
    assert user_trail['total'] == 1


@pytest.mark.parametrize('payload', [
    {'new_fine': -1, 'reason': 'Correction'},
    {'new_fine': 1.0},
    {'reason': 'Correction'},
])
def test_admin_adjust_validation(client, login, admin, fined_borrow, payload):
    login(admin)

    response = client.post(f'/api/admin/fines/adjust/{fined_borrow.id}', json=payload)

    assert response.status_code == 400
    assert Borrow.get_by_id(fined_borrow.id).fine == 4.5


def test_admin_settles_verified_payment(client, login, reader, admin, fined_borrow):
    login(reader)
    order_id = create_order(client, fined_borrow.id).get_json()['order']['id']
    client.post('/api/payments/verify', json={
        'order_id': order_id, 'payment_id': 'pay_1', 'signature': sign(order_id, 'pay_1'),
    })

    login(admin)
    response = client.post(f'/api/admin/fines/settle/{fined_borrow.id}', json={'payment_id': 'pay_1'})

    assert response.status_code == 200
    assert response.get_json()['new_fine'] == 0.0
    assert Borrow.get_by_id(fined_borrow.id).fine == 0.0


def test_bulk_calculate(client, login, admin, fined_borrow):
    login(admin)

    response = client.post('/api/admin/fines/bulk-calculate', json={
        'borrow_ids': [fined_borrow.id, 'missing'], 'parallel': False,
    })

    body = response.get_json()
    assert response.status_code == 200
    assert body['total'] == 2
    assert body['parallel'] is False


def test_bulk_calculate_requires_ids(client, login, admin):
    login(admin)

    response = client.post('/api/admin/fines/bulk-calculate', json={'borrow_ids': []})

    assert response.status_code == 400


def test_reconcile_borrow_route(client, login, admin, razorpay_client, services, fined_borrow):
    order_id = services.payments.create_order(fined_borrow.id, 4.5, fined_borrow.user_id)['order']['id']
    razorpay_client.order.payments.return_value = {'items': [
        {'id': 'pay_1', 'order_id': order_id, 'amount': 450, 'currency': 'INR',
         'status': 'captured', 'captured': True, 'created_at': 1704067200},
    ]}
    login(admin)

    response = client.post(f'/api/admin/payments/reconcile/{fined_borrow.id}')

    assert response.status_code == 200
    assert response.get_json()['report']['reconciled'] == 1
    assert Borrow.get_by_id(fined_borrow.id).fine == 0.0


def test_reconcile_unknown_borrow_route(client, login, admin):
    login(admin)

    assert client.post('/api/admin/payments/reconcile/missing').status_code == 404


@pytest.mark.parametrize('hours', [0, -3, 'soon'])
def test_reconcile_all_validates_hours(client, login, admin, hours):
    login(admin)

    response = client.post('/api/admin/payments/reconcile-all', json={'hours': hours})

    assert response.status_code == 400


def test_reconcile_all_route(client, login, admin):
    login(admin)

    response = client.post('/api/admin/payments/reconcile-all', json={'hours': 12})

    summary = response.get_json()['summary']
    assert summary['hours'] == 12
    assert summary['borrows_processed'] == 0


def test_stats_and_metrics(client, login, admin, reader, fined_borrow):
    login(reader)
    create_order(client, fined_borrow.id)
    login(admin)

    stats = client.get('/api/admin/payments/stats').get_json()
    assert stats['orders']['created'] == 1
    assert stats['stats']['total_orders'] == 1

    metrics = client.get('/api/admin/payments/metrics').get_json()['metrics']
    assert metrics['total_attempts'] == 1
