from datetime import datetime

import pytest
from razorpay.errors import ServerError

from library_fines.models.borrow import PAYMENT_COMPLETED, Borrow
from library_fines.models.payment_order import ABANDONED, CREATED, PAID, PaymentOrder
from library_fines.models.system_log import SystemLog
from library_fines.services.reconciliation import (GATEWAY_ERROR, LOCAL_PAID_GATEWAY_DISAGREES,
                                                   NOT_FOUND_AT_GATEWAY, RECONCILIATION_ERROR)
from library_fines.utils.errors import NotFound
from tests.conftest import sign


@pytest.fixture
def reconciliation(services):
    return services.reconciliation


@pytest.fixture
def borrower(make_user):
    return make_user(email='borrower@example.com')


@pytest.fixture
def open_order(services, borrower, make_borrow):
    """A borrow with a 4.50 fine and a gateway order still in `created`."""
    borrow = make_borrow(borrower, datetime(2024, 1, 1), return_date=datetime(2024, 1, 11), fine=4.5)
    descriptor = services.payments.create_order(borrow.id, 4.5, borrower.id)
    return borrow, descriptor['order']['id']


def gateway_reports(razorpay_client, payments_by_order):
    razorpay_client.order.payments.side_effect = lambda order_id, timeout=None: {
        'items': payments_by_order.get(order_id, [])
    }


def captured(order_id, payment_id='pay_1', amount_minor=450):
    return [{'id': payment_id, 'order_id': order_id, 'amount': amount_minor, 'currency': 'INR',
             'status': 'captured', 'captured': True, 'created_at': 1704067200}]


def test_captured_payment_is_applied(reconciliation, razorpay_client, open_order):
    borrow, order_id = open_order
    gateway_reports(razorpay_client, {order_id: captured(order_id)})

    report = reconciliation.reconcile_borrow(borrow.id)

    assert report.reconciled == 1
    assert report.examined == 1
    assert report.discrepancies == []
    assert PaymentOrder.get_by_gateway_order_id(order_id).status == PAID

    updated = Borrow.get_by_id(borrow.id)
    assert updated.fine == 0.0
    assert updated.payment_status == PAYMENT_COMPLETED
    assert updated.gateway_order_id is None
    assert updated.payments[0]['source'] == 'reconciliation'
    assert updated.payments[0]['applied_to_fine'] is True
    assert any(log['action'] == 'Payment Reconciled' for log in SystemLog.get_recent())


def test_second_run_is_a_no_op(reconciliation, razorpay_client, open_order):
    borrow, order_id = open_order
    gateway_reports(razorpay_client, {order_id: captured(order_id)})

    reconciliation.reconcile_borrow(borrow.id)
    again = reconciliation.reconcile_borrow(borrow.id)

    assert again.reconciled == 0
    assert again.discrepancies == []
    updated = Borrow.get_by_id(borrow.id)
    assert updated.fine == 0.0
    assert len(updated.payments) == 1


def test_fine_decreases_by_exactly_the_captured_amount(reconciliation, razorpay_client, open_order):
    borrow, order_id = open_order
    record = Borrow.get_by_id(borrow.id)
    record.fine = 6.0
    record.save()
    gateway_reports(razorpay_client, {order_id: captured(order_id)})

    reconciliation.reconcile_borrow(borrow.id)

    assert Borrow.get_by_id(borrow.id).fine == 1.5


def test_fine_never_goes_negative(reconciliation, razorpay_client, open_order):
    borrow, order_id = open_order
    gateway_reports(razorpay_client, {order_id: captured(order_id, amount_minor=900)})

    reconciliation.reconcile_borrow(borrow.id)

    assert Borrow.get_by_id(borrow.id).fine == 0.0


def test_payment_missing_at_gateway_is_reported(reconciliation, razorpay_client, open_order):
    borrow, order_id = open_order
    gateway_reports(razorpay_client, {})

    report = reconciliation.reconcile_borrow(borrow.id)

    assert report.reconciled == 0
    assert [item['type'] for item in report.discrepancies] == [NOT_FOUND_AT_GATEWAY]
    assert PaymentOrder.get_by_gateway_order_id(order_id).status == CREATED


def test_uncaptured_payment_is_left_alone(reconciliation, razorpay_client, open_order):
    borrow, order_id = open_order
    attempt = captured(order_id)
    attempt[0]['status'] = 'authorized'
    gateway_reports(razorpay_client, {order_id: attempt})

    report = reconciliation.reconcile_borrow(borrow.id)

    assert report.reconciled == 0
    assert report.discrepancies == []
    assert Borrow.get_by_id(borrow.id).fine == 4.5


def test_local_paid_without_gateway_capture_is_reported_not_downgraded(
        services, reconciliation, razorpay_client, open_order):
    borrow, order_id = open_order
    services.payments.verify_payment(order_id, 'pay_1', sign(order_id, 'pay_1'))
    refunded = captured(order_id)
    refunded[0]['status'] = 'failed'
    gateway_reports(razorpay_client, {order_id: refunded})

    report = reconciliation.reconcile_borrow(borrow.id)

    assert [item['type'] for item in report.discrepancies] == [LOCAL_PAID_GATEWAY_DISAGREES]
    assert report.discrepancies[0]['gateway_status'] == 'failed'
    assert PaymentOrder.get_by_gateway_order_id(order_id).status == PAID
    assert Borrow.get_by_id(borrow.id).payment_status == PAYMENT_COMPLETED


def test_verified_payment_is_not_applied_twice(services, reconciliation, razorpay_client, open_order):
    borrow, order_id = open_order
    services.payments.verify_payment(order_id, 'pay_1', sign(order_id, 'pay_1'))
    gateway_reports(razorpay_client, {order_id: captured(order_id)})

    report = reconciliation.reconcile_borrow(borrow.id)

    assert report.reconciled == 0
    assert Borrow.get_by_id(borrow.id).fine == 4.5


def test_gateway_error_becomes_discrepancy(reconciliation, razorpay_client, open_order):
    borrow, order_id = open_order
    razorpay_client.order.payments.side_effect = ServerError('upstream unavailable')

    report = reconciliation.reconcile_borrow(borrow.id)

    assert [item['type'] for item in report.discrepancies] == [GATEWAY_ERROR]
    assert PaymentOrder.get_by_gateway_order_id(order_id).status == CREATED


def test_abandoned_orders_are_skipped(reconciliation, razorpay_client, open_order):
    borrow, order_id = open_order
    PaymentOrder.get_by_gateway_order_id(order_id).transition(ABANDONED)
    gateway_reports(razorpay_client, {order_id: captured(order_id)})

    report = reconciliation.reconcile_borrow(borrow.id)

    assert report.total_orders == 1
    assert report.examined == 0
    razorpay_client.order.payments.assert_not_called()


def test_reconcile_unknown_borrow(reconciliation):
    with pytest.raises(NotFound):
        reconciliation.reconcile_borrow('missing')


def test_reconcile_all_processes_every_recent_borrow(services, reconciliation, razorpay_client,
                                                     borrower, make_borrow):
    order_ids = []
    for _ in range(3):
        borrow = make_borrow(borrower, datetime(2024, 1, 1), fine=2.0)
        order_ids.append(services.payments.create_order(borrow.id, 2.0, borrower.id)['order']['id'])
    gateway_reports(razorpay_client, {
        order_ids[0]: captured(order_ids[0], 'pay_a', 200),
        order_ids[1]: captured(order_ids[1], 'pay_b', 200),
    })

    summary = reconciliation.reconcile_all(24)

    assert summary.borrows_processed == 3
    assert summary.total_orders == 3
    assert summary.reconciled == 2
    assert [item['type'] for item in summary.discrepancies] == [NOT_FOUND_AT_GATEWAY]
    assert summary.failures == 0


def test_reconcile_all_tolerates_item_failures(reconciliation, open_order, mocker):
    borrow, _ = open_order
    mocker.patch.object(reconciliation, 'reconcile_borrow', side_effect=RuntimeError('boom'))

    summary = reconciliation.reconcile_all()

    assert summary.failures == 1
    assert summary.discrepancies == [
        {'borrow_id': borrow.id, 'type': RECONCILIATION_ERROR, 'message': 'boom'}
    ]


def test_reconcile_all_ignores_orders_outside_window(reconciliation, open_order, razorpay_client):
    summary = reconciliation.reconcile_all(1, now=datetime(2099, 1, 1))

    assert summary.borrows_processed == 0
    razorpay_client.order.payments.assert_not_called()


def test_stats(services, reconciliation, open_order):
    borrow, order_id = open_order
    services.payments.verify_payment(order_id, 'pay_1', sign(order_id, 'pay_1'))

    stats = reconciliation.get_stats()

    assert stats['payment_orders'][PAID] == 1
    assert stats['payment_orders'][CREATED] == 0
    assert stats['total_orders'] == 1
    assert stats['total_borrows_with_payments'] == 1
    assert stats['total_payments'] == 1


def test_capture_of_replaced_order_abandons_the_newer_one(services, reconciliation, razorpay_client,
                                                          borrower, open_order):
    borrow, first = open_order
    services.payments.report_failure(first)
    second = services.payments.create_order(borrow.id, 4.5, borrower.id)['order']['id']
    gateway_reports(razorpay_client, {first: captured(first)})

    report = reconciliation.reconcile_borrow(borrow.id)

    assert report.reconciled == 1
    updated = Borrow.get_by_id(borrow.id)
    assert updated.payment_status == PAYMENT_COMPLETED
    assert updated.gateway_order_id is None
    assert updated.fine == 0.0
    assert PaymentOrder.get_by_gateway_order_id(first).status == PAID
    assert PaymentOrder.get_by_gateway_order_id(second).status == ABANDONED
