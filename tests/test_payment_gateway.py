import pytest
import requests
from razorpay.errors import BadRequestError, ServerError

from library_fines.services.payment_gateway import (PaymentGateway, RazorpayGateway,
                                                    from_minor_units, to_minor_units)
from library_fines.utils.errors import GatewayRejected, GatewayUnavailable
from tests.conftest import KEY_ID, sign


def test_minor_unit_conversion():
    assert to_minor_units(4.5) == 450
    assert to_minor_units(0.1 + 0.2) == 30
    assert from_minor_units(450) == 4.5
    assert from_minor_units(None) == 0.0


def test_create_order_sends_minor_units_with_timeout(gateway, razorpay_client):
    order = gateway.create_order(450, 'INR', 'fine_abc', notes={'borrow_id': 'b1'})

    razorpay_client.order.create.assert_called_once_with(
        data={
            'amount': 450,
            'currency': 'INR',
            'receipt': 'fine_abc',
            'payment_capture': 1,
            'notes': {'borrow_id': 'b1'},
        },
        timeout=30,
    )
    assert order['amount'] == 4.5
    assert order['amount_minor'] == 450
    assert order['currency'] == 'INR'


def test_create_order_rejects_non_positive_amount(gateway, razorpay_client):
    with pytest.raises(ValueError):
        gateway.create_order(0, 'INR', 'fine_abc')
    razorpay_client.order.create.assert_not_called()


def test_verify_signature_accepts_genuine_signature(gateway):
    assert gateway.verify_signature('order_1', 'pay_1', sign('order_1', 'pay_1')) is True


@pytest.mark.parametrize('position', [0, 17, 63])
def test_verify_signature_rejects_single_character_change(gateway, position):
    signature = sign('order_1', 'pay_1')
    replacement = '0' if signature[position] != '0' else '1'
    forged = signature[:position] + replacement + signature[position + 1:]

    assert gateway.verify_signature('order_1', 'pay_1', forged) is False


@pytest.mark.parametrize('order_id, payment_id, signature', [
    ('', 'pay_1', 'sig'),
    ('order_1', None, 'sig'),
    ('order_1', 'pay_1', ''),
])
def test_verify_signature_rejects_missing_fields(gateway, order_id, payment_id, signature):
    assert gateway.verify_signature(order_id, payment_id, signature) is False


def test_signature_from_other_secret_is_rejected(gateway):
    assert gateway.verify_signature('order_1', 'pay_1', sign('order_1', 'pay_1', 'other')) is False


def test_timeout_becomes_gateway_unavailable(gateway, razorpay_client):
    razorpay_client.order.create.side_effect = requests.exceptions.Timeout('read timed out')

    with pytest.raises(GatewayUnavailable):
        gateway.create_order(450, 'INR', 'fine_abc')


def test_gateway_5xx_becomes_gateway_unavailable(gateway, razorpay_client):
    razorpay_client.payment.fetch.side_effect = ServerError('internal error')

    with pytest.raises(GatewayUnavailable):
        gateway.fetch_payment('pay_1')


def test_gateway_bad_request_becomes_gateway_rejected(gateway, razorpay_client):
    razorpay_client.order.create.side_effect = BadRequestError('Currency is not supported')

    with pytest.raises(GatewayRejected):
        gateway.create_order(450, 'XYZ', 'fine_abc')


def test_fetch_payment_missing_returns_none(gateway, razorpay_client):
    razorpay_client.payment.fetch.side_effect = BadRequestError('The id provided does not exist')

    assert gateway.fetch_payment('pay_missing') is None


def test_fetch_payment_converts_amounts(gateway, razorpay_client):
    razorpay_client.payment.fetch.return_value = {
        'id': 'pay_1', 'order_id': 'order_1', 'amount': 450, 'currency': 'INR',
        'status': 'captured', 'captured': True, 'fee': 10, 'tax': 2,
    }

    payment = gateway.fetch_payment('pay_1')

    razorpay_client.payment.fetch.assert_called_once_with('pay_1', timeout=30)
    assert payment['amount'] == 4.5
    assert payment['fee'] == 0.1
    assert payment['captured'] is True


def test_fetch_order_payment_prefers_captured(gateway, razorpay_client):
    razorpay_client.order.payments.return_value = {'items': [
        {'id': 'pay_failed', 'status': 'failed', 'amount': 450, 'created_at': 20},
        {'id': 'pay_ok', 'status': 'captured', 'amount': 450, 'created_at': 10},
    ]}

    assert gateway.fetch_order_payment('order_1')['id'] == 'pay_ok'


def test_fetch_order_payment_falls_back_to_latest_attempt(gateway, razorpay_client):
    razorpay_client.order.payments.return_value = {'items': [
        {'id': 'pay_old', 'status': 'failed', 'amount': 450, 'created_at': 10},
        {'id': 'pay_new', 'status': 'authorized', 'amount': 450, 'created_at': 20},
    ]}

    assert gateway.fetch_order_payment('order_1')['id'] == 'pay_new'


def test_fetch_order_payment_without_attempts_is_none(gateway, razorpay_client):
    razorpay_client.order.payments.return_value = {'items': []}

    assert gateway.fetch_order_payment('order_1') is None


def test_refund_payment_passes_minor_units(gateway, razorpay_client):
    razorpay_client.payment.refund.return_value = {
        'id': 'rfnd_1', 'payment_id': 'pay_1', 'amount': 200, 'currency': 'INR', 'status': 'processed',
    }

    refund = gateway.refund_payment('pay_1', amount=2.0)

    razorpay_client.payment.refund.assert_called_once_with(
        'pay_1', {'notes': {}, 'amount': 200}, timeout=30
    )
    assert refund['amount'] == 2.0


def test_from_config_reads_credentials(config, mocker):
    client_cls = mocker.patch('library_fines.services.payment_gateway.razorpay.Client')

    gateway = RazorpayGateway.from_config(config)

    client_cls.assert_called_once_with(auth=(KEY_ID, config.GATEWAY_KEY_SECRET))
    assert gateway.key_id == KEY_ID
    assert gateway.timeout == 30


def test_incomplete_adapter_cannot_be_created():
    class SignatureOnlyGateway(PaymentGateway):
        def expected_signature(self, order_id, payment_id):
            return 'sig'

    with pytest.raises(TypeError):
        SignatureOnlyGateway()
