"""Payment gateway adapter.

`PaymentGateway` is the contract the payment services depend on;
`RazorpayGateway` implements it on top of the Razorpay SDK. Amounts cross
this boundary in minor currency units (paise) on the way out and come back
in major units.

Signatures are checked locally with the shared secret, never delegated to the
gateway.
"""
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import razorpay
import requests
from razorpay.errors import BadRequestError, GatewayError, ServerError

from library_fines.config.config import Config
from library_fines.utils.errors import GatewayRejected, GatewayUnavailable

logger = logging.getLogger(__name__)

STATUS_CAPTURED = 'captured'


def to_minor_units(amount: float) -> int:
    return int(round(float(amount) * 100))


def from_minor_units(amount: Optional[int]) -> float:
    return round((amount or 0) / 100, 2)


class PaymentGateway(ABC):
    """Interface of the external payment gateway."""

    key_id: str = ''

    @abstractmethod
    def create_order(self, amount_minor: int, currency: str, receipt: str,
                     notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Create an order for `amount_minor` and return it in major units."""

    @abstractmethod
    def fetch_payment(self, payment_id: str) -> Optional[Dict[str, Any]]:
        """Return the payment, or None when the gateway does not know it."""

    @abstractmethod
    def fetch_order_payment(self, order_id: str) -> Optional[Dict[str, Any]]:
        """Return the authoritative payment for an order, or None."""

    @abstractmethod
    def capture_payment(self, payment_id: str, amount: float, currency: str) -> Dict[str, Any]:
        """Capture an authorized payment."""

    @abstractmethod
    def refund_payment(self, payment_id: str, amount: Optional[float] = None,
                       notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Refund a payment in full or for `amount`."""

    @abstractmethod
    def fetch_refund(self, refund_id: str) -> Optional[Dict[str, Any]]:
        """Return the refund, or None when the gateway does not know it."""

    @abstractmethod
    def expected_signature(self, order_id: str, payment_id: str) -> str:
        """Signature a genuine checkout would carry for this order and payment."""

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Constant-time comparison of the supplied signature."""
        if not order_id or not payment_id or not signature:
            return False
        expected = self.expected_signature(order_id, payment_id)
        return hmac.compare_digest(expected.encode('utf-8'), str(signature).encode('utf-8'))


def _payment_view(payment: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'id': payment.get('id'),
        'order_id': payment.get('order_id'),
        'amount': from_minor_units(payment.get('amount')),
        'currency': payment.get('currency'),
        'status': payment.get('status'),
        'method': payment.get('method'),
        'captured': bool(payment.get('captured')),
        'created_at': payment.get('created_at'),
        'fee': from_minor_units(payment.get('fee')),
        'tax': from_minor_units(payment.get('tax')),
        'notes': payment.get('notes') or {},
    }


def _refund_view(refund: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'id': refund.get('id'),
        'payment_id': refund.get('payment_id'),
        'amount': from_minor_units(refund.get('amount')),
        'currency': refund.get('currency'),
        'status': refund.get('status'),
        'created_at': refund.get('created_at'),
        'notes': refund.get('notes') or {},
    }


def _is_not_found(error: BadRequestError) -> bool:
    return 'does not exist' in str(error).lower() or 'not found' in str(error).lower()


class RazorpayGateway(PaymentGateway):
    """Razorpay implementation of `PaymentGateway`."""

    def __init__(self, key_id: str, key_secret: str,
                 timeout: int = Config.GATEWAY_TIMEOUT_SECONDS, client=None):
        self.key_id = key_id
        self._key_secret = key_secret
        self.timeout = timeout
        self.client = client or razorpay.Client(auth=(key_id, key_secret))

    @classmethod
    def from_config(cls, config=Config) -> 'RazorpayGateway':
        return cls(config.GATEWAY_KEY_ID, config.GATEWAY_KEY_SECRET,
                   timeout=config.GATEWAY_TIMEOUT_SECONDS)

    def _call(self, operation: str, func, *args, allow_missing: bool = False, **kwargs):
        """Run an SDK call, translating gateway and transport failures.

        With `allow_missing`, a "does not exist" answer returns None.
        """
        try:
            return func(*args, timeout=self.timeout, **kwargs)
        except BadRequestError as e:
            if allow_missing and _is_not_found(e):
                return None
            logger.error(f"Gateway rejected {operation}: {e}")
            raise GatewayRejected() from e
        except (ServerError, GatewayError) as e:
            logger.error(f"Gateway error during {operation}: {e}")
            raise GatewayUnavailable() from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Gateway transport failure during {operation}: {e}")
            raise GatewayUnavailable() from e

    def create_order(self, amount_minor: int, currency: str, receipt: str,
                     notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        if not amount_minor or amount_minor <= 0:
            raise ValueError('Valid amount is required')

        data = {
            'amount': int(amount_minor),
            'currency': currency,
            'receipt': receipt,
            'payment_capture': 1,
            'notes': notes or {},
        }
        order = self._call('create_order', self.client.order.create, data=data)
        logger.info(f"Gateway order created: {order['id']} for "
                    f"{from_minor_units(order['amount']):.2f} {order['currency']}")
        return {
            'id': order['id'],
            'amount': from_minor_units(order['amount']),
            'amount_minor': order['amount'],
            'currency': order['currency'],
            'receipt': order.get('receipt'),
            'status': order.get('status'),
            'created_at': order.get('created_at'),
        }

    def fetch_payment(self, payment_id: str) -> Optional[Dict[str, Any]]:
        if not payment_id:
            raise ValueError('Payment ID is required')
        payment = self._call('fetch_payment', self.client.payment.fetch, payment_id,
                             allow_missing=True)
        return _payment_view(payment) if payment else None

    def fetch_order_payment(self, order_id: str) -> Optional[Dict[str, Any]]:
        """Return the authoritative payment for an order.

        A captured payment wins over any other attempt; otherwise the most
        recent attempt is returned. None when the gateway has no payment.
        """
        if not order_id:
            raise ValueError('Order ID is required')
        collection = self._call('fetch_order_payment', self.client.order.payments, order_id,
                                allow_missing=True)
        items = (collection or {}).get('items') or []
        if not items:
            return None
        captured = [item for item in items if item.get('status') == STATUS_CAPTURED]
        chosen = captured[0] if captured else max(items, key=lambda item: item.get('created_at') or 0)
        return _payment_view(chosen)

    def capture_payment(self, payment_id: str, amount: float, currency: str) -> Dict[str, Any]:
        if not payment_id or not amount:
            raise ValueError('Payment ID and amount are required')
        capture = self._call('capture_payment', self.client.payment.capture,
                             payment_id, to_minor_units(amount), {'currency': currency})
        logger.info(f"Gateway payment captured: {payment_id}")
        return _payment_view(capture)

    def refund_payment(self, payment_id: str, amount: Optional[float] = None,
                       notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        if not payment_id:
            raise ValueError('Payment ID is required')
        data: Dict[str, Any] = {'notes': notes or {}}
        if amount:
            data['amount'] = to_minor_units(amount)
        refund = self._call('refund_payment', self.client.payment.refund, payment_id, data)
        logger.info(f"Gateway refund initiated: {refund.get('id')} for payment {payment_id}")
        return _refund_view(refund)

    def fetch_refund(self, refund_id: str) -> Optional[Dict[str, Any]]:
        if not refund_id:
            raise ValueError('Refund ID is required')
        refund = self._call('fetch_refund', self.client.refund.fetch, refund_id,
                            allow_missing=True)
        return _refund_view(refund) if refund else None

    def expected_signature(self, order_id: str, payment_id: str) -> str:
        message = f"{order_id}|{payment_id}".encode('utf-8')
        return hmac.new(self._key_secret.encode('utf-8'), message, hashlib.sha256).hexdigest()
