"""Borrower-facing fine payment flow.

order creation -> gateway checkout -> signature verification -> record update

Verification marks the borrow's payment as completed but leaves the fine
untouched; `settle_fine` is the separate step that applies a verified
payment to the fine.
"""
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from library_fines.config.config import Config
from library_fines.models.borrow import (PAYMENT_COMPLETED, PAYMENT_NONE,
                                         PAYMENT_PENDING, Borrow)
from library_fines.models.payment_order import (ABANDONED, ATTEMPTED, CREATED,
                                                FAILED, PAID,
                                                DuplicateOrderError,
                                                InvalidTransitionError,
                                                PaymentOrder)
from library_fines.services.fine_engine import format_money
from library_fines.services.metrics import PaymentMetrics
from library_fines.services.payment_gateway import PaymentGateway, to_minor_units
from library_fines.services.unit_of_work import run_atomic
from library_fines.utils.dates import DATETIME_FORMAT
from library_fines.utils.errors import (BadRequest, Conflict, Forbidden,
                                        NotFound, VerificationFailed)

logger = logging.getLogger(__name__)

PAYMENT_METHOD = 'RAZORPAY'


@dataclass
class PaymentConfirmation:
    borrow_id: str
    gateway_order_id: str
    gateway_payment_id: str
    amount: float
    currency: str
    payment_status: str
    remaining_fine: float
    already_processed: bool = False
    timestamp: str = ''

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['formatted_amount'] = format_money(self.amount)
        return data


def build_payment_entry(amount: float, gateway_order_id: str, gateway_payment_id: str,
                        source: str, paid_at: Optional[datetime] = None) -> Dict[str, Any]:
    """Payment history entry stored on the borrow record."""
    return {
        'amount': round(float(amount), 2),
        'method': PAYMENT_METHOD,
        'date': (paid_at or datetime.now()).strftime(DATETIME_FORMAT),
        'processing_id': gateway_payment_id,
        'status': 'COMPLETED',
        'gateway_order_id': gateway_order_id,
        'gateway_payment_id': gateway_payment_id,
        'source': source,
        'applied_to_fine': False,
    }


def supersede_order(previous_order_id: Optional[str], new_order_id: str) -> None:
    """Abandon the order that was in flight before another one replaces it."""
    if not previous_order_id or previous_order_id == new_order_id:
        return
    previous = PaymentOrder.get_by_gateway_order_id(previous_order_id)
    if previous and previous.status in (CREATED, ATTEMPTED):
        previous.transition(ABANDONED, commit=False)


def release_in_flight_order(borrow: Borrow, paid_order_id: str) -> None:
    """Clear the borrow's in-flight order once `paid_order_id` has completed.

    Any other order still stored on the borrow is abandoned so it cannot be
    paid a second time.
    """
    supersede_order(borrow.gateway_order_id, paid_order_id)
    borrow.gateway_order_id = None


class PaymentLifecycleService:
    """Creates gateway orders for fines and records verified payments."""

    def __init__(self, gateway: PaymentGateway, metrics: Optional[PaymentMetrics] = None,
                 config=Config):
        self.gateway = gateway
        self.metrics = metrics or PaymentMetrics()
        self.config = config

    def _reject(self, error, reason: str, **context):
        self.metrics.record_failure(reason, context)
        raise error

    # ==================== ORDER CREATION ====================

    def create_order(self, borrow_id: str, amount, user_id: str,
                     is_admin: bool = False) -> Dict[str, Any]:
        """Create a gateway order to pay the fine of one borrow.

        Raises:
            BadRequest: invalid input, no outstanding fine or amount mismatch.
            NotFound: the borrow record does not exist.
            Forbidden: the caller does not own the record.
            Conflict: the fine is already paid or the order id is a duplicate.
            GatewayUnavailable: the gateway could not be reached.
        """
        self.metrics.record_attempt()

        try:
            amount = round(float(amount), 2)
        except (TypeError, ValueError):
            amount = 0.0
        if not borrow_id or amount <= 0:
            self._reject(BadRequest('Borrow ID and valid amount are required'),
                         'Invalid input', user_id=user_id, borrow_id=borrow_id)

        borrow = Borrow.get_by_id(borrow_id)
        if borrow is None:
            self._reject(NotFound('Borrow record not found'),
                         'Borrow record not found', user_id=user_id, borrow_id=borrow_id)
        if not is_admin and borrow.user_id != user_id:
            self._reject(Forbidden('Access denied. You can only pay your own fines.'),
                         'Access denied', user_id=user_id, borrow_id=borrow_id)
        self._check_payable(borrow, amount, user_id)

        receipt = f"fine_{borrow.id[:8]}_{int(time.time())}"
        order = self.gateway.create_order(
            to_minor_units(amount), self.config.GATEWAY_CURRENCY, receipt,
            notes={'borrow_id': borrow.id, 'user_id': borrow.user_id},
        )

        def persist():
            fresh = Borrow.get_by_id(borrow_id)
            self._check_payable(fresh, amount, user_id)
            try:
                payment_order = PaymentOrder.create(
                    borrow_id=fresh.id,
                    user_id=fresh.user_id,
                    gateway_order_id=order['id'],
                    amount=amount,
                    currency=order['currency'],
                    expires_at=datetime.now() + self.config.ORDER_EXPIRY,
                    commit=False,
                )
            except DuplicateOrderError:
                self._reject(Conflict('Payment order already exists'),
                             'Duplicate gateway order', gateway_order_id=order['id'])

            supersede_order(fresh.gateway_order_id, order['id'])
            fresh.payment_status = PAYMENT_PENDING
            fresh.gateway_order_id = order['id']
            fresh.save(commit=False)
            return fresh, payment_order

        try:
            fresh, payment_order = run_atomic(persist, f'order creation for borrow {borrow_id}')
        except Exception:
            logger.error(f"Gateway order {order['id']} created but not recorded for borrow {borrow_id}")
            raise

        self.metrics.record_success()
        logger.info(f"Payment order {order['id']} created for borrow {borrow_id}, "
                    f"amount {format_money(amount, self.config.CURRENCY_SYMBOL)}")
        return {
            'order': order,
            'key_id': self.gateway.key_id,
            'payment_order_id': payment_order.id,
            'expires_at': payment_order.expires_at,
            'borrow_record': {
                'id': fresh.id,
                'book_id': fresh.book_id,
                'fine': round(fresh.fine, 2),
                'formatted_fine': format_money(fresh.fine, self.config.CURRENCY_SYMBOL),
            },
        }

    def _check_payable(self, borrow: Borrow, amount: float, user_id: str) -> None:
        if borrow.is_paid:
            self._reject(Conflict('Fine has already been paid'),
                         'Already paid', user_id=user_id, borrow_id=borrow.id)
        if borrow.fine <= 0:
            self._reject(BadRequest('No outstanding fine for this borrow record'),
                         'No outstanding fine', user_id=user_id, borrow_id=borrow.id)
        if abs(amount - borrow.fine) > self.config.AMOUNT_TOLERANCE:
            symbol = self.config.CURRENCY_SYMBOL
            self._reject(
                BadRequest(f'Payment amount ({format_money(amount, symbol)}) does not match '
                           f'outstanding fine ({format_money(borrow.fine, symbol)})'),
                'Amount mismatch', user_id=user_id, borrow_id=borrow.id, amount=amount,
            )

    @staticmethod
    def _owned_order(order_id: str, user) -> PaymentOrder:
        order = PaymentOrder.get_by_gateway_order_id(order_id)
        if order is None:
            raise NotFound('Payment order not found')
        if user is not None and order.user_id != user.id and not user.is_admin():
            raise Forbidden('Access denied. You can only manage your own payment orders.')
        return order

    def get_order_status(self, order_id: str, user=None) -> Dict[str, Any]:
        """Current state of one payment order, for the owner or an admin.

        Raises:
            NotFound: the order does not exist.
            Forbidden: the caller neither owns the order nor is an admin.
        """
        order = self._owned_order(order_id, user)
        borrow = Borrow.get_by_id(order.borrow_id)
        return {
            'order_id': order.gateway_order_id,
            'borrow_id': order.borrow_id,
            'status': order.status,
            'amount': round(order.amount, 2),
            'formatted_amount': format_money(order.amount, self.config.CURRENCY_SYMBOL),
            'currency': order.currency,
            'created_at': order.created_at,
            'updated_at': order.updated_at,
            'expires_at': order.expires_at,
            'payment_status': borrow.payment_status if borrow else None,
        }

    def mark_attempted(self, order_id: str, user=None) -> PaymentOrder:
        """Record that the borrower opened the gateway checkout.

        Raises:
            NotFound: the order does not exist.
            Forbidden: the caller neither owns the order nor is an admin.
        """
        def apply():
            order = self._owned_order(order_id, user)
            if order.status == CREATED:
                order.transition(ATTEMPTED, commit=False)
            return order

        return run_atomic(apply, f'checkout of order {order_id}')

    # ==================== VERIFICATION ====================

    def verify_payment(self, order_id: str, payment_id: str, signature: str) -> PaymentConfirmation:
        """Verify a completed checkout and record the payment.

        Raises:
            BadRequest: a field is missing.
            VerificationFailed: the signature does not match.
            NotFound: no borrow record references the order.
        """
        self.metrics.record_attempt()

        if not order_id or not payment_id or not signature:
            self._reject(BadRequest('Missing required fields for payment verification'),
                         'Missing verification fields', order_id=order_id)

        if not self.gateway.verify_signature(order_id, payment_id, signature):
            logger.warning(f"Payment verification failed for order {order_id}")
            self._reject(VerificationFailed(), 'Payment verification failed',
                         order_id=order_id)

        confirmation = run_atomic(
            lambda: self._record_verified_payment(order_id, payment_id),
            f'verification of order {order_id}',
        )
        self.metrics.record_success()
        if not confirmation.already_processed:
            logger.info(f"Payment {payment_id} recorded for borrow {confirmation.borrow_id}")
        return confirmation

    def _record_verified_payment(self, order_id: str, payment_id: str) -> PaymentConfirmation:
        order = PaymentOrder.get_by_gateway_order_id(order_id)
        borrow = Borrow.get_by_gateway_order_id(order_id)
        if borrow is None and order is not None:
            borrow = Borrow.get_by_id(order.borrow_id)
        if borrow is None:
            self._reject(NotFound('No borrow record references this payment order'),
                         'Borrow record not found during verification', order_id=order_id)

        currency = order.currency if order else self.config.GATEWAY_CURRENCY
        existing = borrow.find_payment(payment_id)
        if existing is not None:
            return self._confirmation(borrow, order_id, payment_id, existing['amount'],
                                      currency, already_processed=True)

        amount = order.amount if order else borrow.fine
        borrow.payments.append(
            build_payment_entry(amount, order_id, payment_id, source='verification')
        )
        borrow.payment_status = PAYMENT_COMPLETED
        borrow.gateway_payment_id = payment_id
        release_in_flight_order(borrow, order_id)
        borrow.save(commit=False)

        if order is not None and order.status != PAID:
            try:
                order.transition(PAID, commit=False)
            except InvalidTransitionError:
                logger.warning(f"Payment {payment_id} verified for {order.status} order "
                               f"{order_id}; leaving order status for review")

        return self._confirmation(borrow, order_id, payment_id, amount, currency)

    def _confirmation(self, borrow: Borrow, order_id: str, payment_id: str, amount: float,
                      currency: str, already_processed: bool = False) -> PaymentConfirmation:
        return PaymentConfirmation(
            borrow_id=borrow.id,
            gateway_order_id=order_id,
            gateway_payment_id=payment_id,
            amount=round(float(amount), 2),
            currency=currency,
            payment_status=borrow.payment_status,
            remaining_fine=round(borrow.fine, 2),
            already_processed=already_processed,
            timestamp=datetime.now().isoformat(),
        )

    # ==================== SETTLEMENT & FAILURES ====================

    def settle_fine(self, borrow_id: str, payment_id: str) -> Dict[str, Any]:
        """Apply a recorded payment to the borrow's fine, once.

        Raises:
            NotFound: unknown borrow or payment not recorded on it.
        """
        def apply():
            borrow = Borrow.get_by_id(borrow_id)
            if borrow is None:
                raise NotFound('Borrow record not found')
            entry = borrow.find_payment(payment_id)
            if entry is None:
                raise NotFound('Payment is not recorded for this borrow record')

            old_fine = round(borrow.fine, 2)
            if entry.get('applied_to_fine'):
                return {'borrow_id': borrow.id, 'payment_id': payment_id,
                        'old_fine': old_fine, 'new_fine': old_fine,
                        'applied_amount': 0.0, 'already_applied': True}

            borrow.fine = max(0.0, round(borrow.fine - float(entry['amount']), 2))
            entry['applied_to_fine'] = True
            borrow.save(commit=False)
            return {'borrow_id': borrow.id, 'payment_id': payment_id,
                    'old_fine': old_fine, 'new_fine': borrow.fine,
                    'applied_amount': round(old_fine - borrow.fine, 2),
                    'already_applied': False}

        return run_atomic(apply, f'settlement of payment {payment_id}')

    def report_failure(self, order_id: str, reason: str = 'Payment failed at gateway',
                       user=None) -> PaymentOrder:
        """Record a failure reported by the checkout widget.

        Raises:
            NotFound: the order does not exist.
            Forbidden: the caller neither owns the order nor is an admin.
            Conflict: the order is already paid.
        """
        def apply():
            order = self._owned_order(order_id, user)
            if order.status == PAID:
                raise Conflict('Payment already processed')
            if order.status in (FAILED, ABANDONED):
                return order

            order.transition(FAILED, commit=False)
            borrow = Borrow.get_by_id(order.borrow_id)
            if borrow and borrow.gateway_order_id == order_id and not borrow.is_paid:
                borrow.gateway_order_id = None
                borrow.payment_status = PAYMENT_NONE
                borrow.save(commit=False)
            return order

        order = run_atomic(apply, f'failure report for order {order_id}')
        self.metrics.record_failure(reason, {'order_id': order_id})
        return order
