"""Reconciliation of local payment orders against the gateway.

The gateway is authoritative for captured payments. A capture the library
never recorded is applied locally; a local "paid" the gateway does not
confirm is only reported, never downgraded.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app

from library_fines.config.config import Config
from library_fines.models.borrow import PAYMENT_COMPLETED, Borrow
from library_fines.models.payment_order import (ABANDONED, ATTEMPTED, CREATED,
                                                FAILED, ORDER_STATUSES, PAID,
                                                PaymentOrder)
from library_fines.models.system_log import SystemLog
from library_fines.services.payment_gateway import STATUS_CAPTURED, PaymentGateway
from library_fines.services.payment_lifecycle import (build_payment_entry,
                                                      release_in_flight_order)
from library_fines.services.unit_of_work import run_atomic
from library_fines.utils.errors import HTTPException, NotFound

logger = logging.getLogger(__name__)

NOT_FOUND_AT_GATEWAY = 'not_found_at_gateway'
LOCAL_PAID_GATEWAY_DISAGREES = 'local_paid_gateway_disagrees'
GATEWAY_ERROR = 'gateway_error'
RECONCILIATION_ERROR = 'reconciliation_error'

# Statuses worth asking the gateway about; abandoned orders are left to cleanup.
RECONCILABLE_STATUSES = (CREATED, ATTEMPTED, FAILED, PAID)


@dataclass
class ReconciliationReport:
    borrow_id: str
    reconciled: int = 0
    total_orders: int = 0
    examined: int = 0
    discrepancies: List[Dict[str, Any]] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReconciliationSummary:
    hours: int
    borrows_processed: int = 0
    total_orders: int = 0
    reconciled: int = 0
    failures: int = 0
    discrepancies: List[Dict[str, Any]] = field(default_factory=list)
    duration_ms: int = 0
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def add(self, report: ReconciliationReport) -> None:
        self.borrows_processed += 1
        self.total_orders += report.examined
        self.reconciled += report.reconciled
        self.discrepancies.extend(report.discrepancies)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _discrepancy(order: PaymentOrder, kind: str, message: str,
                 gateway_status: Optional[str] = None) -> Dict[str, Any]:
    return {
        'borrow_id': order.borrow_id,
        'gateway_order_id': order.gateway_order_id,
        'type': kind,
        'message': message,
        'local_status': order.status,
        'gateway_status': gateway_status,
    }


class ReconciliationService:
    """Compares stored orders with the gateway and repairs provable gaps."""

    def __init__(self, gateway: PaymentGateway, config=Config):
        self.gateway = gateway
        self.config = config

    def reconcile_borrow(self, borrow_id: str) -> ReconciliationReport:
        """Reconcile every payment order of one borrow record.

        Raises:
            NotFound: the borrow record does not exist.
        """
        if Borrow.get_by_id(borrow_id) is None:
            raise NotFound('Borrow record not found')

        orders = PaymentOrder.get_for_borrow(borrow_id)
        report = ReconciliationReport(borrow_id=borrow_id, total_orders=len(orders))

        for listed in orders:
            # A capture applied earlier in this loop may have abandoned it.
            order = PaymentOrder.get_by_id(listed.id)
            if order is None or order.status not in RECONCILABLE_STATUSES:
                continue
            report.examined += 1
            try:
                payment = self.gateway.fetch_order_payment(order.gateway_order_id)
            except HTTPException as e:
                report.discrepancies.append(
                    _discrepancy(order, GATEWAY_ERROR, f'Gateway lookup failed: {e.description}')
                )
                continue

            captured = payment is not None and payment['status'] == STATUS_CAPTURED

            if order.status == PAID:
                if not captured:
                    report.discrepancies.append(_discrepancy(
                        order, LOCAL_PAID_GATEWAY_DISAGREES,
                        'Local record says paid, gateway disagrees',
                        payment['status'] if payment else None,
                    ))
                continue

            if payment is None:
                report.discrepancies.append(
                    _discrepancy(order, NOT_FOUND_AT_GATEWAY, 'Payment not found at gateway')
                )
                continue

            if captured and self._apply_capture(order.id, payment):
                report.reconciled += 1

        if report.reconciled or report.discrepancies:
            logger.info(f"Reconciled borrow {borrow_id}: {report.reconciled} corrected, "
                        f"{len(report.discrepancies)} discrepancies")
        return report

    def _apply_capture(self, payment_order_id: str, payment: Dict[str, Any]) -> bool:
        """Mark the order paid and apply the captured amount to the fine."""
        def apply():
            order = PaymentOrder.get_by_id(payment_order_id)
            if order is None or order.status in (PAID, ABANDONED):
                return False
            borrow = Borrow.get_by_id(order.borrow_id)
            if borrow is None:
                return False

            amount = float(payment['amount'])
            entry = borrow.find_payment(payment['id'])
            if entry is None:
                entry = build_payment_entry(amount, order.gateway_order_id, payment['id'],
                                            source='reconciliation')
                borrow.payments.append(entry)
            old_fine = borrow.fine
            if not entry.get('applied_to_fine'):
                borrow.fine = max(0.0, round(borrow.fine - amount, 2))
                entry['applied_to_fine'] = True

            borrow.payment_status = PAYMENT_COMPLETED
            borrow.gateway_payment_id = payment['id']
            release_in_flight_order(borrow, order.gateway_order_id)
            borrow.save(commit=False)
            order.transition(PAID, commit=False)

            SystemLog.add(
                'Payment Reconciled',
                f'Order {order.gateway_order_id} marked paid from gateway capture '
                f'{payment["id"]}; fine {old_fine:.2f} -> {borrow.fine:.2f}',
                'system',
                None,
                commit=False,
            )
            return True

        return run_atomic(apply, f'reconciliation of order {payment_order_id}')

    def _reconcile_in_context(self, app, borrow_id: str) -> ReconciliationReport:
        with app.app_context():
            return self.reconcile_borrow(borrow_id)

    def reconcile_all(self, hours: Optional[int] = None,
                      now: Optional[datetime] = None) -> ReconciliationSummary:
        """Reconcile every borrow with an order created inside the window."""
        hours = hours or self.config.RECONCILIATION_WINDOW_HOURS
        started = time.monotonic()
        since = (now or datetime.now()) - timedelta(hours=hours)

        orders = PaymentOrder.get_created_since(since, RECONCILABLE_STATUSES)
        borrow_ids = list(dict.fromkeys(order.borrow_id for order in orders))
        summary = ReconciliationSummary(hours=hours)

        app = current_app._get_current_object()
        batch_size = self.config.RECONCILIATION_BATCH_SIZE
        with ThreadPoolExecutor(max_workers=batch_size) as executor:
            for start in range(0, len(borrow_ids), batch_size):
                batch = borrow_ids[start:start + batch_size]
                futures = [
                    (borrow_id, executor.submit(self._reconcile_in_context, app, borrow_id))
                    for borrow_id in batch
                ]
                for borrow_id, future in futures:
                    try:
                        summary.add(future.result())
                    except Exception as e:
                        logger.error(f"Reconciliation failed for borrow {borrow_id}: {e}")
                        summary.failures += 1
                        summary.discrepancies.append({
                            'borrow_id': borrow_id,
                            'type': RECONCILIATION_ERROR,
                            'message': str(e),
                        })

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Reconciliation sweep over {hours}h: {summary.borrows_processed} borrows, "
                    f"{summary.reconciled} reconciled, {len(summary.discrepancies)} discrepancies")
        return summary

    def get_stats(self) -> Dict[str, Any]:
        """Order counts by status and payment totals across borrow records."""
        counts = dict.fromkeys(ORDER_STATUSES, 0)
        counts.update(PaymentOrder.count_by_status())
        stats = {
            'payment_orders': counts,
            'total_orders': sum(counts.values()),
            'timestamp': datetime.now().isoformat(),
        }
        stats.update(Borrow.count_with_payments())
        return stats
