"""Fine, payment and reconciliation services.

`build_services()` wires the services once per application; the module
level helpers below reach them through `current_app.extensions` so callers
outside the HTTP layer do not have to carry service objects around.
"""
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from library_fines.config.config import Config
from library_fines.services.audit_trail import AuditTrailService
from library_fines.services.fine_engine import FineEngine, FineResult, format_money
from library_fines.services.fine_selector import FineContext, FineSelector
from library_fines.services.holiday_manager import HolidayManager
from library_fines.services.metrics import PaymentMetrics
from library_fines.services.payment_gateway import PaymentGateway, RazorpayGateway
from library_fines.services.payment_lifecycle import (PaymentConfirmation,
                                                      PaymentLifecycleService)
from library_fines.services.reconciliation import (ReconciliationReport,
                                                   ReconciliationService,
                                                   ReconciliationSummary)
from library_fines.services.user_classifier import UserClassification, UserClassifier

EXTENSION_KEY = 'library_fines'


@dataclass
class FineServices:
    engine: FineEngine
    selector: FineSelector
    metrics: PaymentMetrics
    gateway: PaymentGateway
    payments: PaymentLifecycleService
    reconciliation: ReconciliationService
    audit: AuditTrailService


def build_services(config=Config, gateway: Optional[PaymentGateway] = None,
                   metrics: Optional[PaymentMetrics] = None) -> FineServices:
    gateway = gateway or RazorpayGateway.from_config(config)
    metrics = metrics or PaymentMetrics(config.FAILURE_RATE_ALERT_THRESHOLD)
    engine = FineEngine(config=config)
    return FineServices(
        engine=engine,
        selector=FineSelector(engine, config=config),
        metrics=metrics,
        gateway=gateway,
        payments=PaymentLifecycleService(gateway, metrics, config=config),
        reconciliation=ReconciliationService(gateway, config=config),
        audit=AuditTrailService(config=config),
    )


def get_services() -> FineServices:
    return current_app.extensions[EXTENSION_KEY]


def create_fine_payment_order(borrow_id, amount, user_id, is_admin=False):
    return get_services().payments.create_order(borrow_id, amount, user_id, is_admin=is_admin)


def verify_fine_payment(order_id, payment_id, signature) -> PaymentConfirmation:
    return get_services().payments.verify_payment(order_id, payment_id, signature)


def calculate_fine(borrow_or_data, now=None) -> FineResult:
    return get_services().engine.calculate_fine(borrow_or_data, now)


def adjust_fine(acting_user_id, borrow_id, new_fine, reason, notes=''):
    return get_services().audit.adjust_fine(acting_user_id, borrow_id, new_fine, reason, notes)


def reconcile_borrow(borrow_id) -> ReconciliationReport:
    return get_services().reconciliation.reconcile_borrow(borrow_id)


def reconcile_all(hours=None) -> ReconciliationSummary:
    return get_services().reconciliation.reconcile_all(hours)


__all__ = [
    'AuditTrailService',
    'FineContext',
    'FineEngine',
    'FineResult',
    'FineSelector',
    'FineServices',
    'HolidayManager',
    'PaymentConfirmation',
    'PaymentGateway',
    'PaymentLifecycleService',
    'PaymentMetrics',
    'RazorpayGateway',
    'ReconciliationReport',
    'ReconciliationService',
    'ReconciliationSummary',
    'UserClassification',
    'UserClassifier',
    'adjust_fine',
    'build_services',
    'calculate_fine',
    'create_fine_payment_order',
    'format_money',
    'get_services',
    'reconcile_all',
    'reconcile_borrow',
    'verify_fine_payment',
]
