"""
Scheduled background tasks for the fine payment system.

Tasks include:
- Abandoning and purging stale payment orders (every 30 minutes)
- Reconciling recent payment orders with the gateway (hourly)

The sweep functions work inside any application context and can be called
directly; the `run_*_job` wrappers are what the scheduler invokes.
"""
import logging
from datetime import datetime
from typing import Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from library_fines.config.config import Config
from library_fines.models.payment_order import ORDER_STATUSES, PaymentOrder
from library_fines.models.system_log import SystemLog

logger = logging.getLogger(__name__)


def cleanup_payment_orders(now: Optional[datetime] = None, config=Config) -> Dict[str, int]:
    """Run one cleanup sweep.

    1. `created` orders older than the abandon threshold become `abandoned`.
    2. `abandoned` orders not touched within the retention window are deleted.
    """
    now = now or datetime.now()
    abandoned = PaymentOrder.mark_abandoned_before(now - config.ORDER_ABANDON_AFTER, now=now)
    deleted = PaymentOrder.delete_abandoned_before(now - config.ORDER_RETENTION)
    return {'abandoned': abandoned, 'deleted': deleted}


def get_payment_order_stats() -> Dict[str, int]:
    """Count payment orders per status."""
    stats = dict.fromkeys(ORDER_STATUSES, 0)
    stats.update(PaymentOrder.count_by_status())
    stats['total'] = sum(stats[status] for status in ORDER_STATUSES)
    return stats


def run_cleanup_job(app):
    """Scheduled task: abandon stale orders and purge old abandoned ones."""
    with app.app_context():
        try:
            result = cleanup_payment_orders(config=app.config.get('FINES_CONFIG', Config))
            if result['abandoned'] or result['deleted']:
                logger.info(f"Payment order cleanup: {result['abandoned']} abandoned, "
                            f"{result['deleted']} deleted")
                SystemLog.add(
                    'Scheduled Task: Payment Order Cleanup',
                    f"Abandoned {result['abandoned']} order(s), deleted {result['deleted']} order(s)",
                    'system',
                    None
                )
            return result
        except Exception as e:
            logger.error(f"Error in run_cleanup_job: {e}")
            SystemLog.add(
                'Scheduled Task Error',
                f'Failed to clean up payment orders: {str(e)}',
                'error',
                None
            )
            return None


def run_reconciliation_job(app):
    """Scheduled task: reconcile orders created within the reconciliation window."""
    with app.app_context():
        try:
            services = app.extensions['library_fines']
            summary = services.reconciliation.reconcile_all()
            if summary.reconciled or summary.discrepancies:
                SystemLog.add(
                    'Scheduled Task: Payment Reconciliation',
                    f'Reconciled {summary.reconciled} order(s) across '
                    f'{summary.borrows_processed} borrow(s); '
                    f'{len(summary.discrepancies)} discrepancy(ies) need review',
                    'warning' if summary.discrepancies else 'system',
                    None
                )
            return summary
        except Exception as e:
            logger.error(f"Error in run_reconciliation_job: {e}")
            SystemLog.add(
                'Scheduled Task Error',
                f'Failed to reconcile payments: {str(e)}',
                'error',
                None
            )
            return None


# Initialize scheduler
scheduler = BackgroundScheduler()


def start_scheduler(app):
    """Register the jobs for `app` and start the background scheduler."""
    config = app.config.get('FINES_CONFIG', Config)

    scheduler.add_job(
        func=run_cleanup_job,
        args=[app],
        trigger='interval',
        minutes=config.CLEANUP_INTERVAL_MINUTES,
        id='cleanup_payment_orders',
        name='Abandon and purge stale payment orders',
        replace_existing=True
    )

    scheduler.add_job(
        func=run_reconciliation_job,
        args=[app],
        trigger='interval',
        minutes=config.RECONCILIATION_INTERVAL_MINUTES,
        id='reconcile_payments',
        name='Reconcile recent payment orders',
        replace_existing=True
    )

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduled tasks started successfully")

        with app.app_context():
            try:
                SystemLog.add(
                    'System Startup',
                    'Background task scheduler started',
                    'system',
                    None
                )
            except Exception as e:
                logger.error(f"Error logging scheduler startup: {e}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduled tasks shut down")
