"""Payment processing metrics.

A `PaymentMetrics` instance is created by the application factory and handed
to the services that record payment attempts. Nothing here is module-global;
tests build their own instance or call `reset()`.
"""
import logging
import threading
from datetime import datetime
from typing import Any, Dict, Optional

from library_fines.config.config import Config

logger = logging.getLogger(__name__)


class PaymentMetrics:
    """Counters for payment attempts, successes and failures.

    Keeps one bucket per hour of the day and logs an alert when the failure
    rate of the current hour crosses the configured threshold.
    """

    def __init__(self, alert_threshold: float = Config.FAILURE_RATE_ALERT_THRESHOLD,
                 clock=datetime.now):
        self.alert_threshold = alert_threshold
        self.clock = clock
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        """Clear every counter."""
        with self._lock:
            self.total_attempts = 0
            self.total_success = 0
            self.total_failures = 0
            self.failure_reasons: Dict[str, int] = {}
            self.hourly_stats = [
                {'hour': hour, 'attempts': 0, 'success': 0, 'failures': 0}
                for hour in range(24)
            ]

    def _bucket(self) -> Dict[str, int]:
        return self.hourly_stats[self.clock().hour]

    def record_attempt(self) -> None:
        with self._lock:
            self.total_attempts += 1
            self._bucket()['attempts'] += 1

    def record_success(self) -> None:
        with self._lock:
            self.total_success += 1
            self._bucket()['success'] += 1

    def record_failure(self, reason: str, context: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            self.total_failures += 1
            self.failure_reasons[reason] = self.failure_reasons.get(reason, 0) + 1
            bucket = self._bucket()
            bucket['failures'] += 1
            attempts, failures = bucket['attempts'], bucket['failures']

        logger.error(f"Payment failure: {reason} {context or {}}")

        if attempts > 0:
            failure_rate = failures / attempts
            if failure_rate > self.alert_threshold:
                logger.warning(
                    f"High payment failure rate: {failure_rate * 100:.2f}% in the current hour"
                )

    def snapshot(self) -> Dict[str, Any]:
        """Return the counters with success and failure rates."""
        with self._lock:
            total = self.total_attempts
            success_rate = (self.total_success / total) * 100 if total else 0.0
            failure_rate = (self.total_failures / total) * 100 if total else 0.0
            return {
                'total_attempts': self.total_attempts,
                'total_success': self.total_success,
                'total_failures': self.total_failures,
                'failure_reasons': dict(self.failure_reasons),
                'hourly_stats': [dict(bucket) for bucket in self.hourly_stats],
                'success_rate': f"{success_rate:.2f}",
                'failure_rate': f"{failure_rate:.2f}",
                'timestamp': self.clock().isoformat(),
            }
