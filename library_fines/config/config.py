"""Configuration for the library fine and payment service.

This module contains all configuration settings for the fine engine, the
payment gateway integration, reconciliation and the background cleanup jobs.
"""
import os
from datetime import timedelta
from typing import Dict, FrozenSet, List, Tuple


class Config:
    """Base configuration class for the Flask application.

    Contains all application settings including:
    - Database connection settings
    - Payment gateway credentials and transport settings
    - Fine rules (rates, grace periods, exemptions, caps)
    - Holiday calendar used for business-day counting
    - Scheduling of the cleanup and reconciliation sweeps

    Attributes:
        SECRET_KEY (str): Secret key for session encryption.
        DATABASE_PATH (str): Absolute path to SQLite database file.
        GATEWAY_KEY_ID (str): Public key id handed to the payment widget.
        GATEWAY_KEY_SECRET (str): Shared secret used for signature checks.
        FINE_RATES (Dict[str, float]): Daily fine per book category.
        GRACE_PERIODS (Dict[str, int]): Grace days per user classification.
        PER_BOOK_FINE_CAP (float): Maximum fine for a single loan.
        MONTHLY_FINE_CAP (float): Maximum fines assessed per user per month.
        TOTAL_FINE_CAP (float): Maximum outstanding fines per user.
    """

    SECRET_KEY: str = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'

    # Database configuration
    DATABASE_PATH: str = os.environ.get('DATABASE_PATH') or os.path.join(
        os.path.dirname(os.path.dirname(os.path.dirname(__file__))), 'data', 'library.db'
    )

    # Payment gateway
    GATEWAY_KEY_ID: str = os.environ.get('RAZORPAY_KEY_ID', '')
    GATEWAY_KEY_SECRET: str = os.environ.get('RAZORPAY_KEY_SECRET', '')
    GATEWAY_CURRENCY: str = 'INR'
    GATEWAY_TIMEOUT_SECONDS: int = 30
    CURRENCY_SYMBOL: str = '₹'
    AMOUNT_TOLERANCE: float = 0.01
    ORDER_EXPIRY: timedelta = timedelta(hours=1)

    # Fine rates per book category (Reference > Premium > Standard > Academic)
    FINE_RATES: Dict[str, float] = {
        'reference': 1.00,
        'premium': 0.75,
        'standard': 0.50,
        'academic': 0.25,
    }
    DEFAULT_BOOK_CATEGORY: str = 'standard'

    # Grace days per user classification (Admin most, Standard least)
    GRACE_PERIODS: Dict[str, int] = {
        'standard': 1,
        'student': 2,
        'faculty': 3,
        'admin': 5,
    }

    # Exemption discounts, each a fraction of the base fine
    FIRST_TIME_BORROWER_DISCOUNT: float = 0.50
    EXCELLENT_HISTORY_DISCOUNT: float = 0.25
    FACULTY_RESEARCH_DISCOUNT: float = 0.30

    # Caps
    PER_BOOK_FINE_CAP: float = 25.00
    MONTHLY_FINE_CAP: float = 50.00
    TOTAL_FINE_CAP: float = 100.00

    # Simple calculator (fast path)
    SIMPLE_DAILY_RATE: float = 0.50
    SIMPLE_GRACE_DAYS: int = 1

    # Legacy calculator defaults (minor currency units per day)
    LEGACY_FINE_PER_DAY: int = 25
    LEGACY_GRACE_DAYS: int = 1

    # Borrowing history
    HISTORY_WINDOW: int = 50
    EXCELLENT_RELIABILITY_SCORE: float = 90.0
    EXCELLENT_MIN_BORROWS: int = 5
    ACADEMIC_EMAIL_SUFFIXES: Tuple[str, ...] = ('.edu', '.ac.in', '.ac.uk', '.edu.au')

    # Holiday calendar
    EXCLUDE_NON_BUSINESS_DAYS: bool = False  # Count only library-open days when True
    EXCLUDE_WEEKENDS: bool = True
    WEEKEND_DAYS: FrozenSet[int] = frozenset({5, 6})  # Saturday, Sunday
    FIXED_HOLIDAYS: List[Tuple[int, int, str]] = [
        (1, 1, "New Year's Day"),
        (1, 26, 'Republic Day'),
        (8, 15, 'Independence Day'),
        (10, 2, 'Gandhi Jayanti'),
        (12, 25, 'Christmas Day'),
    ]
    # (nth, weekday, month or None for every month); nth=-1 means last
    FLOATING_HOLIDAYS: List[Tuple[int, int, object, str]] = [
        (2, 5, None, 'Second Saturday'),
    ]
    LIBRARY_CLOSED_DAYS: List[str] = []  # ISO dates

    # Smart selection
    COMPLEXITY_THRESHOLD: int = 2
    BULK_BATCH_SIZE: int = 10

    # Reconciliation
    RECONCILIATION_BATCH_SIZE: int = 10
    RECONCILIATION_WINDOW_HOURS: int = 24
    RECONCILIATION_INTERVAL_MINUTES: int = 60

    # Cleanup of payment orders
    CLEANUP_INTERVAL_MINUTES: int = 30
    ORDER_ABANDON_AFTER: timedelta = timedelta(hours=1)
    ORDER_RETENTION: timedelta = timedelta(hours=24)

    # Monitoring
    FAILURE_RATE_ALERT_THRESHOLD: float = 0.10

    SCHEDULER_ENABLED: bool = True


class TestConfig(Config):
    """Configuration used by the test suite."""

    TESTING: bool = True
    SCHEDULER_ENABLED: bool = False
    GATEWAY_KEY_ID: str = 'rzp_test_key'
    GATEWAY_KEY_SECRET: str = 'test_secret'
