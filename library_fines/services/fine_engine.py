"""Overdue fine calculation.

Two calculators share one result shape:

* `AdvancedFineCalculator` evaluates every rule: category rate, grace period
  by classification, optional business-day counting, exemptions and the
  per-book, monthly and total caps.
* `SimpleFineCalculator` uses a fixed rate and grace period and skips
  exemptions and caps. It is meant for high-volume, low-stakes lookups.

`legacy_fine_calculator` keeps the original flat-rate calculator and its
borrower-facing messages.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Union

from flask import has_app_context

from library_fines.config.config import Config
from library_fines.models.book import Book
from library_fines.models.borrow import Borrow
from library_fines.models.system_config import SystemConfig
from library_fines.services.holiday_manager import HolidayManager
from library_fines.services.user_classifier import UserClassification, UserClassifier
from library_fines.utils.dates import parse_datetime

logger = logging.getLogger(__name__)

MODE_ADVANCED = 'advanced'
MODE_SIMPLE = 'simple'

EXEMPTION_FIRST_TIME = 'first_time_borrower'
EXEMPTION_EXCELLENT_HISTORY = 'excellent_history'
EXEMPTION_FACULTY_RESEARCH = 'faculty_research'

CAP_PER_BOOK = 'per_book'
CAP_MONTHLY = 'monthly'
CAP_TOTAL = 'total'


def format_money(amount: float, symbol: str = Config.CURRENCY_SYMBOL) -> str:
    """Format an amount with two decimals and the currency symbol."""
    return f"{symbol}{amount:,.2f}"


def legacy_fine_calculator(due_date, return_date=None, fine_per_day=Config.LEGACY_FINE_PER_DAY,
                           grace_period_days=Config.LEGACY_GRACE_DAYS,
                           currency_symbol=Config.CURRENCY_SYMBOL) -> Dict[str, Any]:
    """Flat-rate fine with a grace period.

    Dates are compared by calendar day, ignoring the time of day.

    Returns:
        Dict with `fine` and a borrower-facing `message`.
    """
    due = parse_datetime(due_date)
    if due is None:
        return {
            'fine': 0,
            'message': 'Due date not provided. Unable to calculate fine.',
        }

    returned = parse_datetime(return_date) or datetime.now()
    diff_days = (returned.date() - due.date()).days

    if diff_days <= 0:
        return {
            'fine': 0,
            'message': "Excellent! You've returned the book on or before the due date. "
                       "No fine is charged.",
        }

    if diff_days <= grace_period_days:
        return {
            'fine': 0,
            'message': f'Book returned within the {grace_period_days}-day grace period. '
                       f'No fine applied.',
        }

    overdue_days = diff_days - grace_period_days
    fine_amount = fine_per_day * overdue_days
    return {
        'fine': fine_amount,
        'message': f'Returned {overdue_days} day(s) late. '
                   f'A fine of {currency_symbol}{fine_amount} has been applied.',
    }


@dataclass
class FineBreakdown:
    base_fine: float = 0.0
    grace_discount: float = 0.0
    exemption_discount: float = 0.0
    holiday_discount: float = 0.0
    final_fine: float = 0.0


@dataclass
class FineResult:
    total_fine: float = 0.0
    daily_rate: float = 0.0
    overdue_days: int = 0
    effective_overdue_days: int = 0
    grace_period: int = 0
    classification: Optional[str] = None
    exemptions: List[str] = field(default_factory=list)
    breakdown: FineBreakdown = field(default_factory=FineBreakdown)
    caps: Dict[str, Any] = field(default_factory=dict)
    cap_applied: Optional[str] = None
    mode: str = MODE_ADVANCED
    message: str = ''
    borrow_id: Optional[str] = None

    @property
    def is_exempt(self) -> bool:
        return self.total_fine == 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['formatted_fine'] = format_money(self.total_fine)
        return data


@dataclass
class FineInput:
    """Normalized calculation input taken from a borrow record or a mapping."""
    due: Optional[datetime]
    returned: Optional[datetime]
    user_id: Optional[str] = None
    book_id: Optional[str] = None
    borrow_id: Optional[str] = None

    @classmethod
    def of(cls, record: Union[Borrow, Mapping[str, Any]]) -> 'FineInput':
        if isinstance(record, Mapping):
            return cls(
                due=parse_datetime(record.get('due_date')),
                returned=parse_datetime(record.get('return_date')),
                user_id=record.get('user_id'),
                book_id=record.get('book_id'),
                borrow_id=record.get('borrow_id') or record.get('id'),
            )
        return cls(
            due=parse_datetime(record.due_date),
            returned=parse_datetime(record.return_date),
            user_id=record.user_id,
            book_id=record.book_id,
            borrow_id=record.id,
        )

    def no_fine_reason(self, now: datetime) -> Optional[str]:
        if self.due is None:
            return 'Due date not provided. No fine calculated.'
        if self.returned is not None and self.returned.date() <= self.due.date():
            return 'Returned on or before the due date. No fine is charged.'
        if self.returned is None and self.due.date() >= now.date():
            return 'Not yet due. No fine is charged.'
        return None

    def end(self, now: datetime) -> datetime:
        return self.returned or now


class SimpleFineCalculator:
    """Fixed rate and grace period, no exemptions or caps."""

    mode = MODE_SIMPLE

    def __init__(self, config=Config):
        self.config = config

    def calculate(self, record, now: Optional[datetime] = None) -> FineResult:
        now = now or datetime.now()
        data = FineInput.of(record)
        rate = self.config.SIMPLE_DAILY_RATE
        grace = self.config.SIMPLE_GRACE_DAYS
        result = FineResult(daily_rate=rate, grace_period=grace, mode=self.mode,
                            borrow_id=data.borrow_id)

        reason = data.no_fine_reason(now)
        if reason:
            result.message = reason
            return result

        overdue_days = (data.end(now).date() - data.due.date()).days
        effective_days = max(0, overdue_days - grace)
        fine = round(effective_days * rate, 2)

        result.overdue_days = overdue_days
        result.effective_overdue_days = effective_days
        result.total_fine = fine
        result.breakdown = FineBreakdown(
            base_fine=fine,
            grace_discount=round((overdue_days - effective_days) * rate, 2),
            final_fine=fine,
        )
        result.message = _describe(result, self.config.CURRENCY_SYMBOL)
        return result


class AdvancedFineCalculator:
    """Evaluates every fine rule for one borrow."""

    mode = MODE_ADVANCED

    def __init__(self, holidays: Optional[HolidayManager] = None,
                 classifier: Optional[UserClassifier] = None,
                 book_store=Book, borrow_store=Borrow, config=Config):
        self.config = config
        self.holidays = holidays or HolidayManager.from_config(config)
        self.classifier = classifier or UserClassifier(config=config)
        self.book_store = book_store
        self.borrow_store = borrow_store

    # ---------- settings ----------

    def settings(self) -> Dict[str, Any]:
        """Static configuration merged with admin overrides."""
        settings = {
            'fine_rates': dict(self.config.FINE_RATES),
            'per_book_fine_cap': self.config.PER_BOOK_FINE_CAP,
            'monthly_fine_cap': self.config.MONTHLY_FINE_CAP,
            'total_fine_cap': self.config.TOTAL_FINE_CAP,
        }
        if not has_app_context():
            return settings
        try:
            overrides = SystemConfig.get()
        except Exception as e:
            logger.warning(f"Could not read fine overrides, using defaults: {e}")
            return settings
        if 'fine_rates' in overrides:
            settings['fine_rates'].update(
                {str(k).lower(): float(v) for k, v in overrides['fine_rates'].items()}
            )
        for key in ('per_book_fine_cap', 'monthly_fine_cap', 'total_fine_cap'):
            if key in overrides:
                settings[key] = float(overrides[key])
        return settings

    def daily_rate(self, book_id: Optional[str], rates: Mapping[str, float]) -> float:
        category = self.config.DEFAULT_BOOK_CATEGORY
        if book_id:
            try:
                book = self.book_store.get_by_id(book_id)
            except Exception as e:
                logger.warning(f"Could not load book {book_id}, using default rate: {e}")
                book = None
            if book and book.category in rates:
                category = book.category
        return rates.get(category, rates.get(self.config.DEFAULT_BOOK_CATEGORY, 0.0))

    def grace_period(self, classification: UserClassification) -> int:
        return self.config.GRACE_PERIODS.get(
            classification.value, self.config.GRACE_PERIODS['standard']
        )

    # ---------- user aggregates ----------

    def monthly_fines(self, user_id: str, now: Optional[datetime] = None,
                      exclude_id: Optional[str] = None) -> float:
        now = now or datetime.now()
        month_start = datetime(now.year, now.month, 1)
        if now.month == 12:
            month_end = datetime(now.year + 1, 1, 1)
        else:
            month_end = datetime(now.year, now.month + 1, 1)
        return self.borrow_store.sum_fines_between(user_id, month_start, month_end, exclude_id)

    def outstanding_fines(self, user_id: str, exclude_id: Optional[str] = None) -> float:
        return self.borrow_store.sum_outstanding_fines(user_id, exclude_id)

    # ---------- calculation ----------

    def calculate(self, record, now: Optional[datetime] = None) -> FineResult:
        now = now or datetime.now()
        data = FineInput.of(record)
        settings = self.settings()
        classification = self.classifier.classify(data.user_id)
        caps = {
            CAP_PER_BOOK: settings['per_book_fine_cap'],
            CAP_MONTHLY: settings['monthly_fine_cap'],
            CAP_TOTAL: settings['total_fine_cap'],
        }
        result = FineResult(classification=classification.value, caps=caps,
                            mode=self.mode, borrow_id=data.borrow_id)

        reason = data.no_fine_reason(now)
        if reason:
            result.message = reason
            return result

        rate = self.daily_rate(data.book_id, settings['fine_rates'])
        grace = self.grace_period(classification)
        end = data.end(now)

        calendar_days = (end.date() - data.due.date()).days
        if self.config.EXCLUDE_NON_BUSINESS_DAYS:
            overdue_days = self.holidays.business_days_between(data.due.date(), end.date())
        else:
            overdue_days = calendar_days
        effective_days = max(0, overdue_days - grace)
        base_fine = round(effective_days * rate, 2)

        exemptions = self._exemptions(data.user_id, classification)
        discount = round(sum(base_fine * pct for pct in exemptions.values()), 2)
        fine = max(0.0, round(base_fine - discount, 2))

        cap_applied = None
        if fine > caps[CAP_PER_BOOK]:
            fine = caps[CAP_PER_BOOK]
            cap_applied = CAP_PER_BOOK

        if data.user_id and fine > 0:
            fine, cap_applied = self._apply_user_caps(
                data, fine, caps, cap_applied, now
            )

        result.daily_rate = rate
        result.overdue_days = overdue_days
        result.effective_overdue_days = effective_days
        result.grace_period = grace
        result.exemptions = list(exemptions)
        result.cap_applied = cap_applied
        result.total_fine = round(fine, 2)
        result.breakdown = FineBreakdown(
            base_fine=base_fine,
            grace_discount=round((overdue_days - effective_days) * rate, 2),
            exemption_discount=discount,
            holiday_discount=round((calendar_days - overdue_days) * rate, 2),
            final_fine=result.total_fine,
        )
        result.message = _describe(result, self.config.CURRENCY_SYMBOL)
        return result

    def _exemptions(self, user_id: Optional[str],
                    classification: UserClassification) -> Dict[str, float]:
        # Each discount is a share of the base fine; they add up, not compound.
        exemptions = {}
        if not user_id:
            return exemptions
        history = self.classifier.borrowing_history(user_id)
        if history.total_borrows <= 1:
            exemptions[EXEMPTION_FIRST_TIME] = self.config.FIRST_TIME_BORROWER_DISCOUNT
        if (history.reliability_score >= self.config.EXCELLENT_RELIABILITY_SCORE
                and history.total_borrows >= self.config.EXCELLENT_MIN_BORROWS):
            exemptions[EXEMPTION_EXCELLENT_HISTORY] = self.config.EXCELLENT_HISTORY_DISCOUNT
        if classification == UserClassification.FACULTY:
            exemptions[EXEMPTION_FACULTY_RESEARCH] = self.config.FACULTY_RESEARCH_DISCOUNT
        return exemptions

    def _apply_user_caps(self, data: FineInput, fine: float, caps: Dict[str, float],
                         cap_applied: Optional[str], now: datetime):
        try:
            monthly = self.monthly_fines(data.user_id, now, data.borrow_id)
            outstanding = self.outstanding_fines(data.user_id, data.borrow_id)
        except Exception as e:
            logger.warning(f"Could not read fine totals for {data.user_id}: {e}")
            return fine, cap_applied

        monthly_headroom = max(0.0, round(caps[CAP_MONTHLY] - monthly, 2))
        if fine > monthly_headroom:
            fine, cap_applied = monthly_headroom, CAP_MONTHLY

        total_headroom = max(0.0, round(caps[CAP_TOTAL] - outstanding, 2))
        if fine > total_headroom:
            fine, cap_applied = total_headroom, CAP_TOTAL

        return fine, cap_applied


def _describe(result: FineResult, symbol: str) -> str:
    if result.total_fine == 0 and result.effective_overdue_days == 0:
        return f'Returned within the {result.grace_period}-day grace period. No fine applied.'
    if result.total_fine == 0:
        return f'{result.effective_overdue_days} day(s) overdue, fully covered by exemptions or caps.'
    return (f'{result.effective_overdue_days} day(s) overdue after a '
            f'{result.grace_period}-day grace period. '
            f'Fine: {format_money(result.total_fine, symbol)}.')


class FineEngine:
    """Entry point bundling both calculators."""

    def __init__(self, advanced: Optional[AdvancedFineCalculator] = None,
                 simple: Optional[SimpleFineCalculator] = None,
                 borrow_store=Borrow, config=Config):
        self.config = config
        self.advanced = advanced or AdvancedFineCalculator(config=config)
        self.simple = simple or SimpleFineCalculator(config=config)
        self.borrow_store = borrow_store

    @property
    def holidays(self) -> HolidayManager:
        return self.advanced.holidays

    @property
    def classifier(self) -> UserClassifier:
        return self.advanced.classifier

    def calculate(self, record, now: Optional[datetime] = None) -> FineResult:
        return self.advanced.calculate(record, now)

    def calculate_simple(self, record, now: Optional[datetime] = None) -> FineResult:
        return self.simple.calculate(record, now)

    def load(self, borrow_or_data) -> Union[Borrow, Mapping[str, Any], None]:
        """Resolve a borrow id into its record; mappings pass through."""
        if isinstance(borrow_or_data, (Borrow, Mapping)):
            return borrow_or_data
        return self.borrow_store.get_by_id(borrow_or_data)

    def calculate_fine(self, borrow_or_data, now: Optional[datetime] = None) -> FineResult:
        """Calculate from a borrow id, a Borrow or a dict of due/return dates.

        An unknown borrow id yields a zero fine.
        """
        record = self.load(borrow_or_data)
        if record is None:
            return FineResult(message='Borrow record not found. No fine calculated.',
                              borrow_id=str(borrow_or_data))
        return self.calculate(record, now)

    def monthly_fines(self, user_id: str, now: Optional[datetime] = None) -> float:
        return self.advanced.monthly_fines(user_id, now)

    def outstanding_fines(self, user_id: str) -> float:
        return self.advanced.outstanding_fines(user_id)

    def is_calculation_day_special(self, day: Optional[Union[date, datetime]] = None) -> bool:
        """True when `day` (default today) is a weekend or holiday."""
        day = day or date.today()
        return self.holidays.is_weekend(day) or self.holidays.is_holiday(day)


__all__ = [
    'AdvancedFineCalculator',
    'FineBreakdown',
    'FineEngine',
    'FineInput',
    'FineResult',
    'SimpleFineCalculator',
    'format_money',
    'legacy_fine_calculator',
]
