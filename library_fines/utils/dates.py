"""Helpers for the date strings stored in the database."""
from datetime import date, datetime
from typing import Optional, Union

DATETIME_FORMAT = '%Y-%m-%d %H:%M:%S'
DATE_FORMAT = '%Y-%m-%d'


def to_db(value: Optional[Union[date, datetime, str]]) -> Optional[str]:
    """Serialize a date or datetime into the storage format."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, datetime):
        return value.strftime(DATETIME_FORMAT)
    return value.strftime(DATE_FORMAT)


def parse_datetime(value: Optional[Union[date, datetime, str]]) -> Optional[datetime]:
    """Parse a stored value into a datetime, returning None when empty or invalid."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    for fmt in (DATETIME_FORMAT, DATE_FORMAT, '%Y-%m-%dT%H:%M:%S', '%Y-%m-%dT%H:%M:%S.%f'):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    return None


def parse_date(value: Optional[Union[date, datetime, str]]) -> Optional[date]:
    """Parse a stored value into a calendar date."""
    parsed = parse_datetime(value)
    return parsed.date() if parsed else None


def now_str() -> str:
    return datetime.now().strftime(DATETIME_FORMAT)
