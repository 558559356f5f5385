"""Single-commit units of work with one retry on a version conflict."""
import logging
from typing import Callable, TypeVar

from library_fines.models.database import get_db
from library_fines.utils.errors import Conflict, StaleRecordError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def run_atomic(work: Callable[[], T], description: str) -> T:
    """Run `work` and commit once, or roll everything back.

    `work` must re-read the rows it changes: on a `StaleRecordError` the
    transaction is rolled back and `work` runs one more time before the
    conflict is surfaced.
    """
    db = get_db()
    for attempt in (1, 2):
        try:
            result = work()
            db.commit()
            return result
        except StaleRecordError as e:
            db.rollback()
            if attempt == 2:
                logger.warning(f"Giving up on {description} after a second conflict: {e}")
                raise Conflict('The record was modified by another request. Please retry.')
            logger.info(f"Retrying {description} after conflict: {e}")
        except Exception:
            db.rollback()
            raise
