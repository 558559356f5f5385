"""Fine audit entry.

Manual fine changes are logged as immutable entries embedded in the borrow
record's `fine_audit_trail` column.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict

from library_fines.utils.dates import DATETIME_FORMAT


@dataclass(frozen=True)
class FineAuditEntry:
    timestamp: str
    user_id: str
    borrow_id: str
    old_fine: float
    new_fine: float
    reason: str
    notes: str = ''
    adjustment: float = field(init=False)

    def __post_init__(self):
        # Never taken from the caller.
        object.__setattr__(self, 'old_fine', round(float(self.old_fine), 2))
        object.__setattr__(self, 'new_fine', round(float(self.new_fine), 2))
        object.__setattr__(self, 'adjustment', round(self.new_fine - self.old_fine, 2))

    @classmethod
    def create(cls, user_id: str, borrow_id: str, old_fine: float, new_fine: float,
               reason: str, notes: str = '') -> 'FineAuditEntry':
        return cls(
            timestamp=datetime.now().strftime(DATETIME_FORMAT),
            user_id=user_id,
            borrow_id=borrow_id,
            old_fine=old_fine,
            new_fine=new_fine,
            reason=reason,
            notes=notes or '',
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FineAuditEntry':
        return cls(
            timestamp=data['timestamp'],
            user_id=data['user_id'],
            borrow_id=data['borrow_id'],
            old_fine=data['old_fine'],
            new_fine=data['new_fine'],
            reason=data.get('reason', ''),
            notes=data.get('notes', ''),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
