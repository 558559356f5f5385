"""Runtime-editable fine settings.

Admins can override the daily rates and the caps without a redeploy. The
overrides are stored as one JSON document; anything missing falls back to the
static `Config` values.
"""
import json
from typing import Any, Dict

from library_fines.models.database import get_db

FINE_SETTING_KEYS = (
    'fine_rates',
    'per_book_fine_cap',
    'monthly_fine_cap',
    'total_fine_cap',
)


class SystemConfig:
    """Fine settings stored in the `system_config` table."""

    @staticmethod
    def get() -> Dict[str, Any]:
        """Get the stored overrides (empty when none were saved)."""
        db = get_db()
        result = db.execute('SELECT config_data FROM system_config WHERE id = 1').fetchone()
        if not result:
            return {}
        try:
            data = json.loads(result['config_data'])
        except ValueError:
            return {}
        return {key: value for key, value in data.items() if key in FINE_SETTING_KEYS}

    @staticmethod
    def update(config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Merge `config_data` into the stored overrides.

        Raises:
            ValueError: an unknown key or a negative cap was supplied.
        """
        unknown = set(config_data) - set(FINE_SETTING_KEYS)
        if unknown:
            raise ValueError(f"Unknown fine settings: {', '.join(sorted(unknown))}")
        for key in ('per_book_fine_cap', 'monthly_fine_cap', 'total_fine_cap'):
            if key in config_data and float(config_data[key]) < 0:
                raise ValueError(f'{key} cannot be negative')

        merged = SystemConfig.get()
        merged.update(config_data)

        db = get_db()
        config_json = json.dumps(merged)
        result = db.execute('SELECT id FROM system_config WHERE id = 1').fetchone()
        if result:
            db.execute('UPDATE system_config SET config_data = ? WHERE id = 1', (config_json,))
        else:
            db.execute('INSERT INTO system_config (id, config_data) VALUES (1, ?)', (config_json,))
        db.commit()
        return merged
