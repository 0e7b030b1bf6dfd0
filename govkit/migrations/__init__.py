"""Concrete migrations, one module per migration id."""

from govkit.migrations.change_feeds_to_api3 import ChangeFeedsToApi3

MIGRATIONS = {
    ChangeFeedsToApi3.migration_id: ChangeFeedsToApi3,
}

__all__ = ["ChangeFeedsToApi3", "MIGRATIONS"]
