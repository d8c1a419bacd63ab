"""SQLite persistence: engine policy, ORM tables and migrations."""

from renewal_hub.storage.database import Database

__all__ = ["Database"]
