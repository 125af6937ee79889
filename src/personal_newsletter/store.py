from abc import ABC, abstractmethod

from .db import get_preferences
from .models import UserPreferences


class PreferenceStore(ABC):
    """Read access to saved user preferences."""

    @abstractmethod
    def get_by_user_id(self, user_id: str) -> UserPreferences | None:
        """Return the user's preferences, or None when there is no record."""
        ...


class SqlitePreferenceStore(PreferenceStore):
    def __init__(self, db_path: str):
        self.db_path = db_path

    def get_by_user_id(self, user_id: str) -> UserPreferences | None:
        return get_preferences(self.db_path, user_id)
