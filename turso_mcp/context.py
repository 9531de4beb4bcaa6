"""
Session database context.

Tools take an optional `database` argument. When it is given, that database
becomes the session's current one; when it is omitted, the tool runs against
the current database, or the configured default if no database was ever named.
"""

import threading

from turso_mcp.errors import NoDatabaseSelected


class DatabaseContext:
    """
    Remembers the last explicitly named database and resolves effective names.

    Starts unset. Once bound it stays bound; there is no way back to unset.
    """

    def __init__(self, default_database: str | None = None):
        self.default_database = default_database or None
        self._current: str | None = None
        self._lock = threading.Lock()

    @property
    def current(self) -> str | None:
        with self._lock:
            return self._current

    def set_current(self, name: str) -> None:
        if not name:
            raise ValueError("Database name must be a non-empty string")
        with self._lock:
            self._current = name

    def resolve(self, explicit_name: str | None = None) -> str:
        """
        Return the database an operation should run against.

        explicit_name -> session's current database -> configured default.
        An explicit name also becomes the session's current database.

        Raises:
            NoDatabaseSelected: nothing to fall back on
        """
        with self._lock:
            if explicit_name:
                self._current = explicit_name
                return explicit_name
            if self._current:
                return self._current
        if self.default_database:
            return self.default_database
        raise NoDatabaseSelected()
