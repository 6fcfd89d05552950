"""
State persistence for Pool Backup Autopilot using SQLite.

Stores the backup service record (configuration and observable status) plus
any other small typed values the daemon needs to survive restarts.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


class StateError(Exception):
    """Raised when state cannot be read from or written to the database."""


class StateManager:
    """
    Thread-safe key-value store backed by SQLite.

    Values are stored together with a type tag so they come back as the same
    Python type. Pydantic models are stored as JSON through get_model() and
    set_model(). update_model() does a read-modify-write of a model as one
    transaction, which is safe across processes sharing the database file.

    Example:
        >>> state = StateManager(Path("/var/lib/pool-autopilot/state.db"))
        >>> state.set("scheduler.last_tick", datetime.now())
        >>> record = state.get_model("services.backup", BackupServiceRecord)
    """

    def __init__(self, db_path: Path, timeout: float = 5.0):
        """
        Initialize state manager with database path.

        Creates the database file, its parent directory and the schema if
        they don't exist.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait for another writer to release the database

        Raises:
            StateError: If the database cannot be initialized
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._lock = threading.Lock()

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateError(f"Cannot create state directory {self.db_path.parent}: {e}") from e

        with self._connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    type TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection under the lock and commit on success."""
        with self._lock:
            try:
                conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
            except sqlite3.Error as e:
                raise StateError(f"Cannot open state database {self.db_path}: {e}") from e
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StateError(f"State database error: {e}") from e
            finally:
                conn.close()

    @staticmethod
    def _serialize_value(value: Any) -> tuple[str, str]:
        """
        Serialize value to string and determine type.

        Raises:
            TypeError: If value type is not supported
        """
        if value is None:
            return ("null", "none")
        if isinstance(value, bool):
            # bool is a subclass of int
            return (str(value), "bool")
        if isinstance(value, int):
            return (str(value), "int")
        if isinstance(value, float):
            return (str(value), "float")
        if isinstance(value, str):
            return (value, "str")
        if isinstance(value, datetime):
            return (value.isoformat(), "datetime")
        if isinstance(value, (dict, list)):
            return (json.dumps(value), "json")
        raise TypeError(f"Unsupported type for state value: {type(value)}")

    @staticmethod
    def _deserialize_value(value_str: str, type_name: str) -> Any:
        """
        Deserialize value from string based on type.

        Raises:
            ValueError: If the stored type tag is unknown
        """
        if type_name == "none":
            return None
        if type_name == "bool":
            return value_str == "True"
        if type_name == "int":
            return int(value_str)
        if type_name == "float":
            return float(value_str)
        if type_name == "str":
            return value_str
        if type_name == "datetime":
            return datetime.fromisoformat(value_str)
        if type_name == "json":
            return json.loads(value_str)
        raise ValueError(f"Unknown type in database: {type_name}")

    def get(self, key: str, default: Optional[Any] = None) -> Optional[Any]:
        """
        Get value for key, or default if the key doesn't exist.

        Example:
            >>> state.get("nonexistent.key", "default_value")
            'default_value'
        """
        with self._connection() as conn:
            row = conn.execute(
                "SELECT value, type FROM state WHERE key = ?", (key,)
            ).fetchone()

        if row is None:
            return default

        value_str, type_name = row
        return self._deserialize_value(value_str, type_name)

    def set(self, key: str, value: Any) -> None:
        """
        Set value for key, replacing any previous value.

        Raises:
            TypeError: If value type is not supported
        """
        value_str, type_name = self._serialize_value(value)

        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO state (key, value, type, updated_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                """,
                (key, value_str, type_name),
            )

    def get_model(self, key: str, model: Type[ModelT]) -> Optional[ModelT]:
        """
        Load a Pydantic model stored with set_model().

        Args:
            key: Key the model was stored under
            model: Model class to validate the stored JSON with

        Returns:
            Model instance, or None if the key doesn't exist

        Raises:
            StateError: If the stored value no longer validates
        """
        raw = self.get(key)
        if raw is None:
            return None
        return self._validate_model(key, raw, model)

    def set_model(self, key: str, value: BaseModel) -> None:
        """Persist a Pydantic model as JSON under key."""
        self.set(key, value.model_dump(mode="json"))

    def update_model(
        self,
        key: str,
        model: Type[ModelT],
        change: Callable[[Optional[ModelT]], Optional[ModelT]],
    ) -> Optional[ModelT]:
        """
        Read, change and write a model inside one write transaction.

        The transaction is opened with BEGIN IMMEDIATE, so it holds the
        database write lock from the read to the write. Another process or
        StateManager calling update_model() on the same database waits for it
        (up to the connect timeout) and then sees the committed value.

        Args:
            key: Key the model is stored under
            model: Model class to validate the stored JSON with
            change: Called with the stored model (or None if the key doesn't
                exist). Returns the model to write, or None to leave the
                stored value untouched.

        Returns:
            Whatever change returned

        Raises:
            StateError: If the database is busy past the timeout or the stored
                value no longer validates
        """
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT value, type FROM state WHERE key = ?", (key,)
            ).fetchone()

            current = None
            if row is not None:
                raw = self._deserialize_value(*row)
                if raw is not None:
                    current = self._validate_model(key, raw, model)

            updated = change(current)
            if updated is not None:
                value_str, type_name = self._serialize_value(updated.model_dump(mode="json"))
                conn.execute(
                    """
                    INSERT OR REPLACE INTO state (key, value, type, updated_at)
                    VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                    """,
                    (key, value_str, type_name),
                )
        return updated

    @staticmethod
    def _validate_model(key: str, raw: Any, model: Type[ModelT]) -> ModelT:
        try:
            return model.model_validate(raw)
        except ValidationError as e:
            raise StateError(f"Stored value for '{key}' is not a valid {model.__name__}: {e}") from e
