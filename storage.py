import sqlite3
import logging
from pathlib import Path
from typing import Dict, List, Optional

from config import CLIENT_STATE_DB

log = logging.getLogger("uvicorn.error")

VERSION_KEY = "blazeVersion"
PENDING_CONTACT_KEY = "pendingContactForm"
SCROLL_KEY_PREFIX = "scrollPos_"


def scroll_key(route: str) -> str:
    return f"{SCROLL_KEY_PREFIX}{route}"


class SessionStore:
    """Transient key/value state that lives for one page load."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)

    def clear(self) -> None:
        self._data.clear()


class KeyValueStore:
    """Durable key/value state shared by every page of the profile (sqlite).

    The store never raises: when the database is unavailable each call logs and
    degrades to a no-op, so callers fall back to non-persistent behaviour.
    """

    def __init__(self, path: str = CLIENT_STATE_DB):
        self.path = path
        self._conn: Optional[sqlite3.Connection] = None
        try:
            if path != ":memory:":
                Path(path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
            self._conn.execute("CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
        except (sqlite3.Error, OSError) as e:
            log.warning("client state store unavailable at %s: %s", path, e)
            self._conn = None

    @property
    def available(self) -> bool:
        return self._conn is not None

    def get_item(self, key: str) -> Optional[str]:
        if self._conn is None:
            return None
        try:
            row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            log.warning("client state read failed for %s: %s", key, e)
            return None
        return row[0] if row else None

    def set_item(self, key: str, value: str) -> None:
        if self._conn is None:
            return
        try:
            self._conn.execute(
                "INSERT INTO kv (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, str(value)),
            )
        except sqlite3.Error as e:
            log.warning("client state write failed for %s: %s", key, e)

    def remove_item(self, key: str) -> None:
        if self._conn is None:
            return
        try:
            self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        except sqlite3.Error as e:
            log.warning("client state delete failed for %s: %s", key, e)

    def keys(self) -> List[str]:
        if self._conn is None:
            return []
        try:
            return [r[0] for r in self._conn.execute("SELECT key FROM kv ORDER BY key")]
        except sqlite3.Error as e:
            log.warning("client state listing failed: %s", e)
            return []

    def clear(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.execute("DELETE FROM kv")
        except sqlite3.Error as e:
            log.warning("client state clear failed: %s", e)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
