import time
import sqlite3
import logging
import threading
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple

from config import CONTACTS_DB_PATH

log = logging.getLogger("uvicorn.error")

CONTACT_FIELDS = ("name", "email", "phone", "inquiry_type", "message")

# sqlite INTEGER range; larger Python ints overflow on bind
SQLITE_MAX_INT = 2**63 - 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS contacts (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    name         TEXT NOT NULL DEFAULT '',
    email        TEXT NOT NULL DEFAULT '',
    phone        TEXT NOT NULL DEFAULT '',
    inquiry_type TEXT NOT NULL DEFAULT '',
    message      TEXT NOT NULL DEFAULT '',
    created_at   REAL NOT NULL
)
"""


class ContactStore:
    """The `contacts` table behind the contact form and the admin listing."""

    def __init__(self, path: str = CONTACTS_DB_PATH):
        self.path = path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock, self._conn:
            self._conn.execute(_SCHEMA)

    def add(self, *, name: str = "", email: str = "", phone: str = "",
            inquiry_type: str = "", message: str = "", created_at: Optional[float] = None) -> int:
        values = [(v or "").strip() for v in (name, email, phone, inquiry_type, message)]
        with self._lock, self._conn:
            cur = self._conn.execute(
                "INSERT INTO contacts (name, email, phone, inquiry_type, message, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (*values, created_at if created_at is not None else time.time()),
            )
        log.info("contact submission stored id=%s inquiry=%s", cur.lastrowid, values[3] or "-")
        return int(cur.lastrowid)

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM contacts").fetchone()
        return int(row[0])

    def page(self, page: int = 1, per_page: int = 10) -> Tuple[List[Dict[str, Any]], int]:
        """Return (rows newest first, total)."""
        page = max(1, page)
        offset = (page - 1) * per_page
        if offset > SQLITE_MAX_INT:
            return [], self.count()
        with self._lock:
            total = int(self._conn.execute("SELECT COUNT(*) FROM contacts").fetchone()[0])
            rows = self._conn.execute(
                "SELECT * FROM contacts ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (per_page, offset),
            ).fetchall()
        return [dict(r) for r in rows], total

    def exists(self, contact_id: int) -> bool:
        if abs(contact_id) > SQLITE_MAX_INT:
            return False
        with self._lock:
            row = self._conn.execute("SELECT id FROM contacts WHERE id = ?", (contact_id,)).fetchone()
        return row is not None

    def delete(self, contact_id: int) -> bool:
        if abs(contact_id) > SQLITE_MAX_INT:
            return False
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM contacts WHERE id = ?", (contact_id,))
        return cur.rowcount > 0

    def close(self) -> None:
        self._conn.close()
