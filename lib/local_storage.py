import logging
import sqlite3
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS local_storage (
    browser_id TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (browser_id, key)
)
"""

class LocalStorage:
    """Durable string slots scoped to one anonymous browser.

    Mirrors the browser's localStorage API: values are plain strings and a
    missing key reads as ``None``.
    """

    def __init__(self, db_path: Union[str, Path], browser_id: str):
        self.db_path = str(db_path)
        self.browser_id = browser_id
        self._init_db()

    def _get_conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        conn = self._get_conn()
        try:
            conn.execute(SCHEMA)
            conn.commit()
        finally:
            conn.close()

    def get_item(self, key: str) -> Optional[str]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT value FROM local_storage WHERE browser_id=? AND key=?",
                (self.browser_id, key)
            ).fetchone()
        finally:
            conn.close()
        return row['value'] if row else None

    def set_item(self, key: str, value: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO local_storage (browser_id, key, value) VALUES (?,?,?)
                   ON CONFLICT(browser_id, key) DO UPDATE SET value=excluded.value""",
                (self.browser_id, key, value)
            )
            conn.commit()
        finally:
            conn.close()
        logger.debug(f"Stored {key} for browser {self.browser_id}")

    def remove_item(self, key: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                "DELETE FROM local_storage WHERE browser_id=? AND key=?",
                (self.browser_id, key)
            )
            conn.commit()
        finally:
            conn.close()
