import hashlib
import logging
import secrets
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple
from uuid import uuid4

logger = logging.getLogger(__name__)

KEY_PREFIX = "pdftk_"


@dataclass
class APIKeyRecord:
    id: str
    owner: str
    prefix: str
    is_active: bool
    created_at: str

    def to_dict(self) -> dict:
        return asdict(self)


class KeyManager:
    """
    Manages API keys using a local SQLite database.

    Only the SHA-256 hash of a key is stored; the raw key is returned once,
    at creation time. The owner of a validated key becomes the ``user_id``
    on every File and Job created with it.
    """

    def __init__(self, db_path: str = "data/api_keys.db"):
        self.db_path = Path(db_path)
        self._init_db()

    @contextmanager
    def _get_conn(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        """Initialize the database schema if it doesn't exist."""
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS api_keys (
                    id TEXT PRIMARY KEY,
                    key_hash TEXT UNIQUE NOT NULL,
                    prefix TEXT NOT NULL,
                    owner TEXT NOT NULL,
                    is_active BOOLEAN DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            """)

    def _hash_key(self, key: str) -> str:
        """SHA-256 hash of the API key."""
        return hashlib.sha256(key.encode()).hexdigest()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> APIKeyRecord:
        return APIKeyRecord(
            id=row["id"],
            owner=row["owner"],
            prefix=row["prefix"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )

    def create_key(self, owner: str) -> Tuple[str, APIKeyRecord]:
        """
        Generate a new API key for an owner.

        Returns:
            (raw_api_key, record). The raw key is shown only once here.
        """
        if not owner or not owner.strip():
            raise ValueError("API key owner must not be empty")

        raw_key = f"{KEY_PREFIX}{secrets.token_urlsafe(32)}"
        record = APIKeyRecord(
            id=uuid4().hex,
            owner=owner.strip(),
            prefix=raw_key[: len(KEY_PREFIX) + 4],
            is_active=True,
            created_at=datetime.now(timezone.utc).isoformat(),
        )

        with self._get_conn() as conn:
            conn.execute(
                """
                INSERT INTO api_keys (id, key_hash, prefix, owner, is_active, created_at)
                VALUES (?, ?, ?, ?, 1, ?)
                """,
                (record.id, self._hash_key(raw_key), record.prefix, record.owner, record.created_at),
            )
        logger.info(f"Created API key {record.prefix}... for {record.owner}")
        return raw_key, record

    def validate_key(self, key: str) -> Optional[APIKeyRecord]:
        """Return the record of an active key, or None."""
        if not key:
            return None

        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM api_keys WHERE key_hash = ? AND is_active = 1",
                (self._hash_key(key),),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def list_keys(self) -> List[APIKeyRecord]:
        """List all API keys (admin only)."""
        with self._get_conn() as conn:
            rows = conn.execute("SELECT * FROM api_keys ORDER BY created_at DESC").fetchall()
        return [self._row_to_record(row) for row in rows]

    def revoke_key(self, key_id: str) -> bool:
        """Revoke a key by ID."""
        with self._get_conn() as conn:
            cursor = conn.execute("UPDATE api_keys SET is_active = 0 WHERE id = ?", (key_id,))
            revoked = cursor.rowcount > 0
        if revoked:
            logger.info(f"Revoked API key {key_id}")
        return revoked
