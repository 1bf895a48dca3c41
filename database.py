# database.py
import sqlite3
import logging
import os
import json
import time
import uuid
import datetime as dt
from typing import List, Dict, Optional, Any, Tuple, Callable, Protocol

logger = logging.getLogger(__name__)
if not logger.hasHandlers():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - [%(module)s:%(lineno)d] - %(message)s')

DATABASE_NAME = "sudoku_arena.db"
DB_PATH = os.getenv("DATABASE_PATH", os.path.join(os.path.dirname(os.path.abspath(__file__)), DATABASE_NAME))
STORE_BACKEND = os.getenv("STORE_BACKEND", "sqlite")

USERS_HASH = "users"
USER_IDS_HASH = "user_ids"


class StoreError(Exception):
    """Raised when the backing store cannot complete an operation."""


class KeyValueStore(Protocol):
    """Operations the game and leaderboard logic need from a key-value backend.

    Values are plain strings (JSON documents). Ranges are inclusive on both ends and
    negative indexes count from the end, so ``(0, -1)`` means everything.
    Ordered sets sort by score ascending; equal scores keep insertion order.
    """

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def set_with_expiry(self, key: str, value: str, seconds: int) -> None: ...

    def purge_expired(self) -> int: ...

    def delete(self, key: str) -> None: ...

    def hash_get(self, name: str, field: str) -> Optional[str]: ...

    def hash_set(self, name: str, field: str, value: str) -> None: ...

    def ordered_set_add(self, name: str, score: float, member: str) -> None: ...

    def ordered_set_range(self, name: str, start: int, end: int) -> List[Tuple[str, float]]: ...

    def ordered_set_cardinality(self, name: str) -> int: ...

    def list_prepend(self, name: str, value: str) -> None: ...

    def list_range(self, name: str, start: int, end: int) -> List[str]: ...

    def list_length(self, name: str) -> int: ...

    def ping(self) -> bool: ...


def resolve_range(start: int, end: int, length: int) -> Tuple[int, int]:
    """Turn an inclusive (start, end) pair into (offset, count) for a sequence of ``length``."""
    if start < 0:
        start = max(length + start, 0)
    if end < 0:
        end = length + end
    end = min(end, length - 1)
    if start > end:
        return 0, 0
    return start, end - start + 1


class InMemoryStore:
    """Dict-backed store. Used by the test suite and by ``STORE_BACKEND=memory``."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._zsets: Dict[str, Dict[str, Tuple[float, int]]] = {}
        self._lists: Dict[str, List[str]] = {}
        self._seq = 0

    def get(self, key: str) -> Optional[str]:
        item = self._values.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._values[key]
            return None
        return value

    def set(self, key: str, value: str) -> None:
        self._values[key] = (value, None)

    def set_with_expiry(self, key: str, value: str, seconds: int) -> None:
        self.purge_expired()
        self._values[key] = (value, self._clock() + seconds)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._values.items()
                   if expires_at is not None and expires_at <= now]
        for key in expired:
            del self._values[key]
        return len(expired)

    def delete(self, key: str) -> None:
        for container in (self._values, self._hashes, self._zsets, self._lists):
            container.pop(key, None)

    def hash_get(self, name: str, field: str) -> Optional[str]:
        return self._hashes.get(name, {}).get(field)

    def hash_set(self, name: str, field: str, value: str) -> None:
        self._hashes.setdefault(name, {})[field] = value

    def ordered_set_add(self, name: str, score: float, member: str) -> None:
        members = self._zsets.setdefault(name, {})
        if member in members:
            members[member] = (score, members[member][1])
            return
        self._seq += 1
        members[member] = (score, self._seq)

    def ordered_set_range(self, name: str, start: int, end: int) -> List[Tuple[str, float]]:
        members = self._zsets.get(name, {})
        ordered = sorted(members.items(), key=lambda item: item[1])
        offset, count = resolve_range(start, end, len(ordered))
        return [(member, score) for member, (score, _) in ordered[offset:offset + count]]

    def ordered_set_cardinality(self, name: str) -> int:
        return len(self._zsets.get(name, {}))

    def list_prepend(self, name: str, value: str) -> None:
        self._lists.setdefault(name, []).insert(0, value)

    def list_range(self, name: str, start: int, end: int) -> List[str]:
        values = self._lists.get(name, [])
        offset, count = resolve_range(start, end, len(values))
        return values[offset:offset + count]

    def list_length(self, name: str) -> int:
        return len(self._lists.get(name, []))

    def ping(self) -> bool:
        return True


class SQLiteStore:
    """Key-value store kept in a single SQLite file.

    Every call opens its own connection and commits before returning, so each
    operation is atomic on its own. Expired keys are dropped when read, and
    all expired keys are swept whenever an expiring key is written.
    """

    def __init__(self, db_path: str = DB_PATH, clock: Callable[[], float] = time.time) -> None:
        self.db_path = db_path
        self._clock = clock
        self.init_db()

    def get_db_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, action: str, work: Callable[[sqlite3.Cursor], Any]) -> Any:
        conn = None
        try:
            conn = self.get_db_connection()
            cursor = conn.cursor()
            result = work(cursor)
            conn.commit()
            return result
        except sqlite3.Error as e:
            logger.error(f"Database error during {action}: {e}", exc_info=True)
            raise StoreError(f"Store operation '{action}' failed: {e}") from e
        finally:
            if conn:
                conn.close()

    def init_db(self, force_recreate: bool = False) -> None:
        def work(cursor: sqlite3.Cursor) -> None:
            if force_recreate:
                logger.warning(f"Forcing re-creation of tables in {self.db_path}. ALL EXISTING DATA WILL BE LOST.")
                for table in ("kv", "hashes", "zsets", "lists"):
                    cursor.execute(f"DROP TABLE IF EXISTS {table}")
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_kv_expires_at ON kv (expires_at)")
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS hashes (
                    name TEXT NOT NULL,
                    field TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (name, field)
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS zsets (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    member TEXT NOT NULL,
                    score REAL NOT NULL,
                    UNIQUE (name, member)
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_zsets_name_score ON zsets (name, score, seq)")
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS lists (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    value TEXT NOT NULL
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_lists_name_seq ON lists (name, seq DESC)")

        self._execute("init_db", work)
        logger.info(f"Store schema checked/initialized successfully at {self.db_path}.")

    def get(self, key: str) -> Optional[str]:
        def work(cursor: sqlite3.Cursor) -> Optional[str]:
            cursor.execute("SELECT value, expires_at FROM kv WHERE key = ?", (key,))
            row = cursor.fetchone()
            if row is None:
                return None
            if row["expires_at"] is not None and row["expires_at"] <= self._clock():
                cursor.execute("DELETE FROM kv WHERE key = ?", (key,))
                logger.debug(f"Key '{key}' expired and was removed.")
                return None
            return row["value"]

        return self._execute(f"get {key}", work)

    def _put(self, key: str, value: str, expires_at: Optional[float]) -> None:
        self._execute(f"set {key}", lambda cursor: cursor.execute("""
            INSERT INTO kv (key, value, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at
        """, (key, value, expires_at)))

    @staticmethod
    def _delete_expired(cursor: sqlite3.Cursor, now: float) -> int:
        cursor.execute("DELETE FROM kv WHERE expires_at IS NOT NULL AND expires_at <= ?", (now,))
        return cursor.rowcount

    def set(self, key: str, value: str) -> None:
        self._put(key, value, None)

    def set_with_expiry(self, key: str, value: str, seconds: int) -> None:
        now = self._clock()

        def work(cursor: sqlite3.Cursor) -> None:
            removed = self._delete_expired(cursor, now)
            if removed:
                logger.info(f"Purged {removed} expired key(s) from {self.db_path}.")
            cursor.execute("""
                INSERT INTO kv (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at
            """, (key, value, now + seconds))

        self._execute(f"set {key}", work)

    def purge_expired(self) -> int:
        removed = self._execute("purge_expired", lambda cursor: self._delete_expired(cursor, self._clock()))
        logger.info(f"Purged {removed} expired key(s) from {self.db_path}.")
        return removed

    def delete(self, key: str) -> None:
        def work(cursor: sqlite3.Cursor) -> None:
            cursor.execute("DELETE FROM kv WHERE key = ?", (key,))
            for table in ("hashes", "zsets", "lists"):
                cursor.execute(f"DELETE FROM {table} WHERE name = ?", (key,))

        self._execute(f"delete {key}", work)

    def hash_get(self, name: str, field: str) -> Optional[str]:
        def work(cursor: sqlite3.Cursor) -> Optional[str]:
            cursor.execute("SELECT value FROM hashes WHERE name = ? AND field = ?", (name, field))
            row = cursor.fetchone()
            return row["value"] if row else None

        return self._execute(f"hash_get {name}", work)

    def hash_set(self, name: str, field: str, value: str) -> None:
        self._execute(f"hash_set {name}", lambda cursor: cursor.execute("""
            INSERT INTO hashes (name, field, value) VALUES (?, ?, ?)
            ON CONFLICT(name, field) DO UPDATE SET value = excluded.value
        """, (name, field, value)))

    def ordered_set_add(self, name: str, score: float, member: str) -> None:
        self._execute(f"ordered_set_add {name}", lambda cursor: cursor.execute("""
            INSERT INTO zsets (name, member, score) VALUES (?, ?, ?)
            ON CONFLICT(name, member) DO UPDATE SET score = excluded.score
        """, (name, member, score)))

    def ordered_set_range(self, name: str, start: int, end: int) -> List[Tuple[str, float]]:
        def work(cursor: sqlite3.Cursor) -> List[Tuple[str, float]]:
            cursor.execute("SELECT COUNT(*) FROM zsets WHERE name = ?", (name,))
            offset, count = resolve_range(start, end, cursor.fetchone()[0])
            if count == 0:
                return []
            cursor.execute("""
                SELECT member, score FROM zsets WHERE name = ?
                ORDER BY score ASC, seq ASC LIMIT ? OFFSET ?
            """, (name, count, offset))
            return [(row["member"], row["score"]) for row in cursor.fetchall()]

        return self._execute(f"ordered_set_range {name}", work)

    def ordered_set_cardinality(self, name: str) -> int:
        def work(cursor: sqlite3.Cursor) -> int:
            cursor.execute("SELECT COUNT(*) FROM zsets WHERE name = ?", (name,))
            return cursor.fetchone()[0]

        return self._execute(f"ordered_set_cardinality {name}", work)

    def list_prepend(self, name: str, value: str) -> None:
        self._execute(f"list_prepend {name}", lambda cursor: cursor.execute(
            "INSERT INTO lists (name, value) VALUES (?, ?)", (name, value)))

    def list_range(self, name: str, start: int, end: int) -> List[str]:
        def work(cursor: sqlite3.Cursor) -> List[str]:
            cursor.execute("SELECT COUNT(*) FROM lists WHERE name = ?", (name,))
            offset, count = resolve_range(start, end, cursor.fetchone()[0])
            if count == 0:
                return []
            cursor.execute("""
                SELECT value FROM lists WHERE name = ?
                ORDER BY seq DESC LIMIT ? OFFSET ?
            """, (name, count, offset))
            return [row["value"] for row in cursor.fetchall()]

        return self._execute(f"list_range {name}", work)

    def list_length(self, name: str) -> int:
        def work(cursor: sqlite3.Cursor) -> int:
            cursor.execute("SELECT COUNT(*) FROM lists WHERE name = ?", (name,))
            return cursor.fetchone()[0]

        return self._execute(f"list_length {name}", work)

    def ping(self) -> bool:
        return self._execute("ping", lambda cursor: cursor.execute("SELECT 1").fetchone()[0] == 1)


_store_instance: Optional[KeyValueStore] = None

def get_store() -> KeyValueStore:
    """FastAPI dependency returning the configured store; tests override it."""
    global _store_instance
    if _store_instance is None:
        if STORE_BACKEND == "memory":
            logger.warning("STORE_BACKEND=memory: data will not survive a restart.")
            _store_instance = InMemoryStore()
        else:
            _store_instance = SQLiteStore(DB_PATH)
    return _store_instance


# --- User related functions ---
def _load_user(raw: Optional[str], lookup: str) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.error(f"Corrupt user record for '{lookup}', ignoring it.")
        return None

def get_user_by_username(store: KeyValueStore, username: str) -> Optional[Dict[str, Any]]:
    return _load_user(store.hash_get(USERS_HASH, username), username)

def get_user_by_id(store: KeyValueStore, user_id: str) -> Optional[Dict[str, Any]]:
    username = store.hash_get(USER_IDS_HASH, user_id)
    if username is None:
        return None
    return get_user_by_username(store, username)

def create_user_in_store(store: KeyValueStore, username: str, hashed_password: str) -> Optional[Dict[str, Any]]:
    if store.hash_get(USERS_HASH, username) is not None:
        logger.warning(f"Username '{username}' already exists.")
        return None
    user = {
        "id": str(uuid.uuid4()),
        "username": username,
        "password": hashed_password,
        "createdAt": dt.datetime.now(dt.timezone.utc).isoformat(),
    }
    store.hash_set(USERS_HASH, username, json.dumps(user))
    store.hash_set(USER_IDS_HASH, user["id"], username)
    logger.info(f"User '{username}' created successfully with ID {user['id']}.")
    return user

def update_user_password(store: KeyValueStore, username: str, hashed_password: str) -> bool:
    user = get_user_by_username(store, username)
    if user is None:
        logger.warning(f"No user '{username}' found to update password.")
        return False
    user["password"] = hashed_password
    user["updatedAt"] = dt.datetime.now(dt.timezone.utc).isoformat()
    store.hash_set(USERS_HASH, username, json.dumps(user))
    logger.info(f"Password updated for user '{username}'.")
    return True


if __name__ == "__main__":
    print(f"Initializing/Updating store schema at: {DB_PATH} (FORCING RECREATION)")
    # WARNING: THIS WILL DELETE ALL DATA IN THE TABLES.
    SQLiteStore(DB_PATH).init_db(force_recreate=True)
