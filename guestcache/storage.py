"""SQLite-backed cache storage: named buckets of request -> response entries."""

import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterable
from pathlib import Path

from .models import InterceptedRequest, Response

logger = logging.getLogger(__name__)


class CacheStorageError(Exception):
    """Raised when a cache storage operation fails."""

    pass


def init_storage(db_path: str) -> sqlite3.Connection:
    """Initialize the cache database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file, or ":memory:".

    Returns:
        Database connection usable from multiple threads.

    Raises:
        CacheStorageError: If initialization fails.
    """
    try:
        if db_path != ":memory:":
            parent_dir = Path(db_path).parent
            if not parent_dir.exists():
                parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        if db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS buckets (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                bucket TEXT NOT NULL,
                method TEXT NOT NULL,
                url TEXT NOT NULL,
                status INTEGER NOT NULL,
                status_text TEXT NOT NULL,
                headers TEXT NOT NULL,
                body BLOB NOT NULL,
                response_type TEXT NOT NULL,
                response_url TEXT NOT NULL,
                PRIMARY KEY (bucket, method, url)
            )
        """)
        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise CacheStorageError(f"Failed to initialize cache storage: {e}")
    except OSError as e:
        raise CacheStorageError(f"Failed to create cache storage directory: {e}")


def _row_to_response(row: sqlite3.Row) -> Response:
    return Response(
        body=bytes(row["body"]),
        status=row["status"],
        status_text=row["status_text"],
        headers=json.loads(row["headers"]),
        url=row["response_url"],
        type=row["response_type"],
    )


class CacheStorage:
    """Registry of named cache buckets.

    Thread-safe: every statement runs under one lock, so concurrent fetch
    events can share the connection. Writes to the same key race and the
    last one wins.

    A bucket deleted through this storage stays deleted until it is opened
    again; late writes to it fail instead of bringing it back.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.RLock()
        self._deleted: set[str] = set()

    def _execute(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            with self._lock:
                rows = self._conn.execute(sql, params).fetchall()
                self._conn.commit()
                return rows
        except sqlite3.Error as e:
            raise CacheStorageError(f"Cache storage query failed: {e}")

    def open(self, name: str) -> "CacheBucket":
        """Return the bucket with this name, creating it if needed."""
        if not name:
            raise CacheStorageError("Cache name cannot be empty")
        with self._lock:
            self._execute("INSERT OR IGNORE INTO buckets (name) VALUES (?)", (name,))
            self._deleted.discard(name)
        return CacheBucket(self, name)

    def bucket(self, name: str) -> "CacheBucket":
        """Return a handle on a bucket without creating it; the first put does."""
        return CacheBucket(self, name)

    def has(self, name: str) -> bool:
        return bool(self._execute("SELECT 1 FROM buckets WHERE name = ?", (name,)))

    def keys(self) -> list[str]:
        """Return bucket names in creation order."""
        rows = self._execute("SELECT name FROM buckets ORDER BY id")
        return [row["name"] for row in rows]

    def delete(self, name: str) -> bool:
        """Delete a bucket and all of its entries.

        Returns:
            True if the bucket existed.
        """
        try:
            with self._lock:
                cursor = self._conn.execute("DELETE FROM buckets WHERE name = ?", (name,))
                self._conn.execute("DELETE FROM entries WHERE bucket = ?", (name,))
                self._conn.commit()
                self._deleted.add(name)
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise CacheStorageError(f"Failed to delete cache '{name}': {e}")

    def match(self, request: InterceptedRequest) -> Response | None:
        """Find a response for the request in any bucket, oldest bucket first."""
        method, url = request.cache_key
        rows = self._execute(
            """
            SELECT e.* FROM entries e
            JOIN buckets b ON b.name = e.bucket
            WHERE e.method = ? AND e.url = ?
            ORDER BY b.id
            LIMIT 1
            """,
            (method, url),
        )
        if not rows:
            return None
        return _row_to_response(rows[0])


class CacheBucket:
    """One named bucket inside a CacheStorage."""

    def __init__(self, storage: CacheStorage, name: str) -> None:
        self._storage = storage
        self.name = name

    def __repr__(self) -> str:
        return f"<CacheBucket {self.name!r}>"

    def __len__(self) -> int:
        rows = self._storage._execute("SELECT COUNT(*) AS n FROM entries WHERE bucket = ?", (self.name,))
        return rows[0]["n"]

    def _claim_bucket(self, conn: sqlite3.Connection) -> None:
        if self.name in self._storage._deleted:
            raise CacheStorageError(f"Cache '{self.name}' has been deleted")
        conn.execute("INSERT OR IGNORE INTO buckets (name) VALUES (?)", (self.name,))

    def _write(self, conn: sqlite3.Connection, request: InterceptedRequest, response: Response) -> None:
        method, url = request.cache_key
        body = response.read()
        conn.execute(
            """
            INSERT OR REPLACE INTO entries
            (bucket, method, url, status, status_text, headers, body, response_type, response_url)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                self.name,
                method,
                url,
                response.status,
                response.status_text,
                json.dumps(dict(response.headers)),
                sqlite3.Binary(body),
                response.type,
                response.url or url,
            ),
        )

    def put(self, request: InterceptedRequest, response: Response) -> None:
        """Store a response under the request key, replacing any previous entry.

        Consumes the response body; pass a clone if the response is also
        returned to the client.

        Raises:
            CacheStorageError: If the request is not a GET, the bucket was
                deleted, or the write fails.
        """
        if request.method.upper() != "GET":
            raise CacheStorageError(f"Only GET requests can be cached (got {request.method})")
        storage = self._storage
        try:
            with storage._lock:
                self._claim_bucket(storage._conn)
                self._write(storage._conn, request, response)
                storage._conn.commit()
        except sqlite3.Error as e:
            raise CacheStorageError(f"Failed to store {request.url} in '{self.name}': {e}")

    def add_all(
        self,
        requests: Iterable[InterceptedRequest],
        fetch: Callable[[InterceptedRequest], Response],
    ) -> None:
        """Fetch every request and store all responses, or store nothing.

        Network errors from fetch propagate unchanged; a non-OK response
        raises CacheStorageError. Either way the bucket is left untouched.
        """
        fetched: list[tuple[InterceptedRequest, Response]] = []
        for request in requests:
            if request.method.upper() != "GET":
                raise CacheStorageError(f"Only GET requests can be cached (got {request.method})")
            response = fetch(request)
            if not response.ok:
                raise CacheStorageError(f"Request for {request.url} returned {response.status}")
            fetched.append((request, response))

        storage = self._storage
        try:
            with storage._lock:
                self._claim_bucket(storage._conn)
                for request, response in fetched:
                    self._write(storage._conn, request, response)
                storage._conn.commit()
        except sqlite3.Error as e:
            storage._conn.rollback()
            raise CacheStorageError(f"Failed to store entries in '{self.name}': {e}")
        logger.debug("Stored %d entries in %s", len(fetched), self.name)

    def match(self, request: InterceptedRequest) -> Response | None:
        method, url = request.cache_key
        rows = self._storage._execute(
            "SELECT * FROM entries WHERE bucket = ? AND method = ? AND url = ?",
            (self.name, method, url),
        )
        if not rows:
            return None
        return _row_to_response(rows[0])

    def delete(self, request: InterceptedRequest) -> bool:
        method, url = request.cache_key
        try:
            with self._storage._lock:
                cursor = self._storage._conn.execute(
                    "DELETE FROM entries WHERE bucket = ? AND method = ? AND url = ?",
                    (self.name, method, url),
                )
                self._storage._conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise CacheStorageError(f"Failed to delete {url} from '{self.name}': {e}")

    def keys(self) -> list[tuple[str, str]]:
        """Return (method, url) keys in insertion order."""
        rows = self._storage._execute(
            "SELECT method, url FROM entries WHERE bucket = ? ORDER BY rowid",
            (self.name,),
        )
        return [(row["method"], row["url"]) for row in rows]
