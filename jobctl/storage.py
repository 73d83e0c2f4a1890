"""
SQLite storage layer for the job queue system.
"""
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from jobctl.errors import BackendUnavailableError

JOB_COLUMNS = (
    "id, handler, queue, payload, status, attempts, max_attempts, "
    "available_at, reserved_at, created_at"
)

FAILED_COLUMNS = JOB_COLUMNS + ", exception, failed_at"

# How many due rows a single claim looks at before giving up on this poll.
CLAIM_CANDIDATES = 5

CLAIMABLE = """
    queue = ?
    AND available_at <= ?
    AND (status = 'pending' OR (status = 'reserved' AND reserved_at <= ?))
"""


class Storage:
    """
    Handles all database operations for the job queue.

    Uses SQLite for persistence with this schema:
    - jobs table: pending and reserved jobs
    - failed_jobs table: jobs that exhausted their attempts
    - config table: key-value configuration
    - cache table: counters used by the database rate-limit cache
    """

    def __init__(self, db_path: str = "queue.db", timeout: float = 30.0):
        """
        Initialize storage with database path.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds a connection waits for another writer's lock
        """
        self.db_path = db_path
        self.timeout = timeout
        self._ensure_db_exists()

    def _ensure_db_exists(self):
        """Create database and tables if they don't exist."""
        with self._get_connection() as conn:
            self._create_tables(conn)

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        except sqlite3.OperationalError as e:
            raise BackendUnavailableError(f"Cannot open database {self.db_path!r}: {e}") from e
        conn.row_factory = sqlite3.Row  # Return rows as dictionaries
        return conn

    @contextmanager
    def _get_connection(self):
        """
        Context manager for database connections.

        Commits on success, rolls back on error and always closes.
        Operational errors (unreadable file, lock timeout) are reported
        as BackendUnavailableError.
        """
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            raise BackendUnavailableError(f"Database error on {self.db_path!r}: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """
        Open a write transaction up front with BEGIN IMMEDIATE.

        Writers queue up on the database lock instead of failing half-way,
        so read-then-update sequences inside the block see a stable view.
        """
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    def _create_tables(self, conn: sqlite3.Connection):
        conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                handler TEXT NOT NULL,
                queue TEXT NOT NULL DEFAULT 'default',
                payload TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 1,
                available_at REAL NOT NULL,
                reserved_at REAL,
                created_at REAL NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS failed_jobs (
                id INTEGER PRIMARY KEY,
                handler TEXT NOT NULL,
                queue TEXT NOT NULL,
                payload TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'failed',
                attempts INTEGER NOT NULL,
                max_attempts INTEGER NOT NULL,
                available_at REAL NOT NULL,
                reserved_at REAL,
                created_at REAL NOT NULL,
                exception TEXT,
                failed_at REAL NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS cache (
                key TEXT PRIMARY KEY,
                value INTEGER NOT NULL,
                expires_at REAL NOT NULL
            )
        """)

        # Claim queries filter on queue + status and sort on available_at
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_claim
            ON jobs(queue, status, available_at)
        """)

    def create_job(self, job_data: Dict[str, Any]) -> int:
        """
        Insert a new job row.

        Args:
            job_data: Output of JobRecord.to_dict(); 'id' is ignored unless set

        Returns:
            The row id of the inserted job
        """
        with self._get_connection() as conn:
            cursor = conn.execute("""
                INSERT INTO jobs (id, handler, queue, payload, status, attempts, max_attempts,
                                  available_at, reserved_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                job_data.get('id'),
                job_data['handler'],
                job_data['queue'],
                job_data['payload'],
                job_data.get('status', 'pending'),
                job_data.get('attempts', 0),
                job_data.get('max_attempts', 1),
                job_data['available_at'],
                job_data.get('reserved_at'),
                job_data['created_at']
            ))
            return cursor.lastrowid

    def get_job(self, job_id: int) -> Optional[Dict[str, Any]]:
        """Retrieve a job row by id, or None if it does not exist."""
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
            return dict(row) if row else None

    def list_jobs(
        self,
        status: Optional[str] = None,
        queue: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        List job rows in due order with optional filtering.

        Example:
            pending = storage.list_jobs(status='pending', queue='emails')
        """
        sql = f"SELECT {JOB_COLUMNS} FROM jobs"
        clauses = []
        params: List[Any] = []

        if status:
            clauses.append("status = ?")
            params.append(status)
        if queue:
            clauses.append("queue = ?")
            params.append(queue)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)

        sql += " ORDER BY available_at ASC, id ASC"

        if limit:
            sql += " LIMIT ?"
            params.append(limit)

        with self._get_connection() as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

    def claim_next_job(self, queue: str, now: float, stale_before: float) -> Optional[Dict[str, Any]]:
        """
        Atomically claim the earliest due job on one queue.

        A row is claimable when it is due and either pending or reserved
        before `stale_before` (an orphaned reservation). The claim itself is
        a conditional UPDATE that repeats the claimable predicate; its
        affected-row count decides the race. Zero rows means another worker
        got there first, and the next candidate is tried.

        Args:
            queue: Queue name to claim from
            now: Current time (epoch seconds)
            stale_before: Reservations older than this are reclaimable

        Returns:
            The claimed row (status='reserved'), or None if nothing is due
        """
        with self.transaction() as conn:
            candidates = conn.execute(f"""
                SELECT id FROM jobs
                WHERE {CLAIMABLE}
                ORDER BY available_at ASC, id ASC
                LIMIT ?
            """, (queue, now, stale_before, CLAIM_CANDIDATES)).fetchall()

            for candidate in candidates:
                cursor = conn.execute(f"""
                    UPDATE jobs
                    SET status = 'reserved', reserved_at = ?
                    WHERE id = ? AND {CLAIMABLE}
                """, (now, candidate['id'], queue, now, stale_before))

                if cursor.rowcount == 1:
                    row = conn.execute(
                        f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (candidate['id'],)
                    ).fetchone()
                    return dict(row)

            return None

    def release_job(self, job_id: int, available_at: float, count_attempt: bool = True) -> bool:
        """
        Put a reserved job back to pending.

        Args:
            job_id: Job to release
            available_at: Epoch seconds when the job becomes claimable again
            count_attempt: Whether this release consumes one attempt

        Returns:
            True if the job existed
        """
        with self._get_connection() as conn:
            cursor = conn.execute("""
                UPDATE jobs
                SET status = 'pending',
                    available_at = ?,
                    reserved_at = NULL,
                    attempts = attempts + ?
                WHERE id = ?
            """, (available_at, 1 if count_attempt else 0, job_id))
            return cursor.rowcount > 0

    def delete_job(self, job_id: int) -> bool:
        """Delete a job. Deleting a missing job is a no-op that returns False."""
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return cursor.rowcount > 0

    def fail_job(self, job_id: int, exception: str, failed_at: float) -> bool:
        """
        Move a job into failed_jobs, consuming its final attempt.

        Returns:
            True if the job existed and was moved
        """
        with self.transaction() as conn:
            cursor = conn.execute(f"""
                INSERT OR REPLACE INTO failed_jobs ({FAILED_COLUMNS})
                SELECT id, handler, queue, payload, 'failed', attempts + 1, max_attempts,
                       available_at, reserved_at, created_at, ?, ?
                FROM jobs WHERE id = ?
            """, (exception, failed_at, job_id))

            if cursor.rowcount == 0:
                return False

            conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return True

    def get_failed_job(self, job_id: int) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT {FAILED_COLUMNS} FROM failed_jobs WHERE id = ?", (job_id,)
            ).fetchone()
            return dict(row) if row else None

    def list_failed_jobs(self, queue: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = f"SELECT {FAILED_COLUMNS} FROM failed_jobs"
        params: List[Any] = []
        if queue:
            sql += " WHERE queue = ?"
            params.append(queue)
        sql += " ORDER BY failed_at ASC, id ASC"

        with self._get_connection() as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

    def retry_failed_job(self, job_id: int, now: float) -> bool:
        """
        Move a failed job back into jobs with a fresh attempt budget.

        The job keeps its id and becomes claimable immediately.
        """
        with self.transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO jobs (id, handler, queue, payload, status, attempts, max_attempts,
                                  available_at, reserved_at, created_at)
                SELECT id, handler, queue, payload, 'pending', 0, max_attempts, ?, NULL, created_at
                FROM failed_jobs WHERE id = ?
            """, (now, job_id))

            if cursor.rowcount == 0:
                return False

            conn.execute("DELETE FROM failed_jobs WHERE id = ?", (job_id,))
            return True

    def delete_failed_job(self, job_id: int) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM failed_jobs WHERE id = ?", (job_id,))
            return cursor.rowcount > 0

    def flush_failed_jobs(self) -> int:
        """Delete every failed job. Returns how many were removed."""
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM failed_jobs")
            return cursor.rowcount

    def increment_counter(self, key: str, ttl: float, now: float) -> int:
        """
        Atomically add one to a counter in the cache table.

        An expired counter restarts at 1 with a fresh expiry. Every expired
        row is swept on the way, so past windows do not pile up. The whole
        read-modify-write runs under BEGIN IMMEDIATE, so concurrent
        processes never lose an increment.

        Returns:
            The counter value after incrementing
        """
        with self.transaction() as conn:
            conn.execute("DELETE FROM cache WHERE expires_at <= ?", (now,))
            conn.execute("""
                INSERT INTO cache (key, value, expires_at)
                VALUES (?, 1, ?)
                ON CONFLICT(key) DO UPDATE SET value = value + 1
            """, (key, now + ttl))
            row = conn.execute("SELECT value FROM cache WHERE key = ?", (key,)).fetchone()
            return int(row['value'])

    def set_config(self, key: str, value: str) -> None:
        """
        Store a configuration value.

        Example:
            storage.set_config('poll-interval', '2')
        """
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO config (key, value)
                VALUES (?, ?)
            """, (key, value))

    def get_config(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Retrieve a configuration value, or `default` if it is not set."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM config WHERE key = ?", (key,)
            ).fetchone()
            return row['value'] if row else default

    def list_config(self) -> Dict[str, str]:
        """Return all stored configuration key-value pairs."""
        with self._get_connection() as conn:
            rows = conn.execute("SELECT key, value FROM config ORDER BY key").fetchall()
            return {row['key']: row['value'] for row in rows}

    def get_job_counts(self) -> Dict[str, int]:
        """
        Get count of jobs by status.

        Returns:
            Example: {'pending': 5, 'reserved': 1, 'failed': 2}
        """
        counts = {'pending': 0, 'reserved': 0, 'failed': 0}

        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT status, COUNT(*) AS count
                FROM jobs
                GROUP BY status
            """).fetchall()
            for row in rows:
                counts[row['status']] = row['count']

            failed = conn.execute("SELECT COUNT(*) AS count FROM failed_jobs").fetchone()
            counts['failed'] = failed['count']

        return counts

    def get_queue_counts(self) -> Dict[str, int]:
        """Count of waiting (pending or reserved) jobs per queue."""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT queue, COUNT(*) AS count
                FROM jobs
                GROUP BY queue
                ORDER BY queue
            """).fetchall()
            return {row['queue']: row['count'] for row in rows}
