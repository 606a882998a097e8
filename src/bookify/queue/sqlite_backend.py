"""SQLite implementation of JobStore.

This module provides the embedded datastore the worker polls, using:
- sqlite-utils for row access and schema management
- WAL mode so the polling UI can read while the worker writes
- One shared connection guarded by a lock (the worker and the caller that
  built the store usually live on different threads)
"""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

try:
    from sqlite_utils import Database
except ImportError:
    raise ImportError(
        "sqlite-utils is required for the job store. "
        "Install it with: pip install sqlite-utils"
    )

from ..errors import DuplicateAccountError, NotFoundError, PersistenceError
from .backends import JobStore
from .models import Account, Job, JobStage, JobStatus, enum_value, local_naive


# SQLite schema SQL
SCHEMA_SQL = """
-- Registered drive destinations
CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT UNIQUE NOT NULL,
    folder_id TEXT NOT NULL,
    access_token TEXT DEFAULT '',
    refresh_token TEXT DEFAULT '',
    token_expiry TEXT,
    user_email TEXT DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Conversion-and-upload jobs
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    account_id INTEGER NOT NULL REFERENCES accounts(id),
    original_filename TEXT NOT NULL,
    processed_filename TEXT DEFAULT '',
    status TEXT NOT NULL DEFAULT 'queued',
    progress INTEGER DEFAULT 0,
    stage TEXT DEFAULT 'queued',
    message TEXT DEFAULT '',
    drive_url TEXT DEFAULT '',
    error TEXT DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_account ON jobs(account_id);
"""

JOB_COLUMNS = (
    "account_id",
    "original_filename",
    "processed_filename",
    "status",
    "progress",
    "stage",
    "message",
    "drive_url",
    "error",
    "created_at",
    "updated_at",
    "completed_at",
)

ACCOUNT_COLUMNS = (
    "name",
    "folder_id",
    "access_token",
    "refresh_token",
    "token_expiry",
    "user_email",
    "created_at",
    "updated_at",
)


def _timestamp(value: Optional[datetime] = None) -> Optional[str]:
    """Fixed-width ISO timestamp so lexical order equals time order."""
    if value is None:
        return None
    return local_naive(value).isoformat(timespec="microseconds")


def _now() -> datetime:
    return datetime.now()


class SQLiteJobStore(JobStore):
    """SQLite-backed job store.

    Features:
    - FIFO ``next_queued_job`` via the (status, created_at) index, ties
      broken by rowid (insertion order)
    - Terminal writes are single UPDATE statements
    - sqlite3 errors on writes surface as PersistenceError
    """

    def __init__(self, db_path: str):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:"

        Creates the schema if the database doesn't exist.
        """
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        conn = sqlite3.connect(db_path, check_same_thread=False)
        self.db = Database(conn)

        # Enable WAL mode for concurrent UI reads
        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")
        self.db.conn.commit()

        self._create_schema()

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        with self._lock:
            self.db.executescript(SCHEMA_SQL)

    def close(self) -> None:
        with self._lock:
            self.db.conn.close()

    @contextmanager
    def _write(self, action: str) -> Iterator[None]:
        """Serialize a write in one transaction, translating sqlite errors."""
        with self._lock:
            try:
                with self.db.conn:
                    yield
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to {action}: {e}") from e

    def _rows(self, table: str, where: str, args: List[Any], **kwargs) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(row) for row in self.db[table].rows_where(where, args, **kwargs)]

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def next_queued_job(self) -> Optional[Job]:
        """Return the oldest queued job without claiming it."""
        rows = self._rows(
            "jobs",
            "status = ?",
            [JobStatus.QUEUED.value],
            order_by="created_at ASC, rowid ASC",
            limit=1,
        )
        if not rows:
            return None
        return self._row_to_job(rows[0])

    def create_job(self, account_id: int, original_filename: str) -> Job:
        now = _now()
        job = Job(
            account_id=account_id,
            original_filename=original_filename,
            status=JobStatus.QUEUED,
            stage=JobStage.QUEUED,
            progress=0,
            created_at=now,
            updated_at=now,
        )
        row = self._job_to_row(job)
        row["id"] = job.id

        with self._write("create job"):
            self.db["jobs"].insert(row)

        return job

    def update_job(self, job: Job) -> None:
        """Persist every column of the job (last write wins).

        Uses UPDATE rather than INSERT OR REPLACE so the row keeps its rowid
        and therefore its FIFO position.
        """
        job.updated_at = _now()
        row = self._job_to_row(job)
        assignments = ", ".join(f"{column} = ?" for column in JOB_COLUMNS)

        with self._write(f"update job {job.id}"):
            self.db.execute(
                f"UPDATE jobs SET {assignments} WHERE id = ?",
                [row[column] for column in JOB_COLUMNS] + [job.id],
            )

    def mark_job_completed(self, job_id: str, processed_filename: str, drive_url: str) -> None:
        now = _timestamp(_now())
        with self._write(f"mark job {job_id} completed"):
            self.db.execute("""
                UPDATE jobs
                SET status = ?,
                    stage = ?,
                    progress = 100,
                    processed_filename = ?,
                    drive_url = ?,
                    completed_at = ?,
                    updated_at = ?
                WHERE id = ?
            """, (
                JobStatus.COMPLETED.value,
                JobStage.COMPLETED.value,
                processed_filename,
                drive_url,
                now,
                now,
                job_id,
            ))

    def mark_job_failed(self, job_id: str, message: str) -> None:
        with self._write(f"mark job {job_id} failed"):
            self.db.execute("""
                UPDATE jobs
                SET status = ?,
                    stage = ?,
                    error = ?,
                    updated_at = ?
                WHERE id = ?
            """, (
                JobStatus.FAILED.value,
                JobStage.FAILED.value,
                message,
                _timestamp(_now()),
                job_id,
            ))

    def get_job(self, job_id: str) -> Job:
        rows = self._rows("jobs", "id = ?", [job_id])
        if not rows:
            raise NotFoundError(f"Job not found: {job_id}")
        return self._row_to_job(rows[0])

    def list_recent_jobs(self, limit: int = 50) -> List[Job]:
        with self._lock:
            rows = [
                dict(row)
                for row in self.db["jobs"].rows_where(
                    order_by="created_at DESC, rowid DESC", limit=limit
                )
            ]
        return [self._row_to_job(row) for row in rows]

    def count_jobs_by_status(self) -> Dict[str, int]:
        with self._lock:
            cursor = self.db.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status")
            return {status: count for status, count in cursor.fetchall()}

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        now = _now()
        account = account.model_copy(update={"created_at": now, "updated_at": now})
        row = self._account_to_row(account)

        with self._lock:
            try:
                with self.db.conn:
                    cursor = self.db.execute(
                        f"INSERT INTO accounts ({', '.join(ACCOUNT_COLUMNS)}) "
                        f"VALUES ({', '.join('?' for _ in ACCOUNT_COLUMNS)})",
                        [row[column] for column in ACCOUNT_COLUMNS],
                    )
            except sqlite3.IntegrityError as e:
                raise DuplicateAccountError(f"Account name already exists: {account.name}") from e
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to create account: {e}") from e

        account.id = cursor.lastrowid
        return account

    def update_account(self, account: Account) -> None:
        if account.id is None:
            raise NotFoundError(f"Account {account.name!r} has not been created")

        account.updated_at = _now()
        row = self._account_to_row(account)
        assignments = ", ".join(f"{column} = ?" for column in ACCOUNT_COLUMNS)

        with self._write(f"update account {account.id}"):
            self.db.execute(
                f"UPDATE accounts SET {assignments} WHERE id = ?",
                [row[column] for column in ACCOUNT_COLUMNS] + [account.id],
            )

    def get_account(self, account_id: int) -> Account:
        rows = self._rows("accounts", "id = ?", [account_id])
        if not rows:
            raise NotFoundError(f"Account not found: {account_id}")
        return Account(**rows[0])

    def get_account_by_name(self, name: str) -> Account:
        rows = self._rows("accounts", "name = ?", [name])
        if not rows:
            raise NotFoundError(f"Account not found: {name}")
        return Account(**rows[0])

    def list_accounts(self) -> List[Account]:
        with self._lock:
            rows = [dict(row) for row in self.db["accounts"].rows_where(order_by="id")]
        return [Account(**row) for row in rows]

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    def _job_to_row(self, job: Job) -> Dict[str, Any]:
        return {
            "account_id": job.account_id,
            "original_filename": job.original_filename,
            "processed_filename": job.processed_filename,
            "status": enum_value(job.status),
            "progress": job.progress,
            "stage": enum_value(job.stage),
            "message": job.message,
            "drive_url": job.drive_url,
            "error": job.error,
            "created_at": _timestamp(job.created_at),
            "updated_at": _timestamp(job.updated_at),
            "completed_at": _timestamp(job.completed_at),
        }

    def _row_to_job(self, row: Dict[str, Any]) -> Job:
        """Convert a jobs row to a Job model (NULL text columns become "")."""
        for column in ("processed_filename", "message", "drive_url", "error"):
            if row.get(column) is None:
                row[column] = ""
        return Job(**row)

    def _account_to_row(self, account: Account) -> Dict[str, Any]:
        return {
            "name": account.name,
            "folder_id": account.folder_id,
            "access_token": account.access_token,
            "refresh_token": account.refresh_token,
            "token_expiry": _timestamp(account.token_expiry),
            "user_email": account.user_email,
            "created_at": _timestamp(account.created_at),
            "updated_at": _timestamp(account.updated_at),
        }
