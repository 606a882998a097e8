"""Abstract base classes for the job store and the processing collaborators.

This module defines the interfaces the queue worker depends on: the job
store (persistence), the converter (EPUB to KEPUB) and the uploader (drive
destination). Concrete implementations live in ``sqlite_backend``,
``bookify.converter`` and ``bookify.drive``; tests substitute fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from .models import Account, Job


ProgressCallback = Callable[[int], None]


class JobStore(ABC):
    """Persistence interface for accounts and jobs.

    Implementations must provide:
    - FIFO ``next_queued_job`` (creation order, queued status only)
    - Single-statement terminal writes (``mark_job_completed``/``mark_job_failed``)
    - ``PersistenceError`` for failed writes, ``NotFoundError`` for missing rows
    """

    @abstractmethod
    def next_queued_job(self) -> Optional["Job"]:
        """Return the oldest queued job, or None if the queue is empty.

        Implementation notes:
        - Read-only: claiming happens via a later ``update_job`` call
        - Must never return jobs in processing/completed/failed
        - Ordered by creation time, ties broken by insertion order
        """
        pass

    @abstractmethod
    def update_job(self, job: "Job") -> None:
        """Persist the full current state of a job (last write wins).

        Raises:
            PersistenceError: If the write fails
        """
        pass

    @abstractmethod
    def mark_job_completed(self, job_id: str, processed_filename: str, drive_url: str) -> None:
        """Atomically move a job to completed.

        Sets status=completed, stage=completed, progress=100, the processed
        filename, the drive URL and completed_at in one write.
        """
        pass

    @abstractmethod
    def mark_job_failed(self, job_id: str, message: str) -> None:
        """Atomically move a job to failed.

        Sets status=failed, stage=failed and error=message. Progress and
        partially written fields are left as last persisted.
        """
        pass

    @abstractmethod
    def get_account(self, account_id: int) -> "Account":
        """Load an account.

        Raises:
            NotFoundError: If no account has this ID
        """
        pass

    @abstractmethod
    def create_account(self, account: "Account") -> "Account":
        """Register a new account and return it with its assigned ID.

        Raises:
            DuplicateAccountError: If the name is already taken
        """
        pass

    @abstractmethod
    def update_account(self, account: "Account") -> None:
        """Persist account changes (credential refresh)."""
        pass

    @abstractmethod
    def get_account_by_name(self, name: str) -> "Account":
        """Load an account by its unique name.

        Raises:
            NotFoundError: If no account has this name
        """
        pass

    @abstractmethod
    def list_accounts(self) -> List["Account"]:
        """All registered accounts ordered by ID."""
        pass

    @abstractmethod
    def create_job(self, account_id: int, original_filename: str) -> "Job":
        """Create a queued job with a fresh UUID."""
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> "Job":
        """Load a job.

        Raises:
            NotFoundError: If no job has this ID
        """
        pass

    @abstractmethod
    def list_recent_jobs(self, limit: int = 50) -> List["Job"]:
        """Most recently created jobs first."""
        pass

    @abstractmethod
    def count_jobs_by_status(self) -> Dict[str, int]:
        """Number of jobs per status value (statuses with no jobs may be absent)."""
        pass

    def close(self) -> None:
        """Release any held resources."""
        pass


class Converter(ABC):
    """EPUB to KEPUB conversion collaborator."""

    @abstractmethod
    def convert(
        self, input_path: str, output_path: str, on_progress: Optional[ProgressCallback] = None
    ) -> None:
        """Convert ``input_path`` into ``output_path``.

        Args:
            input_path: Existing EPUB file
            output_path: Destination file (overwritten)
            on_progress: Receives integer percentages in [0, 100]

        Raises:
            ConversionError: If the input is unusable or the conversion fails
        """
        pass


class Uploader(ABC):
    """Remote destination collaborator."""

    @abstractmethod
    def upload(self, account: "Account", file_path: str, destination_name: str) -> str:
        """Upload a file into the account's folder and return its public URL.

        Raises:
            UploadError: If the credential refresh or the upload fails
        """
        pass

    def close(self) -> None:
        """Release any held resources (HTTP connections)."""
        pass
