"""Per-job pipeline: convert the uploaded EPUB, upload the KEPUB, finish the job.

``JobProcessor.run`` takes one job from queued to a terminal state. Every
step is persisted so the polling UI can follow status, stage and progress:

    starting (0) → converting (25..75) → uploading (75) → cleanup (90) → completed (100)

Any failure short-circuits into a single ``fail_job`` call. Nothing is
retried and nothing is requeued; a user re-uploads to try again.
"""

import logging
import os
import re
import time
from datetime import datetime
from typing import Callable, Optional

from .errors import PersistenceError
from .queue.backends import Converter, JobStore, Uploader
from .queue.models import Job, JobStage, JobStatus
from .tempfiles import TempFileRegistry

logger = logging.getLogger(__name__)

KEPUB_SUFFIX = ".kepub.epub"
EPUB_SUFFIX = ".epub"

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')

# Progress checkpoints
PROGRESS_STARTING = 0
PROGRESS_CONVERTING = 25
PROGRESS_UPLOADING = 75
PROGRESS_CLEANUP = 90
CONVERSION_SPAN = PROGRESS_UPLOADING - PROGRESS_CONVERTING


def clean_filename(filename: str) -> str:
    """Make an uploaded name safe and give it the ``.kepub.epub`` extension.

    Examples:
        >>> clean_filename("book.epub")
        'book.kepub.epub'
        >>> clean_filename("BOOK.EPUB")
        'BOOK.kepub.epub'
        >>> clean_filename("a<b>.epub")
        'a_b_.kepub.epub'
        >>> clean_filename("book.txt")
        'book.txt.kepub.epub'
        >>> clean_filename("")
        '.kepub.epub'
    """
    clean = _UNSAFE_CHARS.sub("_", filename)
    if clean[-len(EPUB_SUFFIX):].lower() == EPUB_SUFFIX:
        return clean[:-len(EPUB_SUFFIX)] + KEPUB_SUFFIX
    return clean + KEPUB_SUFFIX


def prepare_output_path(temp_dir: str, original_filename: str) -> str:
    """Create ``temp_dir`` if needed and return the converted file's path in it.

    Raises:
        OSError: If the directory cannot be created
    """
    os.makedirs(temp_dir, exist_ok=True)
    return os.path.join(temp_dir, clean_filename(original_filename))


def conversion_progress(percent: int) -> int:
    """Map converter progress (0-100) into the job's converting range (25-75)."""
    return PROGRESS_CONVERTING + (percent * CONVERSION_SPAN // 100)


class JobProcessor:
    """Runs the conversion-and-upload pipeline for one job at a time.

    Args:
        store: Job store for status writes and account lookup
        converter: EPUB to KEPUB converter
        uploader: Drive uploader
        temp_dir: Shared directory holding inbound and converted files
        registry: In-flight temp file registry shared with the sweeper
        persist_retries: Attempts for each intermediate status write
        persist_backoff_s: First backoff delay, doubled per attempt
        sleep: Sleep function (tests pass a no-op)
    """

    def __init__(
        self,
        store: JobStore,
        converter: Converter,
        uploader: Uploader,
        temp_dir: str,
        registry: Optional[TempFileRegistry] = None,
        persist_retries: int = 3,
        persist_backoff_s: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.converter = converter
        self.uploader = uploader
        self.temp_dir = temp_dir
        self.registry = registry or TempFileRegistry()
        self.persist_retries = max(1, persist_retries)
        self.persist_backoff_s = persist_backoff_s
        self._sleep = sleep

    def input_path(self, job: Job) -> str:
        return os.path.join(self.temp_dir, job.original_filename)

    def run(self, job: Job) -> bool:
        """Process ``job`` to a terminal state.

        Returns:
            True if the job was marked completed, False otherwise
        """
        try:
            return self._run(job)
        finally:
            self.registry.release(job.id)

    def _run(self, job: Job) -> bool:
        job.status = JobStatus.PROCESSING
        self._advance(job, JobStage.STARTING, PROGRESS_STARTING)

        input_path = self.input_path(job)
        self.registry.claim(job.id, input_path)
        if not os.path.exists(input_path):
            self.fail_job(job, "Input file not found")
            return False

        self._advance(job, JobStage.CONVERTING, PROGRESS_CONVERTING)

        try:
            output_path = prepare_output_path(self.temp_dir, job.original_filename)
        except OSError as e:
            self.fail_job(job, f"Failed to prepare output path: {e}")
            return False
        self.registry.claim(job.id, output_path)

        def on_progress(percent: int) -> None:
            job.progress = conversion_progress(percent)
            self._persist(job)

        try:
            self.converter.convert(input_path, output_path, on_progress)
        except Exception as e:
            self.fail_job(job, f"Conversion failed: {e}")
            return False

        self._advance(job, JobStage.UPLOADING, PROGRESS_UPLOADING)

        try:
            account = self.store.get_account(job.account_id)
        except Exception as e:
            self.fail_job(job, f"Failed to get account: {e}")
            return False

        processed_filename = clean_filename(job.original_filename)
        try:
            drive_url = self.uploader.upload(account, output_path, processed_filename)
        except Exception as e:
            self.fail_job(job, f"Upload failed: {e}")
            return False

        self._advance(job, JobStage.CLEANUP, PROGRESS_CLEANUP)

        for label, path in (("input", input_path), ("output", output_path)):
            try:
                os.remove(path)
            except OSError as e:
                logger.warning("Failed to remove %s file %s: %s", label, path, e)

        try:
            self.store.mark_job_completed(job.id, processed_filename, drive_url)
        except PersistenceError as e:
            logger.error("Failed to mark job %s completed: %s", job.id, e)
            return False

        job.status = JobStatus.COMPLETED
        job.stage = JobStage.COMPLETED
        job.progress = 100
        job.processed_filename = processed_filename
        job.drive_url = drive_url
        job.completed_at = datetime.now()

        logger.info("Job %s completed successfully: %s", job.id, drive_url)
        return True

    def fail_job(self, job: Job, message: str) -> None:
        """Record a terminal failure. Progress stays at its last written value."""
        logger.error("Job %s failed: %s", job.id, message)
        job.status = JobStatus.FAILED
        job.stage = JobStage.FAILED
        job.error = message
        try:
            self.store.mark_job_failed(job.id, message)
        except PersistenceError as e:
            logger.warning("Failed to mark job %s as failed: %s", job.id, e)

    def _advance(self, job: Job, stage: JobStage, progress: int) -> None:
        job.stage = stage
        job.progress = progress
        self._persist(job)

    def _persist(self, job: Job) -> bool:
        """Write intermediate job state with bounded exponential backoff.

        After the last failed attempt the error is logged and processing
        continues with the in-memory job; the UI shows stale progress until
        the next successful write.
        """
        delay = self.persist_backoff_s
        for attempt in range(1, self.persist_retries + 1):
            try:
                self.store.update_job(job)
                return True
            except PersistenceError as e:
                if attempt == self.persist_retries:
                    logger.warning(
                        "Failed to update job %s after %d attempts: %s", job.id, attempt, e
                    )
                    return False
                logger.debug("Retrying update of job %s in %.2fs: %s", job.id, delay, e)
                self._sleep(delay)
                delay *= 2
        return False
