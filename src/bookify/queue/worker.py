"""Background tasks: the queue worker and the temp directory sweeper.

Both run as periodic loops on their own threads and share one stop event:
- QueueWorker polls the job store and runs at most one job per tick,
  synchronously, so a single worker never has two jobs in flight
- CleanupSweeper deletes stale files from the shared temp directory

``tick()`` performs exactly one iteration and is what tests drive; ``run()``
only adds the timer. Stopping sets the event: the loop exits after the
current tick, and an in-flight job is never interrupted.
"""

import logging
import os
import threading
import time
from typing import TYPE_CHECKING, Callable, List, Optional

from ..tempfiles import TempFileRegistry
from .backends import JobStore
from .models import Job

if TYPE_CHECKING:
    from ..processor import JobProcessor

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 5.0
DEFAULT_CLEANUP_INTERVAL_S = 600.0
DEFAULT_MAX_AGE_S = 3600.0


class PeriodicTask:
    """A tick function driven by a fixed-interval timer until stopped.

    Args:
        interval_s: Seconds between ticks (the first tick fires after one interval)
        stop_event: Cancellation token; pass the same event to tasks that stop together
    """

    name = "periodic-task"

    def __init__(self, interval_s: float, stop_event: Optional[threading.Event] = None):
        self.interval_s = interval_s
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self._thread: Optional[threading.Thread] = None

    def tick(self):
        raise NotImplementedError

    def run(self) -> None:
        """Tick every ``interval_s`` until the stop event is set."""
        logger.info("Starting %s (interval %.1fs)", self.name, self.interval_s)
        while not self.stop_event.wait(self.interval_s):
            try:
                self.tick()
            except Exception:
                # Keep the loop alive; one bad tick must not stop the service
                logger.exception("Unhandled error in %s tick", self.name)
        logger.info("%s stopped", self.name)

    def start(self) -> threading.Thread:
        """Run the loop on a daemon thread and return the thread."""
        self._thread = threading.Thread(target=self.run, name=self.name, daemon=True)
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        """Signal the loop to exit. Never blocks, safe to call repeatedly."""
        self.stop_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


class QueueWorker(PeriodicTask):
    """Claims the oldest queued job each tick and processes it to completion.

    The claim is the processor's first ``update_job`` (status=processing);
    it is not atomic with the read, so only one worker may run per store.
    """

    name = "queue-worker"

    def __init__(
        self,
        store: JobStore,
        processor: "JobProcessor",
        interval_s: float = DEFAULT_POLL_INTERVAL_S,
        stop_event: Optional[threading.Event] = None,
    ):
        super().__init__(interval_s, stop_event)
        self.store = store
        self.processor = processor

    def tick(self) -> Optional[Job]:
        """Process the next queued job, if any.

        Returns:
            The job that was processed, or None when the queue was empty or
            could not be read
        """
        try:
            job = self.store.next_queued_job()
        except Exception as e:
            logger.error("Failed to get next queued job: %s", e)
            return None

        if job is None:
            return None

        logger.info("Processing job %s: %s", job.id, job.original_filename)
        try:
            self.processor.run(job)
        except Exception as e:
            logger.exception("Unexpected error while processing job %s", job.id)
            self.processor.fail_job(job, f"Unexpected error: {e}")
        return job

    def drain(self, max_jobs: Optional[int] = None) -> List[Job]:
        """Process queued jobs back to back until the queue is empty.

        Args:
            max_jobs: Stop after this many jobs (default: all)

        Returns:
            Processed jobs in processing order
        """
        processed: List[Job] = []
        while not self.stop_event.is_set():
            if max_jobs is not None and len(processed) >= max_jobs:
                break
            job = self.tick()
            if job is None:
                break
            processed.append(job)
        return processed


class CleanupSweeper(PeriodicTask):
    """Deletes files older than ``max_age_s`` from the shared temp directory.

    The sweep is by age only; files claimed in the registry by an in-flight
    job are skipped whatever their age.
    """

    name = "cleanup-sweeper"

    def __init__(
        self,
        temp_dir: str,
        interval_s: float = DEFAULT_CLEANUP_INTERVAL_S,
        max_age_s: float = DEFAULT_MAX_AGE_S,
        registry: Optional[TempFileRegistry] = None,
        clock: Callable[[], float] = time.time,
        stop_event: Optional[threading.Event] = None,
    ):
        super().__init__(interval_s, stop_event)
        self.temp_dir = temp_dir
        self.max_age_s = max_age_s
        self.registry = registry or TempFileRegistry()
        self.clock = clock

    def tick(self) -> List[str]:
        """Run one sweep.

        Returns:
            Names of the files removed. A missing or unreadable directory
            yields an empty list.
        """
        cutoff = self.clock() - self.max_age_s

        try:
            with os.scandir(self.temp_dir) as it:
                entries = list(it)
        except OSError as e:
            logger.warning("Skipping cleanup, cannot list %s: %s", self.temp_dir, e)
            return []

        removed = []
        for entry in entries:
            try:
                if entry.is_dir():
                    continue
                mtime = entry.stat().st_mtime
            except OSError:
                continue

            if mtime >= cutoff:
                continue

            if self.registry.is_claimed(entry.path):
                logger.debug("Keeping in-flight temp file: %s", entry.name)
                continue

            try:
                os.remove(entry.path)
            except OSError as e:
                logger.warning("Failed to remove old file %s: %s", entry.path, e)
                continue

            logger.info("Cleaned up old temp file: %s", entry.name)
            removed.append(entry.name)

        return removed
