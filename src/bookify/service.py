"""Service assembly and the library-level entry points used by the CLI.

Usage:
    # Queue local files for an account
    service.enqueue_files(store, account, ["book1.epub", "book2.epub"], temp_dir="./temp")

    # Run the worker and sweeper until SIGINT/SIGTERM
    service.run_service(config)

    # Check status
    stats = service.get_queue_stats(store)
"""

import logging
import os
import shutil
import signal
import threading
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from tqdm import tqdm

from .converter import KepubifyConverter
from .drive import DriveUploader
from .logging_config import setup_logging
from .models import BookifyConfig
from .processor import JobProcessor
from .queue import CleanupSweeper, JobStatus, QueueWorker, SQLiteJobStore
from .queue.backends import Converter, JobStore, Uploader
from .queue.models import Account
from .tempfiles import TempFileRegistry

logger = logging.getLogger(__name__)

EPUB_EXTENSION = ".epub"
ZIP_MAGIC = b"PK"


class Components(NamedTuple):
    """Everything the running service is made of, wired together."""

    store: JobStore
    uploader: Uploader
    processor: JobProcessor
    worker: QueueWorker
    sweeper: CleanupSweeper
    registry: TempFileRegistry
    stop_event: threading.Event


def build_store(config: BookifyConfig) -> SQLiteJobStore:
    """Open (and migrate) the configured job store."""
    return SQLiteJobStore(config.storage.db_path)


def build_uploader(config: BookifyConfig, store: JobStore) -> DriveUploader:
    return DriveUploader(
        store,
        client_id=config.drive.client_id,
        client_secret=config.drive.client_secret,
        token_url=config.drive.token_url,
        timeout_s=config.drive.timeout_s,
    )


def build_components(
    config: BookifyConfig,
    store: Optional[JobStore] = None,
    converter: Optional[Converter] = None,
    uploader: Optional[Uploader] = None,
    stop_event: Optional[threading.Event] = None,
) -> Components:
    """Wire store, processor, worker and sweeper from config.

    The worker and sweeper share one stop event and one temp file registry,
    so stopping either stops both and the sweeper never deletes a file an
    in-flight job still owns.
    """
    store = store or build_store(config)
    converter = converter or KepubifyConverter(
        executable=config.converter.executable, timeout_s=config.converter.timeout_s
    )
    uploader = uploader or build_uploader(config, store)
    stop_event = stop_event or threading.Event()
    registry = TempFileRegistry()

    processor = JobProcessor(
        store,
        converter,
        uploader,
        temp_dir=config.storage.temp_dir,
        registry=registry,
        persist_retries=config.worker.persist_retries,
        persist_backoff_s=config.worker.persist_backoff_s,
    )
    worker = QueueWorker(
        store, processor, interval_s=config.worker.poll_interval_s, stop_event=stop_event
    )
    sweeper = CleanupSweeper(
        config.storage.temp_dir,
        interval_s=config.cleanup.interval_s,
        max_age_s=config.cleanup.max_age_s,
        registry=registry,
        stop_event=stop_event,
    )
    return Components(store, uploader, processor, worker, sweeper, registry, stop_event)


def is_epub_file(path: str) -> bool:
    """Extension is ``.epub`` (any case) and the content starts with the ZIP magic."""
    if not path.lower().endswith(EPUB_EXTENSION):
        return False
    try:
        with open(path, "rb") as f:
            return f.read(len(ZIP_MAGIC)) == ZIP_MAGIC
    except OSError:
        return False


def enqueue_files(
    store: JobStore,
    account: Account,
    paths: Sequence[str],
    temp_dir: str,
    show_progress: bool = True,
) -> Dict[str, Any]:
    """Copy EPUB files into the temp directory and create a queued job for each.

    Args:
        store: Job store
        account: Destination account (must already be registered)
        paths: Local files to enqueue
        temp_dir: Shared temp directory the worker reads from
        show_progress: Show a tqdm progress bar

    Returns:
        Dictionary with enqueue statistics:
            - enqueued: Number of jobs created
            - skipped: Number of files rejected (not an EPUB, unreadable)
            - job_ids: IDs of the created jobs, in creation order
    """
    os.makedirs(temp_dir, exist_ok=True)
    stats: Dict[str, Any] = {"enqueued": 0, "skipped": 0, "job_ids": []}

    for path in tqdm(paths, desc="Enqueueing books", unit="book", disable=not show_progress):
        filename = os.path.basename(path)
        if not is_epub_file(path):
            logger.warning("Skipping %s: not an EPUB file", path)
            stats["skipped"] += 1
            continue

        try:
            shutil.copyfile(path, os.path.join(temp_dir, filename))
        except OSError as e:
            logger.error("Failed to copy %s into %s: %s", path, temp_dir, e)
            stats["skipped"] += 1
            continue

        job = store.create_job(account.id, filename)
        logger.info("Enqueued %s for account %s (job_id=%s)", filename, account.name, job.id)
        stats["enqueued"] += 1
        stats["job_ids"].append(job.id)

    return stats


def get_queue_stats(store: JobStore) -> Dict[str, int]:
    """Get current queue statistics.

    Returns:
        Job counts keyed by status (every status present, zero when empty)
        plus ``total``
    """
    counts = store.count_jobs_by_status()
    stats = {status.value: counts.get(status.value, 0) for status in JobStatus}
    stats["total"] = sum(stats.values())
    return stats


def run_service(config: BookifyConfig, components: Optional[Components] = None) -> None:
    """Run the queue worker and the cleanup sweeper until interrupted.

    SIGINT and SIGTERM set the shared stop event; both loops finish their
    current tick and exit, then the uploader and the store are closed.
    """
    setup_logging(config.logging.level, config.logging.file)
    os.makedirs(config.storage.temp_dir, exist_ok=True)

    components = components or build_components(config)
    stop_event = components.stop_event

    def _handle_signal(signum, frame):
        logger.info("Received signal %s, shutting down", signal.Signals(signum).name)
        stop_event.set()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)

    logger.info(
        "Service started (db=%s, temp_dir=%s)", config.storage.db_path, config.storage.temp_dir
    )
    tasks: List[Any] = [components.worker, components.sweeper]
    for task in tasks:
        task.start()

    try:
        while not stop_event.wait(1.0):
            pass
    finally:
        stop_event.set()
        for task in tasks:
            task.join()
        components.uploader.close()
        components.store.close()
        logger.info("Service stopped")
