"""Job store, job models and background worker tasks."""

from .backends import Converter, JobStore, ProgressCallback, Uploader
from .models import Account, Job, JobStage, JobStatus
from .sqlite_backend import SQLiteJobStore
from .worker import CleanupSweeper, PeriodicTask, QueueWorker

__all__ = [
    "JobStore",
    "Converter",
    "Uploader",
    "ProgressCallback",
    "Account",
    "Job",
    "JobStage",
    "JobStatus",
    "SQLiteJobStore",
    "PeriodicTask",
    "QueueWorker",
    "CleanupSweeper",
]
