"""Pydantic models for job queue data structures.

This module defines the records persisted by the job store: registered
drive accounts and the conversion-and-upload jobs that belong to them.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class JobStatus(str, Enum):
    """Coarse job lifecycle.

    State transitions:
        queued → processing       (worker claims the job)
        processing → completed    (converted file uploaded)
        processing → failed       (any pipeline step failed)

    completed and failed are terminal; there is no automatic retry.
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStage(str, Enum):
    """Fine-grained step within the processing status."""

    QUEUED = "queued"
    STARTING = "starting"
    CONVERTING = "converting"
    UPLOADING = "uploading"
    CLEANUP = "cleanup"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


def enum_value(value: Any) -> Any:
    """Return the plain value of an enum member, or the value unchanged."""
    return value.value if isinstance(value, Enum) else value


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def local_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an offset-aware datetime to naive local time; naive values pass through.

    All stored timestamps are naive local time, matching ``datetime.now()``.
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


class Account(BaseModel):
    """A registered upload destination: one drive folder plus its OAuth credential."""

    id: Optional[int] = Field(default=None, description="Store-assigned identifier")
    name: str = Field(..., min_length=1, description="Unique display name")
    folder_id: str = Field(..., min_length=1, description="Destination drive folder ID")
    access_token: str = Field(default="", description="OAuth access token")
    refresh_token: str = Field(default="", description="OAuth refresh token")
    token_expiry: Optional[datetime] = Field(default=None, description="Access token expiry")
    user_email: str = Field(default="", description="Email of the authorizing user")
    created_at: datetime = Field(default_factory=datetime.now, description="Registration time")
    updated_at: datetime = Field(default_factory=datetime.now, description="Last update time")

    @field_validator("token_expiry")
    @classmethod
    def normalize_expiry(cls, v: Optional[datetime]) -> Optional[datetime]:
        return local_naive(v)

    @property
    def has_oauth_credentials(self) -> bool:
        return bool(self.access_token and self.refresh_token)

    def to_public_dict(self) -> Dict[str, Any]:
        """Account fields safe to show to users (no credential material)."""
        return {
            "id": self.id,
            "name": self.name,
            "folder_id": self.folder_id,
            "user_email": self.user_email,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


class Job(BaseModel):
    """One file's conversion-and-upload lifecycle.

    ``status`` and ``stage`` are stored as plain strings; compare them
    against the JobStatus/JobStage members (both are str enums).
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Job UUID")
    account_id: int = Field(..., description="Owning account")
    original_filename: str = Field(..., description="Name of the uploaded file")
    processed_filename: str = Field(default="", description="Uploaded name, set on success")
    status: JobStatus = Field(default=JobStatus.QUEUED, description="Coarse state")
    progress: int = Field(default=0, ge=0, le=100, description="Percent complete")
    stage: JobStage = Field(default=JobStage.QUEUED, description="Fine-grained step")
    message: str = Field(default="", description="Informational message")
    drive_url: str = Field(default="", description="Public URL of the uploaded file")
    error: str = Field(default="", description="Failure reason")
    created_at: datetime = Field(default_factory=datetime.now, description="Queue time")
    updated_at: datetime = Field(default_factory=datetime.now, description="Last write time")
    completed_at: Optional[datetime] = Field(default=None, description="Completion time")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True  # Serialize enums as strings

    @property
    def is_terminal(self) -> bool:
        return enum_value(self.status) in TERMINAL_STATUSES

    def to_record(self) -> Dict[str, Any]:
        """The job record exposed to the polling UI."""
        return {
            "id": self.id,
            "account_id": self.account_id,
            "original_filename": self.original_filename,
            "processed_filename": self.processed_filename,
            "status": enum_value(self.status),
            "progress": self.progress,
            "stage": enum_value(self.stage),
            "message": self.message,
            "drive_url": self.drive_url,
            "error": self.error,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
            "completed_at": _isoformat(self.completed_at),
        }
