"""Unit tests for the job store.

Tests cover:
- Job creation and FIFO ``next_queued_job``
- Full-row updates and terminal writes
- Account create/update/lookup
- Recent-job listing and status counts
"""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from bookify.errors import DuplicateAccountError, NotFoundError, PersistenceError
from bookify.queue import Account, Job, JobStage, JobStatus, SQLiteJobStore


class TestJobModel:
    def test_defaults(self):
        job = Job(account_id=1, original_filename="book.epub")
        assert job.status == "queued"
        assert job.stage == "queued"
        assert job.progress == 0
        assert len(job.id) == 36
        assert not job.is_terminal

    def test_progress_bounds(self):
        with pytest.raises(ValueError):
            Job(account_id=1, original_filename="book.epub", progress=101)

    def test_record_keys(self):
        record = Job(account_id=1, original_filename="book.epub").to_record()
        assert set(record) == {
            "id",
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
        }
        assert record["completed_at"] is None

    def test_public_account_dict_hides_tokens(self):
        account = Account(name="a", folder_id="f", access_token="secret", refresh_token="r")
        public = account.to_public_dict()
        assert "access_token" not in public
        assert "refresh_token" not in public
        assert account.has_oauth_credentials


class TestJobStore:
    """Test job persistence and queue ordering."""

    def test_create_job(self, store, account):
        job = store.create_job(account.id, "book.epub")

        stored = store.get_job(job.id)
        assert stored.account_id == account.id
        assert stored.original_filename == "book.epub"
        assert stored.status == JobStatus.QUEUED
        assert stored.stage == JobStage.QUEUED
        assert stored.progress == 0
        assert stored.processed_filename == ""

    def test_job_ids_unique(self, store, account):
        ids = {store.create_job(account.id, f"{i}.epub").id for i in range(20)}
        assert len(ids) == 20

    def test_empty_queue(self, store):
        assert store.next_queued_job() is None

    def test_fifo_order(self, store, account):
        """Test jobs drain in creation order, then the queue is empty."""
        created = []
        for name in ("a.epub", "b.epub", "c.epub"):
            created.append(store.create_job(account.id, name).id)
            time.sleep(0.01)

        drained = []
        while True:
            job = store.next_queued_job()
            if job is None:
                break
            drained.append(job.id)
            store.mark_job_completed(job.id, "x.kepub.epub", "url")

        assert drained == created

    def test_fifo_without_delays(self, store, account):
        created = [store.create_job(account.id, f"{i}.epub").id for i in range(5)]

        drained = []
        job = store.next_queued_job()
        while job is not None:
            drained.append(job.id)
            store.mark_job_failed(job.id, "skip")
            job = store.next_queued_job()

        assert drained == created

    def test_next_skips_non_queued(self, store, account):
        """Test processing and terminal jobs are never returned."""
        first = store.create_job(account.id, "first.epub")
        time.sleep(0.01)
        second = store.create_job(account.id, "second.epub")
        time.sleep(0.01)
        third = store.create_job(account.id, "third.epub")

        first.status = JobStatus.PROCESSING
        store.update_job(first)
        store.mark_job_failed(second.id, "bad input")

        assert store.next_queued_job().id == third.id

    def test_update_keeps_fifo_position(self, store, account):
        """Test a full-row update does not move the job to the back."""
        first = store.create_job(account.id, "first.epub")
        time.sleep(0.01)
        store.create_job(account.id, "second.epub")

        first.message = "touched"
        store.update_job(first)

        assert store.next_queued_job().id == first.id

    def test_update_job_writes_all_fields(self, store, account):
        job = store.create_job(account.id, "book.epub")
        job.status = JobStatus.PROCESSING
        job.stage = JobStage.CONVERTING
        job.progress = 40
        job.message = "converting"
        store.update_job(job)

        stored = store.get_job(job.id)
        assert stored.status == JobStatus.PROCESSING
        assert stored.stage == JobStage.CONVERTING
        assert stored.progress == 40
        assert stored.message == "converting"
        assert stored.updated_at >= stored.created_at

    def test_mark_completed(self, store, account):
        job = store.create_job(account.id, "book.epub")
        job.progress = 90
        store.update_job(job)

        store.mark_job_completed(job.id, "book.kepub.epub", "https://drive/x")

        stored = store.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.stage == JobStage.COMPLETED
        assert stored.progress == 100
        assert stored.processed_filename == "book.kepub.epub"
        assert stored.drive_url == "https://drive/x"
        assert stored.completed_at is not None
        assert stored.is_terminal

    def test_mark_failed_keeps_progress(self, store, account):
        job = store.create_job(account.id, "book.epub")
        job.progress = 25
        store.update_job(job)

        store.mark_job_failed(job.id, "Conversion failed: boom")

        stored = store.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.stage == JobStage.FAILED
        assert stored.error == "Conversion failed: boom"
        assert stored.progress == 25
        assert stored.completed_at is None

    def test_get_missing_job(self, store):
        with pytest.raises(NotFoundError):
            store.get_job("no-such-job")

    def test_list_recent_jobs(self, store, account):
        ids = []
        for i in range(4):
            ids.append(store.create_job(account.id, f"{i}.epub").id)
            time.sleep(0.01)

        recent = store.list_recent_jobs(limit=3)
        assert [job.id for job in recent] == list(reversed(ids))[:3]

    def test_count_jobs_by_status(self, store, account):
        jobs = [store.create_job(account.id, f"{i}.epub") for i in range(4)]
        store.mark_job_completed(jobs[0].id, "0.kepub.epub", "url")
        store.mark_job_failed(jobs[1].id, "boom")

        assert store.count_jobs_by_status() == {"queued": 2, "completed": 1, "failed": 1}

    def test_write_error_becomes_persistence_error(self, store, account):
        job = store.create_job(account.id, "book.epub")
        store.close()
        with pytest.raises(PersistenceError):
            store.mark_job_failed(job.id, "closed")

    def test_persists_across_reopen(self, temp_dir, account, store):
        job = store.create_job(account.id, "book.epub")
        store.close()

        reopened = SQLiteJobStore(str(temp_dir / "test_bookify.db"))
        try:
            assert reopened.next_queued_job().id == job.id
            assert reopened.get_account(account.id).name == "reader"
        finally:
            reopened.close()

    def test_wal_mode(self, store):
        mode = store.db.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode == "wal"


class TestAccountStore:
    """Test account registration and lookup."""

    def test_create_assigns_id(self, store, account):
        assert account.id is not None
        assert store.get_account(account.id).folder_id == "folder-123"

    def test_duplicate_name(self, store, account):
        with pytest.raises(DuplicateAccountError):
            store.create_account(Account(name="reader", folder_id="other"))

    def test_get_by_name(self, store, account):
        found = store.get_account_by_name("reader")
        assert found.id == account.id
        assert found.user_email == "reader@example.com"

    def test_missing_account(self, store):
        with pytest.raises(NotFoundError):
            store.get_account(42)
        with pytest.raises(NotFoundError):
            store.get_account_by_name("nobody")

    def test_update_tokens(self, store, account):
        expiry = datetime(2030, 1, 1, 12, 0, 0)
        account.access_token = "new-access"
        account.token_expiry = expiry
        store.update_account(account)

        stored = store.get_account(account.id)
        assert stored.access_token == "new-access"
        assert stored.token_expiry == expiry

    def test_offset_expiry_stored_as_local_time(self, store, account):
        aware = datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        account.token_expiry = aware
        store.update_account(account)

        stored = store.get_account(account.id).token_expiry
        assert stored.tzinfo is None
        assert stored == aware.astimezone().replace(tzinfo=None)

    def test_offset_expiry_normalized_on_construction(self):
        account = Account(name="a", folder_id="f", token_expiry="2030-01-01T00:00:00+00:00")
        assert account.token_expiry.tzinfo is None

    def test_update_uncreated_account(self, store):
        with pytest.raises(NotFoundError):
            store.update_account(Account(name="ghost", folder_id="f"))

    def test_list_accounts(self, store, account):
        store.create_account(Account(name="second", folder_id="f2"))
        assert [a.name for a in store.list_accounts()] == ["reader", "second"]

    def test_not_found_is_lookup_error(self, store):
        with pytest.raises(LookupError):
            store.get_account(1)


class TestConcurrentAccess:
    """Test store use from worker threads."""

    def test_reads_from_other_thread(self, store, account):
        job = store.create_job(account.id, "book.epub")
        result = {}

        def read():
            result["job"] = store.next_queued_job()

        thread = threading.Thread(target=read)
        thread.start()
        thread.join()

        assert result["job"].id == job.id

    def test_token_expiry_roundtrip_precision(self, store, account):
        expiry = datetime.now() + timedelta(minutes=30)
        account.token_expiry = expiry
        store.update_account(account)
        assert store.get_account(account.id).token_expiry == expiry
