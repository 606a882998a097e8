import shutil
import tempfile
import zipfile
from pathlib import Path

import pytest

from bookify.errors import ConversionError, UploadError
from bookify.processor import JobProcessor
from bookify.tempfiles import TempFileRegistry
from bookify.queue import Account, Converter, SQLiteJobStore, Uploader


class FakeConverter(Converter):
    """Copies the input to the output and reports 10/50/100."""

    def __init__(self, error: str = ""):
        self.error = error
        self.calls = []

    def convert(self, input_path, output_path, on_progress=None):
        self.calls.append((input_path, output_path))
        if self.error:
            raise ConversionError(self.error)
        for percent in (10, 50, 100):
            if on_progress:
                on_progress(percent)
        shutil.copyfile(input_path, output_path)


class FakeUploader(Uploader):
    """Records uploads and returns a share URL per call."""

    def __init__(self, error: str = ""):
        self.error = error
        self.uploads = []
        self.closed = False

    def upload(self, account, file_path, destination_name):
        if self.error:
            raise UploadError(self.error)
        self.uploads.append((account.id, destination_name, Path(file_path).read_bytes()))
        return f"https://drive.google.com/file/d/fake-{len(self.uploads)}/view"

    def close(self):
        self.closed = True


def write_epub(path: Path, text: str = "hello") -> Path:
    """Write a minimal EPUB (a ZIP with a mimetype entry)."""
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("mimetype", "application/epub+zip")
        zf.writestr("OEBPS/content.xhtml", f"<html><body>{text}</body></html>")
    return path


@pytest.fixture
def temp_dir():
    """Create temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def work_dir(temp_dir):
    """Shared temp directory the worker reads from."""
    path = temp_dir / "work"
    path.mkdir()
    return path


@pytest.fixture
def store(temp_dir):
    """Create SQLiteJobStore instance."""
    job_store = SQLiteJobStore(str(temp_dir / "test_bookify.db"))
    yield job_store
    job_store.close()


@pytest.fixture
def account(store):
    """A registered account with OAuth credentials."""
    return store.create_account(
        Account(
            name="reader",
            folder_id="folder-123",
            access_token="access",
            refresh_token="refresh",
            user_email="reader@example.com",
        )
    )


@pytest.fixture
def converter():
    return FakeConverter()


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def registry():
    return TempFileRegistry()


@pytest.fixture
def sleeps():
    """Collects backoff delays instead of sleeping."""
    return []


@pytest.fixture
def processor(store, converter, uploader, work_dir, registry, sleeps):
    return JobProcessor(
        store, converter, uploader, str(work_dir), registry=registry, sleep=sleeps.append
    )


@pytest.fixture
def queued_job(store, account, work_dir):
    """A queued job whose input file is already in the temp directory."""
    write_epub(work_dir / "book.epub")
    return store.create_job(account.id, "book.epub")


@pytest.fixture
def make_epub():
    return write_epub
