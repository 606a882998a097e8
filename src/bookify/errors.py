"""Exception hierarchy shared by the store, converter, uploader and worker."""


class BookifyError(Exception):
    """Base class for all bookify errors."""


class NotFoundError(BookifyError, LookupError):
    """A requested account or job does not exist."""


class DuplicateAccountError(BookifyError):
    """An account with the same name is already registered."""


class PersistenceError(BookifyError):
    """A write to the job store could not be completed."""


class ConversionError(BookifyError):
    """The converter rejected or failed on its input."""


class UploadError(BookifyError):
    """The remote upload (or the credential refresh before it) failed."""
