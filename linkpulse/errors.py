class LinkPulseError(Exception):
    """Base class for every error raised by linkpulse"""


class ConfigError(LinkPulseError):
    pass


class StorageError(LinkPulseError):
    """The database rejected or failed a write/read"""


class DuplicateRecordError(StorageError):
    """Batch insert hit unique-index conflicts only.

    The non-conflicting rows of the batch were written; the conflicting
    ones already exist, so the batch counts as applied.
    """

    def __init__(self, inserted: int, duplicates: int):
        self.inserted = inserted
        self.duplicates = duplicates
        super().__init__(f"{duplicates} duplicate record(s) skipped, {inserted} inserted")


class FlushError(LinkPulseError):
    """One or more streams failed during a flush cycle"""

    def __init__(self, failures):
        # failures: {stream_name: exception}
        self.failures = dict(failures)
        detail = "; ".join(f"{name}: {exc}" for name, exc in self.failures.items())
        super().__init__(f"Flush failed ({detail})")


class PartialWriteError(StorageError):
    """Batch insert failed for some rows while others were written.

    ``inserted`` holds the documents that did land.
    """

    def __init__(self, message: str, inserted):
        self.inserted = list(inserted)
        super().__init__(message)


class FlushSkipped(LinkPulseError):
    """The drain lease could not be taken, so nothing was flushed"""
