"""Exceptions and error classification for the index queue.

Failures coming out of an index client are sorted into a closed set of
``ErrorKind`` values. The batch submitter matches on the kind to decide
whether a failure stays on one entry, degrades a batch to individual
submissions, or stops processing altogether.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of a failure raised while talking to the index."""

    PER_RECORD = "per_record"
    BATCH_COMMIT = "batch_commit"
    ENGINE_UNAVAILABLE = "engine_unavailable"
    FATAL = "fatal"


class IndexQueueError(Exception):
    """Base error for the index queue."""

    pass


class ConfigurationError(IndexQueueError, ValueError):
    """Queue is not configured to handle the requested operation."""

    pass


class IndexClientError(IndexQueueError):
    """Error raised by an index client adapter."""

    kind: ErrorKind = ErrorKind.PER_RECORD


class RecordSubmissionError(IndexClientError):
    """A single document was rejected by the index."""

    kind: ErrorKind = ErrorKind.PER_RECORD


class BatchCommitError(IndexClientError):
    """A batch or commit was rejected for reasons other than connectivity."""

    kind: ErrorKind = ErrorKind.BATCH_COMMIT


class EngineUnavailableError(IndexClientError):
    """The search engine is not responding.

    Raised out of ``IndexQueue.process()``; callers should stop processing
    and try again later.
    """

    kind: ErrorKind = ErrorKind.ENGINE_UNAVAILABLE


FATAL_EXCEPTIONS: tuple[type[BaseException], ...] = (
    MemoryError,
    KeyboardInterrupt,
    SystemExit,
    GeneratorExit,
)


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception raised at the index client boundary to an ErrorKind.

    Args:
        error: Exception raised while submitting or committing

    Returns:
        ErrorKind for the exception. Unrecognised exceptions are PER_RECORD.
    """
    if isinstance(error, FATAL_EXCEPTIONS):
        return ErrorKind.FATAL
    if isinstance(error, IndexClientError):
        return error.kind
    if isinstance(error, ConnectionRefusedError):
        return ErrorKind.ENGINE_UNAVAILABLE
    return ErrorKind.PER_RECORD
