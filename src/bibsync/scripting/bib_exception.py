"""Optional scripting helpers to log exceptions and convert them to exit codes."""

from __future__ import annotations

from ..errors import BibSyncError, CacheLockedError
from .bib_logging import log


class Interceptor:
    """
    Context manager to intercept exceptions.

    Use as a context manager:

        interceptor = bib_exception.Interceptor()
        with interceptor:
            pipeline.run()
        sys.exit(interceptor.exitcode())

    Exceptions are logged and suppressed, except KeyboardInterrupt. A
    BibSyncError is an expected failure and is reported by its message
    alone; anything else is reported as unexpected. The traceback is
    logged at DEBUG level in both cases. The failed field tells you
    whether there were any exceptions.
    """

    def __init__(self):
        self.failed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is None:
            return False
        if issubclass(exc_type, KeyboardInterrupt):
            return False
        if issubclass(exc_type, CacheLockedError):
            log.error("cache is busy: %s", exc_value)
            log.error("wait for the other bibsync run to finish, then retry")
        elif issubclass(exc_type, BibSyncError):
            log.error("operation failed: %s", exc_value)
        else:
            log.error("unexpected failure: %s", exc_value)
        log.debug("traceback", exc_info=(exc_type, exc_value, traceback))
        self.failed = True
        return True

    def exitcode(self) -> int:
        """
        Return the exitcode to pass to sys.exit.

        Zero on success, 1 on failure.
        """
        return int(self.failed)
