from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class StoreUnavailableError(RuntimeError):
    """Raised when a backing store can not be reached or rejects a statement."""

    def __init__(self, message: str, *, backend: str) -> None:
        super().__init__(message)
        self.backend = backend


class DuplicateRecordError(RuntimeError):
    """A uniqueness constraint rejected an insert."""


class CompletionError(RuntimeError):
    """The completion service returned an error or timed out."""


class InvalidCompletionError(CompletionError):
    """The completion service answered, but the payload is empty or malformed."""
