"""Error taxonomy for the execution sandbox."""

from __future__ import annotations


class RunboxError(RuntimeError):
    """Base class for sandbox errors."""


class ConfigurationError(RunboxError):
    """Raised when settings or runtime descriptors are invalid at startup."""


class ValidationError(RunboxError, ValueError):
    """Raised before any resource is touched when a request is malformed."""


class MissingField(ValidationError):
    def __init__(self, message: str = "language and code are required") -> None:
        super().__init__(message)


class UnsupportedLanguage(ValidationError):
    def __init__(self, language: str) -> None:
        self.language = language
        super().__init__(f"Unsupported language: {language}")


class SourceTooLarge(ValidationError):
    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"code 大小超過上限（{size} > {limit} bytes）")


class ProvisioningFailed(RunboxError):
    """Raised when a workspace cannot be created; no process was launched."""


class RunnerBusy(ProvisioningFailed):
    """Raised when every execution slot is in use."""


class RunnerFailure(RunboxError):
    """Raised when the runner fails unexpectedly while a process is running."""
