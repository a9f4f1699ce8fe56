"""Domain exceptions for the media job orchestrator."""

from typing import Optional


class DomainException(Exception):
    """Base exception for all domain errors."""
    pass


class ConfigurationError(DomainException):
    """Raised when configuration is invalid."""
    pass


class InvalidArgumentError(DomainException):
    """Raised when a request is malformed (e.g. unresolved output asset)."""
    pass


class RemoteJobFailedError(DomainException):
    """Raised when a remote job ends in Error or Canceled."""

    def __init__(self, message: str, job_name: str = "", state: str = ""):
        super().__init__(message)
        self.job_name = job_name
        self.state = state


class PollTimeoutError(DomainException):
    """Raised by strict callers when a job did not reach a terminal state in time."""

    def __init__(self, message: str, job_name: str = "", state: str = ""):
        super().__init__(message)
        self.job_name = job_name
        self.state = state


class CopyFailedError(DomainException):
    """Raised when a single blob copy fails during materialization."""
    pass


class AuthorizationExpiredError(DomainException):
    """Raised when a capability URL (SAS) or access token is expired or rejected."""

    GUIDANCE = (
        "Regenerate the SAS URL (or access token) with Read/List permissions "
        "on the Service, Container and Object resource types and a later expiry"
    )

    def __str__(self) -> str:
        return f"{super().__str__()}. {self.GUIDANCE}"


class RemoteServiceError(DomainException):
    """Raised when a call to the remote job or storage service fails."""

    def __init__(self, message: str, status_code: Optional[int] = None, error_code: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code

    @property
    def is_transient(self) -> bool:
        """Connection errors, throttling and server errors are worth retrying."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class StorageError(RemoteServiceError):
    """Raised when a blob storage operation fails."""
    pass
