"""
Exceptions raised by driveup services.

Services raise these; the upload orchestrator turns them into
``UploadFailure`` results so callers never see a crash for an expected
failure.
"""
from typing import Optional


class UploadError(Exception):
    """Base exception for all driveup errors."""


class ConfigurationError(UploadError):
    """Raised when the uploader is configured incorrectly (e.g. no tokens)."""


class APIConnectionError(UploadError):
    """Raised when a request never produced a usable HTTP response."""

    def __init__(self, message: str, endpoint: Optional[str] = None):
        super().__init__(message)
        self.endpoint = endpoint


class APIError(UploadError):
    """Raised when the drive API answers with an HTTP or business error."""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
    ):
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code
        self.code = code


class AuthenticationError(APIError):
    """Raised when the current credential is rejected."""


class AllCredentialsExhausted(AuthenticationError):
    """Raised when every configured credential has been marked failed."""

    def __init__(self, message: str = "all access tokens have failed"):
        super().__init__(message)


class RemoteNotFoundError(UploadError):
    """Raised when a remote path does not exist."""

    def __init__(self, path: str):
        super().__init__(f"remote path not found: {path}")
        self.path = path


class PathResolutionError(UploadError):
    """Raised when a path cannot be used, e.g. a component is a file."""


class PartUploadError(UploadError):
    """Raised when the object store rejects a part PUT or the commit POST."""

    def __init__(
        self,
        message: str,
        part_number: Optional[int] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.part_number = part_number
        self.status_code = status_code
