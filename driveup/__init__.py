"""
driveup - resumable chunked uploads to a remote drive.

A crash or network failure never forces re-sending bytes the object
store already accepted: every acknowledged part, and the SHA-1 state the
drive needs to verify the next one, is written to a local resume record.

Usage:
    from driveup import UploadOrchestrator, load_config

    async with UploadOrchestrator(load_config("config.json")) as uploader:
        result = await uploader.upload("backup.tar", "/Backups/2026/")
        print(result.success, result.code, result.message)
"""
from .config import UploaderConfig, load_config
from .exceptions import (
    AllCredentialsExhausted,
    APIConnectionError,
    APIError,
    AuthenticationError,
    ConfigurationError,
    PathResolutionError,
    RemoteNotFoundError,
    UploadError,
)
from .models import FailureCategory, RemoteNode, UploadFailure, UploadOk, UploadProgress, UploadResult
from .orchestrator import UploadOrchestrator

__version__ = "0.1.0"
__all__ = [
    # Main
    "UploadOrchestrator",
    "UploaderConfig",
    "load_config",
    # Models
    "RemoteNode",
    "UploadProgress",
    "UploadResult",
    "UploadOk",
    "UploadFailure",
    "FailureCategory",
    # Errors
    "UploadError",
    "ConfigurationError",
    "APIConnectionError",
    "APIError",
    "AuthenticationError",
    "AllCredentialsExhausted",
    "RemoteNotFoundError",
    "PathResolutionError",
]
