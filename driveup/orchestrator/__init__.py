"""Orchestrator package - runs resumable uploads."""
from .core import UploadOrchestrator
from .progress import ProgressTracker, format_duration, format_speed
from .single_upload import SingleUploadHandler

__all__ = [
    "UploadOrchestrator",
    "SingleUploadHandler",
    "ProgressTracker",
    "format_duration",
    "format_speed",
]
