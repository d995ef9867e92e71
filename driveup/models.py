"""
Models for driveup.

Plain dataclasses shared by the services and the orchestrator.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Union


@dataclass(frozen=True)
class RemoteNode:
    """A file or folder in the remote drive, as reported by a listing."""
    fid: str
    name: str
    path: str
    is_directory: bool
    size: int = 0
    created_at: float = 0.0
    updated_at: float = 0.0

    @classmethod
    def root(cls) -> "RemoteNode":
        return cls(fid="0", name="", path="/", is_directory=True)

    @classmethod
    def from_listing(cls, item: Dict[str, Any], parent_path: str) -> "RemoteNode":
        """Build a node from one entry of the drive's directory listing."""
        name = str(item.get("file_name", ""))
        if "dir" in item:
            is_directory = bool(item["dir"])
        else:
            is_directory = not bool(item.get("file", True))

        created_ms = item.get("created_at") or item.get("l_created_at") or 0
        updated_ms = item.get("updated_at") or item.get("l_updated_at") or 0

        if parent_path == "/":
            path = "/" + name
        else:
            path = f"{parent_path}/{name}"

        return cls(
            fid=str(item.get("fid", "")),
            name=name,
            path=path,
            is_directory=is_directory,
            size=int(item.get("size") or 0),
            created_at=float(created_ms) / 1000.0,
            updated_at=float(updated_ms) / 1000.0,
        )


@dataclass(frozen=True)
class UploadProgress:
    """Snapshot handed to progress callbacks."""
    percent: float
    bytes_transferred: int
    total_bytes: int
    speed: float
    speed_text: str
    eta: float
    eta_text: str
    elapsed: float
    instant: bool = False


class FailureCategory(Enum):
    """What kind of failure ended an upload."""
    LOCAL_IO = "local_io"
    PATH = "path"
    PROTOCOL = "protocol"
    TRANSPORT = "transport"
    AUTH = "auth"


@dataclass(frozen=True)
class UploadOk:
    """Successful upload; ``data`` is the finalize payload."""
    data: Dict[str, Any] = field(default_factory=dict)
    message: str = "upload completed"
    instant: bool = False

    @property
    def success(self) -> bool:
        return True

    @property
    def code(self) -> str:
        return "OK"


@dataclass(frozen=True)
class UploadFailure:
    """Failed upload. ``recoverable`` means re-invoking the same upload resumes it."""
    code: str
    message: str
    category: FailureCategory = FailureCategory.PROTOCOL
    recoverable: bool = False

    @property
    def success(self) -> bool:
        return False

    @property
    def data(self) -> Dict[str, Any]:
        return {}


UploadResult = Union[UploadOk, UploadFailure]
