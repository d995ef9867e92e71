"""
ResumeStore - durable record of in-flight uploads.

One JSON file per (local path, destination path) pair. The orchestrator
writes it right after negotiating an upload and after every accepted part,
and deletes it once the drive has registered the file. Records that are
malformed or no longer describe the file being uploaded are discarded;
they never leak into a live transfer.
"""
import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from blake3 import blake3

from .hash_context import HashState

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path(tempfile.gettempdir()) / "driveup_upload_state"


@dataclass
class UploadSession:
    """Durable state of one in-flight upload."""
    local_path: str
    dest_path: str
    file_size: int
    task_id: str
    bucket: str
    obj_key: str
    upload_id: str
    upload_url: str
    part_size: int
    mime_type: str = "application/octet-stream"
    uploaded_parts: Dict[int, str] = field(default_factory=dict)
    auth_info: Any = None
    callback: Any = None
    hash_state: Optional[HashState] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return session_key(self.local_path, self.dest_path)

    @property
    def total_parts(self) -> int:
        # a 0-byte file still uploads one empty part
        return max(1, -(-self.file_size // self.part_size))

    def next_part(self) -> int:
        """First part number (1-based) without a recorded ETag."""
        part = 1
        while part in self.uploaded_parts:
            part += 1
        return part

    def part_offset(self, part_number: int) -> int:
        return min((part_number - 1) * self.part_size, self.file_size)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "local_path": self.local_path,
            "dest_path": self.dest_path,
            "file_size": self.file_size,
            "task_id": self.task_id,
            "bucket": self.bucket,
            "obj_key": self.obj_key,
            "upload_id": self.upload_id,
            "upload_url": self.upload_url,
            "part_size": self.part_size,
            "mime_type": self.mime_type,
            "uploaded_parts": {str(n): etag for n, etag in sorted(self.uploaded_parts.items())},
            "auth_info": self.auth_info,
            "callback": self.callback,
            "hash_state": self.hash_state.to_dict() if self.hash_state else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UploadSession":
        """
        Rebuild a session from its persisted form.

        Raises:
            KeyError, TypeError, ValueError: if the record is malformed
        """
        if not isinstance(data, dict):
            raise TypeError(f"session record must be an object, got {type(data).__name__}")

        raw_parts = data.get("uploaded_parts") or {}
        if not isinstance(raw_parts, dict):
            raise TypeError("uploaded_parts must be an object")

        part_size = int(data["part_size"])
        if part_size <= 0:
            raise ValueError(f"invalid part size: {part_size}")

        raw_state = data.get("hash_state")
        return cls(
            local_path=str(data["local_path"]),
            dest_path=str(data["dest_path"]),
            file_size=int(data["file_size"]),
            task_id=str(data["task_id"]),
            bucket=str(data["bucket"]),
            obj_key=str(data["obj_key"]),
            upload_id=str(data["upload_id"]),
            upload_url=str(data["upload_url"]),
            part_size=part_size,
            mime_type=str(data.get("mime_type") or "application/octet-stream"),
            uploaded_parts={int(n): str(etag) for n, etag in raw_parts.items()},
            auth_info=data.get("auth_info"),
            callback=data.get("callback"),
            hash_state=HashState.from_dict(raw_state) if raw_state else None,
            created_at=float(data.get("created_at") or 0.0),
            updated_at=float(data.get("updated_at") or 0.0),
        )


def session_key(local_path: str, dest_path: str) -> str:
    """Stable key for a (local path, destination path) pair."""
    return blake3(f"{local_path}|{dest_path}".encode("utf-8")).hexdigest()


class ResumeStore:
    """
    Directory of JSON session records.

    Writes go through a temporary file and ``os.replace`` so a crash never
    leaves a half-written record behind.
    """

    def __init__(self, state_dir: Optional[Path] = None):
        self._state_dir = Path(state_dir) if state_dir else DEFAULT_STATE_DIR

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def _record_path(self, key: str) -> Path:
        return self._state_dir / f"{key}.json"

    def load(self, key: str) -> Optional[UploadSession]:
        """Load a session, or None when there is none (or it was malformed)."""
        path = self._record_path(key)
        if not path.exists():
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            return UploadSession.from_dict(raw)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("ResumeStore: Discarding malformed record %s: %s", path.name, e)
            self.delete(key)
            return None
        except OSError as e:
            logger.warning("ResumeStore: Could not read %s: %s", path, e)
            return None

    def load_matching(self, local_path: str, dest_path: str, file_size: int) -> Optional[UploadSession]:
        """
        Load the session for this pair only if it still describes the same upload.

        A record whose path, destination or size differs is deleted and
        treated as absent.
        """
        key = session_key(local_path, dest_path)
        session = self.load(key)
        if session is None:
            return None

        if (
            session.local_path != local_path
            or session.dest_path != dest_path
            or session.file_size != file_size
        ):
            logger.info(
                "ResumeStore: Stale session for %s (size %d, now %d) - starting fresh",
                local_path, session.file_size, file_size
            )
            self.delete(key)
            return None

        logger.debug(
            "ResumeStore: Resuming %s at part %d/%d",
            local_path, session.next_part(), session.total_parts
        )
        return session

    def save(self, session: UploadSession) -> None:
        """Persist a session atomically."""
        session.updated_at = time.time()
        self._state_dir.mkdir(parents=True, exist_ok=True)

        path = self._record_path(session.key)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(session.to_dict(), f, indent=2)
        os.replace(tmp_path, path)
        logger.debug(
            "ResumeStore: Saved %s (%d parts done)", path.name, len(session.uploaded_parts)
        )

    def delete(self, key: str) -> None:
        path = self._record_path(key)
        try:
            path.unlink()
            logger.debug("ResumeStore: Deleted %s", path.name)
        except FileNotFoundError:
            pass

    def cleanup_stale(self, max_age_days: int = 7) -> int:
        """
        Remove records that are too old or whose local file no longer exists.

        Args:
            max_age_days: Maximum age in days since the record was last written

        Returns:
            Number of records removed
        """
        if not self._state_dir.is_dir():
            return 0

        cutoff = time.time() - (max_age_days * 24 * 60 * 60)
        removed = 0

        for path in self._state_dir.glob("*.json"):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    raw = json.load(f)
                last_write = float(raw.get("updated_at") or raw.get("created_at") or 0.0)
                local_path = raw.get("local_path")
            except (OSError, json.JSONDecodeError, AttributeError, TypeError, ValueError):
                last_write, local_path = 0.0, None

            if last_write >= cutoff and local_path and Path(local_path).exists():
                continue

            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                pass

        if removed > 0:
            logger.info("ResumeStore: Cleaned up %d stale sessions", removed)

        return removed
