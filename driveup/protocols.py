"""
Protocols (interfaces) the orchestrator and resolver depend on.

Small, focused interfaces so tests can pass in fakes.
"""
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from .models import UploadProgress


ProgressCallback = Callable[[UploadProgress], Any]


@runtime_checkable
class IDriveAPI(Protocol):
    """Drive endpoints used for path resolution and upload negotiation."""

    async def list_directory(self, fid: str) -> List[Dict[str, Any]]:
        """Return all child entries of a folder."""
        ...

    async def create_folder(self, parent_fid: str, name: str) -> str:
        """Create a folder and return its fid."""
        ...

    async def pre_upload(self, file_name: str, size: int, mime_type: str, parent_fid: str) -> Any:
        """Negotiate a new upload."""
        ...

    async def update_hash(self, task_id: str, md5: str, sha1: str) -> bool:
        """Submit full-file digests; True means the content is already stored."""
        ...

    async def upload_auth(self, auth_info: Any, auth_meta: str, task_id: str) -> str:
        """Sign an object-store request."""
        ...

    async def finish(self, obj_key: str, task_id: str) -> Dict[str, Any]:
        """Register the uploaded object in the user's tree."""
        ...


@runtime_checkable
class IObjectStore(Protocol):
    """Bucket operations of a multipart upload."""

    async def put_part(
        self,
        target: Any,
        part_number: int,
        data: bytes,
        mime_type: str,
        signer: Callable[[str], Awaitable[str]],
        hash_ctx: Optional[str] = None,
    ) -> str:
        """Upload one part and return its ETag."""
        ...

    async def complete(
        self,
        target: Any,
        etags: Sequence[str],
        callback: Any,
        signer: Callable[[str], Awaitable[str]],
    ) -> None:
        """Compose the parts into the final object."""
        ...
