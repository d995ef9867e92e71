"""Core orchestrator - wires the services and runs uploads."""
import logging
from pathlib import Path
from typing import Optional

import httpx

from ..config import UploaderConfig
from ..models import RemoteNode, UploadResult
from ..protocols import ProgressCallback
from ..services.api_client import DriveAPIClient
from ..services.credentials import CredentialPool
from ..services.object_store import ObjectStoreClient
from ..services.resolver import PathResolver
from ..services.resume import ResumeStore

from .single_upload import SingleUploadHandler

logger = logging.getLogger(__name__)


class UploadOrchestrator:
    """
    Uploads local files into the drive, resuming interrupted uploads.

    Usage:
        config = load_config()
        async with UploadOrchestrator(config) as uploader:
            result = await uploader.upload("movie.mkv", "/Videos/2026/")
            if not result.success and result.recoverable:
                ...  # call upload() again with the same arguments to resume

    Independent uploads may run concurrently on one orchestrator. Two
    concurrent uploads of the same (file, destination) pair share a resume
    record and must be serialized by the caller.
    """

    def __init__(
        self,
        config: UploaderConfig,
        pool: Optional[CredentialPool] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            config: Uploader configuration
            pool: Pre-built credential pool (default: built from config.access_tokens)
            transport: httpx transport shared by both HTTP clients (tests use MockTransport)
        """
        self._config = config
        self._pool = pool
        self._transport = transport

        # Services (initialized in __aenter__)
        self._api_client: Optional[DriveAPIClient] = None
        self._object_store: Optional[ObjectStoreClient] = None
        self._resolver: Optional[PathResolver] = None
        self._store: Optional[ResumeStore] = None

        self._single_handler: Optional[SingleUploadHandler] = None

    async def __aenter__(self):
        """Initialize services and handlers."""
        if self._pool is None:
            self._pool = CredentialPool(
                self._config.access_tokens,
                check_ttl=self._config.auth_check_ttl,
            )

        self._api_client = DriveAPIClient(
            self._pool,
            base_url=self._config.drive_base_url,
            account_url=self._config.account_base_url,
            timeout=self._config.api_timeout,
            page_size=self._config.page_size,
            transport=self._transport,
        )
        await self._api_client.__aenter__()

        self._object_store = ObjectStoreClient(
            part_timeout=self._config.part_timeout,
            commit_timeout=self._config.commit_timeout,
            transport=self._transport,
        )
        await self._object_store.__aenter__()

        self._resolver = PathResolver(self._api_client)
        self._store = ResumeStore(self._config.state_dir)
        if self._config.session_retention_days:
            self._store.cleanup_stale(self._config.session_retention_days)

        self._single_handler = SingleUploadHandler(
            self._api_client,
            self._object_store,
            self._resolver,
            self._store,
        )
        return self

    async def __aexit__(self, *args):
        """Cleanup resources."""
        if self._object_store:
            await self._object_store.__aexit__(*args)
        if self._api_client:
            await self._api_client.__aexit__(*args)

    @property
    def resolver(self) -> PathResolver:
        assert self._resolver is not None
        return self._resolver

    @property
    def resume_store(self) -> ResumeStore:
        assert self._store is not None
        return self._store

    async def upload(
        self,
        local_path: Path,
        dest_path: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        """Upload one file. ``dest_path`` ending in ``/`` (or empty) names a folder."""
        assert self._single_handler is not None
        return await self._single_handler.upload(local_path, dest_path, progress_callback)

    async def resolve(self, path: str) -> RemoteNode:
        """Resolve a remote path to its node."""
        return await self.resolver.resolve(path)
