"""
Single file upload handler.

Drives one upload through the drive's protocol:

    Negotiating -> HashChecking -> (InstantComplete | Transferring)
                -> Committing -> Finalizing -> Done

The resume record is written right after negotiation and after every
accepted part, so re-running the same upload continues at the first part
the object store has not acknowledged.
"""
import asyncio
import hashlib
import logging
import mimetypes
import os
from pathlib import Path
from typing import Optional, Tuple

from ..exceptions import (
    AllCredentialsExhausted,
    APIConnectionError,
    AuthenticationError,
    PathResolutionError,
    RemoteNotFoundError,
    UploadError,
)
from ..models import FailureCategory, UploadFailure, UploadOk, UploadResult
from ..protocols import IDriveAPI, IObjectStore, ProgressCallback
from ..services.hash_context import capture, encode_hash_ctx, new_accumulator, restore
from ..services.object_store import ObjectTarget
from ..services.resolver import PathResolver, normalize_path, split_parent
from ..services.resume import ResumeStore, UploadSession
from .progress import ProgressTracker

logger = logging.getLogger(__name__)

READ_SIZE = 1024 * 1024
DEFAULT_MIME_TYPE = "application/octet-stream"


class UploadAborted(Exception):
    """Internal: carries the failure that ends the current upload."""

    def __init__(self, failure: UploadFailure):
        super().__init__(failure.message)
        self.failure = failure


def _describe_exception(exc: BaseException) -> str:
    message = str(exc).strip()
    if message:
        return f"{type(exc).__name__}: {message}"
    return type(exc).__name__


def _failure(code: str, message: str, exc: BaseException, recoverable: bool = False) -> UploadFailure:
    if isinstance(exc, AuthenticationError):
        return UploadFailure(
            code="AUTH_ERROR",
            message=f"{message}: {exc}",
            category=FailureCategory.AUTH,
            recoverable=recoverable and not isinstance(exc, AllCredentialsExhausted),
        )
    if isinstance(exc, APIConnectionError):
        category = FailureCategory.TRANSPORT
    elif isinstance(exc, OSError):
        category = FailureCategory.LOCAL_IO
    else:
        category = FailureCategory.PROTOCOL
    return UploadFailure(code, f"{message}: {exc}", category, recoverable)


def remote_file_path(local_name: str, dest_path: Optional[str]) -> str:
    """
    Full remote path of the uploaded file.

    An empty or root destination, or one ending in a slash, names a folder
    and the local file name is appended.
    """
    raw = (dest_path or "").strip()
    if not raw or raw.endswith(("/", "\\")) or normalize_path(raw) == "/":
        return normalize_path(f"{raw}/{local_name}")
    return normalize_path(raw)


def guess_mime_type(file_name: str) -> str:
    mime_type, _ = mimetypes.guess_type(file_name)
    return mime_type or DEFAULT_MIME_TYPE


def file_digests(path: Path, read_size: int = READ_SIZE) -> Tuple[str, str]:
    """MD5 and SHA-1 hex digests of a whole file."""
    md5 = hashlib.md5()
    sha1 = hashlib.sha1()
    with open(path, "rb") as f:
        while True:
            chunk = f.read(read_size)
            if not chunk:
                break
            md5.update(chunk)
            sha1.update(chunk)
    return md5.hexdigest(), sha1.hexdigest()


def hash_prefix(path: Path, length: int, read_size: int = READ_SIZE):
    """SHA-1 accumulator over the first ``length`` bytes of a file."""
    accumulator = new_accumulator()
    remaining = length
    with open(path, "rb") as f:
        while remaining > 0:
            chunk = f.read(min(read_size, remaining))
            if not chunk:
                raise OSError(f"{path} is shorter than the {length} bytes already uploaded")
            accumulator.update(chunk)
            remaining -= len(chunk)
    return accumulator


class SingleUploadHandler:
    """Uploads one local file, resuming from the resume store when possible."""

    def __init__(
        self,
        api: IDriveAPI,
        object_store: IObjectStore,
        resolver: PathResolver,
        store: ResumeStore,
        read_size: int = READ_SIZE,
    ):
        """
        Initialize single upload handler.

        Args:
            api: Drive API client (negotiation, signing, finish)
            object_store: Bucket client for part PUTs and the commit
            resolver: PathResolver used to materialize the parent folder
            store: ResumeStore holding in-flight sessions
            read_size: Buffer size for whole-file hashing
        """
        self._api = api
        self._object_store = object_store
        self._resolver = resolver
        self._store = store
        self._read_size = read_size

    async def upload(
        self,
        local_path: Path,
        dest_path: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        """Upload a file. Never raises for expected failures; see ``UploadFailure``."""
        local_path = Path(local_path)
        try:
            return await self._upload(local_path, dest_path, progress_callback)
        except UploadAborted as aborted:
            failure = aborted.failure
            logger.error("Upload of %s failed [%s]: %s", local_path.name, failure.code, failure.message)
            return failure
        except Exception as e:
            logger.error(
                "Unexpected error uploading %s: %s",
                local_path, _describe_exception(e), exc_info=True
            )
            return UploadFailure("UNEXPECTED_ERROR", _describe_exception(e), FailureCategory.PROTOCOL)

    async def _upload(
        self,
        local_path: Path,
        dest_path: Optional[str],
        progress_callback: Optional[ProgressCallback],
    ) -> UploadResult:
        # 1. Negotiating
        try:
            stat = local_path.stat()
        except OSError as e:
            raise UploadAborted(_failure("FILE_INFO_ERROR", f"cannot stat {local_path}", e))
        if not local_path.is_file():
            raise UploadAborted(UploadFailure(
                "FILE_INFO_ERROR", f"not a regular file: {local_path}", FailureCategory.LOCAL_IO
            ))

        file_size = stat.st_size
        local_key = os.path.abspath(local_path)
        remote_path = remote_file_path(local_path.name, dest_path)
        parent_path, file_name = split_parent(remote_path)
        mime_type = guess_mime_type(file_name)

        parent_fid = await self._ensure_parent(parent_path)

        session = self._store.load_matching(local_key, remote_path, file_size)
        resumed = session is not None
        if session is None:
            session = await self._negotiate(local_key, remote_path, file_name, file_size, mime_type, parent_fid)

        # 2. HashChecking
        try:
            md5, sha1 = await asyncio.to_thread(file_digests, local_path, self._read_size)
        except OSError as e:
            raise UploadAborted(_failure("CALCULATE_HASH_ERROR", "failed to hash file", e))

        try:
            instant = await self._api.update_hash(session.task_id, md5, sha1)
        except UploadError as e:
            if not resumed or isinstance(e, (AuthenticationError, APIConnectionError)):
                raise UploadAborted(_failure("HASH_VERIFICATION_ERROR", "hash verification failed", e))
            logger.warning(
                "Resumed task %s rejected (%s), negotiating a new upload", session.task_id, e
            )
            self._store.delete(session.key)
            session = await self._negotiate(local_key, remote_path, file_name, file_size, mime_type, parent_fid)
            try:
                instant = await self._api.update_hash(session.task_id, md5, sha1)
            except UploadError as retry_error:
                raise UploadAborted(_failure("HASH_VERIFICATION_ERROR", "hash verification failed", retry_error))

        start_bytes = 0 if instant else session.part_offset(session.next_part())
        tracker = ProgressTracker(file_size, progress_callback, initial_bytes=start_bytes)

        # 3. InstantComplete
        if instant:
            logger.info("Instant upload: %s already stored remotely", file_name)
            return await self._finalize(session, tracker, instant=True)

        # 4. Transferring
        await self._transfer(local_path, session, tracker)

        # 5. Committing
        await self._commit(session)

        # 6. Finalizing
        return await self._finalize(session, tracker, instant=False)

    async def _ensure_parent(self, parent_path: str) -> str:
        try:
            return await self._resolver.ensure_directory(parent_path)
        except (PathResolutionError, RemoteNotFoundError) as e:
            raise UploadAborted(UploadFailure(
                "PATH_ERROR", f"invalid destination {parent_path}: {e}", FailureCategory.PATH
            ))
        except UploadError as e:
            raise UploadAborted(_failure("CREATE_DIRECTORY_ERROR", f"cannot create {parent_path}", e))

    async def _negotiate(
        self,
        local_key: str,
        remote_path: str,
        file_name: str,
        file_size: int,
        mime_type: str,
        parent_fid: str,
    ) -> UploadSession:
        try:
            ticket = await self._api.pre_upload(file_name, file_size, mime_type, parent_fid)
        except UploadError as e:
            raise UploadAborted(_failure("PRE_UPLOAD_ERROR", "pre-upload failed", e))

        session = UploadSession(
            local_path=local_key,
            dest_path=remote_path,
            file_size=file_size,
            task_id=ticket.task_id,
            bucket=ticket.bucket,
            obj_key=ticket.obj_key,
            upload_id=ticket.upload_id,
            upload_url=ticket.upload_url,
            part_size=ticket.part_size,
            mime_type=mime_type,
            auth_info=ticket.auth_info,
            callback=ticket.callback,
        )
        self._persist(session)
        logger.info(
            "Negotiated upload of %s (%d bytes, %d parts, task %s)",
            remote_path, file_size, session.total_parts, session.task_id
        )
        return session

    def _persist(self, session: UploadSession) -> bool:
        try:
            self._store.save(session)
        except OSError as e:
            logger.error("Failed to save upload state for %s: %s", session.local_path, e)
            return False
        return True

    def _abort_transfer(self, session: UploadSession, code: str, message: str, exc: BaseException) -> UploadAborted:
        saved = self._persist(session)
        if not saved:
            message = f"{message} (resume state could not be saved, the next run starts over)"
        return UploadAborted(_failure(code, message, exc, recoverable=saved))

    def _signer(self, session: UploadSession):
        async def sign(auth_meta: str) -> str:
            return await self._api.upload_auth(session.auth_info, auth_meta, session.task_id)
        return sign

    @staticmethod
    def _target(session: UploadSession) -> ObjectTarget:
        return ObjectTarget(session.bucket, session.obj_key, session.upload_id, session.upload_url)

    async def _restore_accumulator(self, local_path: Path, session: UploadSession, offset: int):
        state = session.hash_state
        if state is not None and state.byte_count == offset:
            try:
                return restore(state)
            except ValueError as e:
                logger.warning("Discarding unusable hash state for %s: %s", session.local_path, e)
        if offset == 0:
            return new_accumulator()
        logger.info("Re-hashing %d already uploaded bytes of %s", offset, local_path.name)
        return await asyncio.to_thread(hash_prefix, local_path, offset, self._read_size)

    async def _transfer(self, local_path: Path, session: UploadSession, tracker: ProgressTracker) -> None:
        start = session.next_part()
        total_parts = session.total_parts
        offset = session.part_offset(start)
        target = self._target(session)
        sign = self._signer(session)

        if start > 1:
            logger.info("Resuming %s at part %d/%d", local_path.name, start, total_parts)

        try:
            accumulator = await self._restore_accumulator(local_path, session, offset)
            f = open(local_path, "rb")
        except OSError as e:
            raise self._abort_transfer(session, "READ_FILE_ERROR", "failed to read file", e)

        with f:
            f.seek(offset)
            for part_number in range(start, total_parts + 1):
                expected = min(session.part_size, session.file_size - offset)
                try:
                    data = await asyncio.to_thread(f.read, expected)
                    if len(data) != expected:
                        raise OSError(f"{local_path} changed while uploading (short read at {offset})")
                except OSError as e:
                    raise self._abort_transfer(session, "READ_FILE_ERROR", "failed to read file", e)

                hash_ctx = encode_hash_ctx(capture(accumulator, offset)) if part_number > 1 else None
                try:
                    etag = await self._object_store.put_part(
                        target, part_number, data, session.mime_type, sign, hash_ctx
                    )
                except UploadError as e:
                    raise self._abort_transfer(
                        session, "UPLOAD_PART_ERROR", f"part {part_number}/{total_parts} failed", e
                    )

                await asyncio.to_thread(accumulator.update, data)
                offset += len(data)
                session.uploaded_parts[part_number] = etag
                session.hash_state = capture(accumulator, offset)
                self._persist(session)

                logger.debug("Part %d/%d done (%d/%d bytes)", part_number, total_parts, offset, session.file_size)
                await tracker.report(offset)

    async def _commit(self, session: UploadSession) -> None:
        etags = [session.uploaded_parts[n] for n in range(1, session.total_parts + 1)]
        try:
            await self._object_store.complete(self._target(session), etags, session.callback, self._signer(session))
        except UploadError as e:
            raise UploadAborted(_failure("COMMIT_UPLOAD_ERROR", "commit failed", e))

    async def _finalize(self, session: UploadSession, tracker: ProgressTracker, instant: bool) -> UploadOk:
        try:
            data = await self._api.finish(session.obj_key, session.task_id)
        except UploadError as e:
            raise UploadAborted(_failure("FINISH_UPLOAD_ERROR", "finish failed", e))

        self._store.delete(session.key)
        await tracker.complete(instant=instant)

        message = "instant upload completed" if instant else "upload completed"
        logger.info("%s: %s", message, session.dest_path)
        return UploadOk(data=data, message=message, instant=instant)
