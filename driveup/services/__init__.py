"""Services - the building blocks the orchestrator wires together."""
from .api_client import DriveAPIClient, PreUploadTicket
from .credentials import Credential, CredentialPool, parse_cookie
from .hash_context import (
    HashState,
    OpenSSLSha1Accumulator,
    Sha1Accumulator,
    capture,
    decode_hash_ctx,
    encode_hash_ctx,
    new_accumulator,
    restore,
)
from .object_store import ObjectStoreClient, ObjectTarget
from .resolver import PathResolver, normalize_path, normalize_root_dir
from .resume import ResumeStore, UploadSession, session_key

__all__ = [
    "DriveAPIClient",
    "PreUploadTicket",
    "Credential",
    "CredentialPool",
    "parse_cookie",
    "HashState",
    "Sha1Accumulator",
    "OpenSSLSha1Accumulator",
    "new_accumulator",
    "capture",
    "restore",
    "encode_hash_ctx",
    "decode_hash_ctx",
    "ObjectStoreClient",
    "ObjectTarget",
    "PathResolver",
    "normalize_path",
    "normalize_root_dir",
    "ResumeStore",
    "UploadSession",
    "session_key",
]
