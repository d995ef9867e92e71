"""
Object-store side of a multipart upload.

Part PUTs and the final multipart-complete POST go straight to the
storage bucket. Both are signed by the drive's auth endpoint: the client
builds the canonical string, the drive returns the Authorization value.
"""
from __future__ import annotations

import base64
import hashlib
import json
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from email.utils import formatdate
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Union

import httpx

from ..exceptions import APIConnectionError, PartUploadError

logger = logging.getLogger(__name__)

OSS_USER_AGENT = "aliyun-sdk-js/6.6.1 Chrome 98.0.4758.80 on Windows 10 64-bit"
HASH_CTX_HEADER = "X-Oss-Hash-Ctx"

Signer = Callable[[str], Awaitable[str]]


@dataclass(frozen=True)
class ObjectTarget:
    """Where a multipart upload lives in the bucket."""
    bucket: str
    obj_key: str
    upload_id: str
    upload_url: str

    @property
    def url(self) -> str:
        host = self.upload_url
        for scheme in ("https://", "http://"):
            if host.startswith(scheme):
                host = host[len(scheme):]
                break
        return f"https://{self.bucket}.{host.rstrip('/')}/{self.obj_key}"


@dataclass(frozen=True)
class PartUploadHeaders:
    authorization: str
    mime_type: str
    date: str
    hash_ctx: Optional[str] = None


@dataclass(frozen=True)
class CommitHeaders:
    authorization: str
    content_md5: str
    callback: str
    date: str


RequestHeaders = Union[PartUploadHeaders, CommitHeaders]


def build_headers(request: RequestHeaders) -> Dict[str, str]:
    """Assemble the HTTP headers for either kind of object-store request."""
    if isinstance(request, PartUploadHeaders):
        headers = {
            "Authorization": request.authorization,
            "Content-Type": request.mime_type,
            "x-oss-date": request.date,
            "x-oss-user-agent": OSS_USER_AGENT,
        }
        if request.hash_ctx:
            headers[HASH_CTX_HEADER] = request.hash_ctx
        return headers

    if isinstance(request, CommitHeaders):
        return {
            "Authorization": request.authorization,
            "Content-MD5": request.content_md5,
            "Content-Type": "application/xml",
            "Referer": "https://pan.quark.cn/",
            "x-oss-callback": request.callback,
            "x-oss-date": request.date,
            "x-oss-user-agent": OSS_USER_AGENT,
        }

    raise TypeError(f"unsupported header request: {type(request).__name__}")


def _canonical_oss_headers(headers: Dict[str, str]) -> str:
    return "".join(f"{name}:{value}\n" for name, value in sorted(headers.items()))


def part_auth_meta(
    target: ObjectTarget,
    part_number: int,
    mime_type: str,
    date: str,
    hash_ctx: Optional[str] = None,
) -> str:
    """Canonical string the drive signs for a part PUT."""
    oss_headers = {"x-oss-date": date, "x-oss-user-agent": OSS_USER_AGENT}
    if hash_ctx:
        oss_headers["x-oss-hash-ctx"] = hash_ctx
    return (
        f"PUT\n\n{mime_type}\n{date}\n"
        f"{_canonical_oss_headers(oss_headers)}"
        f"/{target.bucket}/{target.obj_key}?partNumber={part_number}&uploadId={target.upload_id}"
    )


def commit_auth_meta(target: ObjectTarget, content_md5: str, callback: str, date: str) -> str:
    """Canonical string the drive signs for the multipart-complete POST."""
    oss_headers = {
        "x-oss-callback": callback,
        "x-oss-date": date,
        "x-oss-user-agent": OSS_USER_AGENT,
    }
    return (
        f"POST\n{content_md5}\napplication/xml\n{date}\n"
        f"{_canonical_oss_headers(oss_headers)}"
        f"/{target.bucket}/{target.obj_key}?uploadId={target.upload_id}"
    )


def complete_body(etags: Sequence[str]) -> str:
    parts = "".join(
        f"<Part><PartNumber>{number}</PartNumber><ETag>{etag}</ETag></Part>"
        for number, etag in enumerate(etags, start=1)
    )
    return f"<CompleteMultipartUpload>{parts}</CompleteMultipartUpload>"


def encode_callback(callback: Any) -> str:
    """Base64 of the pre-upload callback, as the ``x-oss-callback`` header wants it."""
    if callback is None:
        return ""
    if isinstance(callback, str):
        raw = callback
    else:
        raw = json.dumps(callback, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def _existing_part_etag(body: str) -> Optional[str]:
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return None
    etag = root.findtext("PartEtag")
    if not etag:
        return None
    return etag.strip().strip('"')


def _http_date() -> str:
    return formatdate(usegmt=True)


class ObjectStoreClient:
    """httpx client for bucket requests, with per-request timeouts."""

    def __init__(
        self,
        part_timeout: float = 30 * 60.0,
        commit_timeout: float = 5 * 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], str] = _http_date,
    ):
        self._part_timeout = part_timeout
        self._commit_timeout = commit_timeout
        self._transport = transport
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(transport=self._transport)
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _require_client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("ObjectStoreClient not initialized. Use 'async with' context.")
        return self._client

    async def put_part(
        self,
        target: ObjectTarget,
        part_number: int,
        data: bytes,
        mime_type: str,
        signer: Signer,
        hash_ctx: Optional[str] = None,
    ) -> str:
        """
        Upload one part and return its ETag.

        A 409 ``PartAlreadyExist`` reply that names the stored ETag counts as
        success, so re-sending a part after an ambiguous failure is safe.

        Raises:
            APIConnectionError: if the request never got a response
            PartUploadError: if the store rejected the part
        """
        client = self._require_client()
        date = self._clock()
        authorization = await signer(part_auth_meta(target, part_number, mime_type, date, hash_ctx))
        headers = build_headers(PartUploadHeaders(authorization, mime_type, date, hash_ctx))

        try:
            response = await client.put(
                target.url,
                params={"partNumber": str(part_number), "uploadId": target.upload_id},
                content=data,
                headers=headers,
                timeout=self._part_timeout,
            )
        except httpx.HTTPError as exc:
            raise APIConnectionError(f"part {part_number} upload failed: {exc}", endpoint=target.url) from exc

        if response.status_code >= 400:
            body = response.text
            if response.status_code == 409 and "PartAlreadyExist" in body:
                etag = _existing_part_etag(body)
                if etag:
                    logger.info("Part %d already stored, reusing ETag %s", part_number, etag)
                    return etag
            raise PartUploadError(
                f"upload part {part_number} failed with status {response.status_code}: {body[:500]}",
                part_number=part_number,
                status_code=response.status_code,
            )

        etag = response.headers.get("ETag")
        if not etag:
            raise PartUploadError(
                f"no ETag in response for part {part_number}",
                part_number=part_number,
                status_code=response.status_code,
            )
        logger.debug("Part %d stored (%d bytes, ETag %s)", part_number, len(data), etag)
        return etag

    async def complete(
        self,
        target: ObjectTarget,
        etags: Sequence[str],
        callback: Any,
        signer: Signer,
    ) -> None:
        """Compose the uploaded parts into the final object."""
        client = self._require_client()
        body = complete_body(etags).encode("utf-8")
        content_md5 = base64.b64encode(hashlib.md5(body).digest()).decode("ascii")
        callback_b64 = encode_callback(callback)
        date = self._clock()

        authorization = await signer(commit_auth_meta(target, content_md5, callback_b64, date))
        headers = build_headers(CommitHeaders(authorization, content_md5, callback_b64, date))

        try:
            response = await client.post(
                target.url,
                params={"uploadId": target.upload_id},
                content=body,
                headers=headers,
                timeout=self._commit_timeout,
            )
        except httpx.HTTPError as exc:
            raise APIConnectionError(f"commit failed: {exc}", endpoint=target.url) from exc

        if response.status_code != 200:
            raise PartUploadError(
                f"commit upload failed with status {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )
        logger.debug("Committed %d parts for %s", len(etags), target.obj_key)
