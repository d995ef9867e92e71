"""HTTP adapter for the drive's JSON API."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from ..config import ACCOUNT_BASE_URL, DRIVE_BASE_URL
from ..exceptions import APIConnectionError, APIError, AuthenticationError
from .credentials import Credential, CredentialPool

logger = logging.getLogger(__name__)

ACCOUNT_INFO = "/account/info"
FILE_SORT = "/1/clouddrive/file/sort"
CREATE_FOLDER = "/1/clouddrive/file"
FILE_UPLOAD_PRE = "/1/clouddrive/file/upload/pre"
FILE_UPDATE_HASH = "/1/clouddrive/file/update/hash"
FILE_UPLOAD_AUTH = "/1/clouddrive/file/upload/auth"
FILE_UPLOAD_FINISH = "/1/clouddrive/file/upload/finish"

BASE_PARAMS = {"pr": "ucpro", "fr": "pc"}
DEFAULT_PAGE_SIZE = 50
DEFAULT_PART_SIZE = 4 * 1024 * 1024

BROWSER_HEADERS = {
    "Accept": "application/json, text/plain, */*",
    "Accept-Language": "zh-CN,zh;q=0.9",
    "Cache-Control": "no-cache",
    "Origin": "https://pan.quark.cn",
    "Referer": "https://pan.quark.cn/list",
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/142.0.0.0 Safari/537.36"
    ),
}


@dataclass(frozen=True)
class PreUploadTicket:
    """What the drive hands back when an upload is negotiated."""
    task_id: str
    bucket: str
    obj_key: str
    upload_id: str
    upload_url: str
    part_size: int
    auth_info: Any = None
    callback: Any = None


class DriveAPIClient:
    """
    Client for the drive's JSON endpoints.

    Every call first passes the credential pool's liveness gate. A 401 on a
    call fails over to the next credential and retries that call once;
    nothing else is retried here.
    """

    def __init__(
        self,
        pool: CredentialPool,
        base_url: str = DRIVE_BASE_URL,
        account_url: str = ACCOUNT_BASE_URL,
        timeout: float = 30.0,
        page_size: int = DEFAULT_PAGE_SIZE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._pool = pool
        self._base_url = base_url.rstrip("/")
        self._account_url = account_url.rstrip("/")
        self._timeout = timeout
        self._page_size = page_size
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def pool(self) -> CredentialPool:
        return self._pool

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=self._timeout,
            headers=BROWSER_HEADERS,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _require_client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("DriveAPIClient not initialized. Use 'async with' context.")
        return self._client

    async def check_identity(self, credential: Credential) -> bool:
        """
        Ask the account service whether ``credential`` is logged in.

        Transport failures propagate as APIConnectionError; they say nothing
        about the credential itself.
        """
        client = self._require_client()
        try:
            response = await client.get(
                self._account_url + ACCOUNT_INFO,
                params={"fr": "pc", "platform": "pc"},
                headers={"Cookie": credential.cookie_header()},
            )
        except httpx.HTTPError as exc:
            raise APIConnectionError(f"identity check failed: {exc}", endpoint=ACCOUNT_INFO) from exc

        if response.status_code in (401, 403):
            return False
        try:
            body = response.json()
        except ValueError:
            logger.debug("Identity check returned non-JSON body (status %d)", response.status_code)
            return False

        return bool(body.get("success")) and body.get("code") == "OK" and bool(body.get("data"))

    async def _send(
        self,
        method: str,
        endpoint: str,
        credential: Credential,
        json: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> httpx.Response:
        client = self._require_client()
        query = dict(BASE_PARAMS)
        if params:
            query.update(params)

        logger.debug("%s %s params=%s body=%s", method, endpoint, params, json)
        try:
            return await client.request(
                method,
                self._base_url + endpoint,
                params=query,
                json=json,
                headers={"Cookie": credential.cookie_header()},
            )
        except httpx.HTTPError as exc:
            raise APIConnectionError(f"{method} {endpoint} failed: {exc}", endpoint=endpoint) from exc

    async def request(
        self,
        method: str,
        endpoint: str,
        json: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        """Send an authenticated request and return the decoded success envelope."""
        credential = await self._pool.ensure_valid(self.check_identity)
        response = await self._send(method, endpoint, credential, json=json, params=params)

        if response.status_code == 401:
            logger.warning("%s %s rejected credential #%d", method, endpoint, credential.index)
            credential = self._pool.failover(credential)
            response = await self._send(method, endpoint, credential, json=json, params=params)

        return self._unwrap(method, endpoint, response)

    @staticmethod
    def _unwrap(method: str, endpoint: str, response: httpx.Response) -> Dict[str, Any]:
        if response.status_code >= 400:
            try:
                error_detail = response.json()
            except ValueError:
                error_detail = response.text
            exc_type = AuthenticationError if response.status_code in (401, 403) else APIError
            raise exc_type(
                f"API error {response.status_code} on {method} {endpoint}: {error_detail}",
                endpoint=endpoint,
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise APIError(
                f"invalid JSON from {method} {endpoint}: {response.text[:200]}",
                endpoint=endpoint,
                status_code=response.status_code,
            ) from exc

        logger.debug("%s %s -> %s", method, endpoint, body)
        code = body.get("code")
        status = body.get("status")
        if code != 0 or status != 200:
            raise APIError(
                f"{endpoint} failed: code={code}, status={status}, message={body.get('message')}",
                endpoint=endpoint,
                status_code=status if isinstance(status, int) else response.status_code,
                code=code if isinstance(code, int) else None,
            )
        return body

    async def list_directory(self, fid: str) -> List[Dict[str, Any]]:
        """Return every child entry of a folder, following pagination."""
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            body = await self.request(
                "GET",
                FILE_SORT,
                params={
                    "pdir_fid": fid,
                    "_page": page,
                    "_size": self._page_size,
                    "_fetch_total": 1,
                    "_fetch_sub_dirs": 0,
                    "_sort": "file_type:asc,updated_at:desc",
                    "fetch_all_file": 1,
                    "fetch_risk_file_name": 1,
                },
            )
            data = body.get("data") or {}
            batch = data.get("list") or []
            items.extend(batch)

            total = (body.get("metadata") or {}).get("_total", data.get("total"))
            if len(batch) < self._page_size:
                break
            if total is not None and len(items) >= int(total):
                break
            page += 1

        logger.debug("Listed %d entries under fid=%s (%d pages)", len(items), fid, page)
        return items

    async def create_folder(self, parent_fid: str, name: str) -> str:
        body = await self.request(
            "POST",
            CREATE_FOLDER,
            json={
                "pdir_fid": parent_fid,
                "file_name": name,
                "dir_path": "",
                "dir_init_lock": False,
            },
        )
        fid = (body.get("data") or {}).get("fid")
        if not fid:
            raise APIError(f"create folder {name!r} returned no fid", endpoint=CREATE_FOLDER)
        logger.info("Created folder %r under fid=%s -> %s", name, parent_fid, fid)
        return str(fid)

    async def pre_upload(self, file_name: str, size: int, mime_type: str, parent_fid: str) -> PreUploadTicket:
        now_ms = int(time.time() * 1000)
        body = await self.request(
            "POST",
            FILE_UPLOAD_PRE,
            json={
                "ccp_hash_update": True,
                "dir_name": "",
                "file_name": file_name,
                "format_type": mime_type,
                "l_created_at": now_ms,
                "l_updated_at": now_ms,
                "pdir_fid": parent_fid,
                "size": size,
            },
        )
        data = body.get("data") or {}
        metadata = body.get("metadata") or {}
        try:
            return PreUploadTicket(
                task_id=str(data["task_id"]),
                bucket=str(data["bucket"]),
                obj_key=str(data["obj_key"]),
                upload_id=str(data["upload_id"]),
                upload_url=str(data["upload_url"]),
                part_size=int(metadata.get("part_size") or DEFAULT_PART_SIZE),
                auth_info=data.get("auth_info"),
                callback=data.get("callback"),
            )
        except KeyError as exc:
            raise APIError(f"pre-upload response missing {exc}", endpoint=FILE_UPLOAD_PRE) from exc

    async def update_hash(self, task_id: str, md5: str, sha1: str) -> bool:
        """Submit full-file digests. Returns True when the drive already has the content."""
        body = await self.request(
            "POST",
            FILE_UPDATE_HASH,
            json={"md5": md5, "sha1": sha1, "task_id": task_id},
        )
        return bool((body.get("data") or {}).get("finish"))

    async def upload_auth(self, auth_info: Any, auth_meta: str, task_id: str) -> str:
        """Have the drive sign an object-store request; returns the Authorization value."""
        body = await self.request(
            "POST",
            FILE_UPLOAD_AUTH,
            json={"auth_info": auth_info, "auth_meta": auth_meta, "task_id": task_id},
        )
        auth_key = (body.get("data") or {}).get("auth_key")
        if not auth_key:
            raise APIError("upload auth returned no auth_key", endpoint=FILE_UPLOAD_AUTH)
        return str(auth_key)

    async def finish(self, obj_key: str, task_id: str) -> Dict[str, Any]:
        body = await self.request(
            "POST",
            FILE_UPLOAD_FINISH,
            json={"obj_key": obj_key, "task_id": task_id},
        )
        data = dict(body.get("data") or {})
        data.pop("preview_url", None)
        return data
