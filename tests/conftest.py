"""Shared fixtures: an in-memory drive + object store behind httpx.MockTransport."""
import base64
import hashlib
import json
import random
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional

import httpx
import pytest

from driveup.config import UploaderConfig
from driveup.services.credentials import CredentialPool
from driveup.services.hash_context import decode_hash_ctx, restore

DRIVE_HOST = "drive-pc.quark.cn"
ACCOUNT_HOST = "pan.quark.cn"
OSS_HOST = "oss.example.com"


def _ok(data=None, metadata=None) -> httpx.Response:
    body = {"status": 200, "code": 0, "message": "ok", "data": data if data is not None else {}}
    if metadata is not None:
        body["metadata"] = metadata
    return httpx.Response(200, json=body)


def _error(http_status: int, code: int, message: str) -> httpx.Response:
    return httpx.Response(http_status, json={"status": http_status, "code": code, "message": message})


def _sign(auth_meta: str) -> str:
    return "OSS fake:" + hashlib.sha1(auth_meta.encode("utf-8")).hexdigest()


class FakeDrive:
    """
    Minimal drive: folder tree, upload tasks and a multipart object store.

    The object store checks every signature against the canonical string
    it rebuilds from the request, and checks each X-Oss-Hash-Ctx header
    against hashlib over the parts it already holds.
    """

    def __init__(self, part_size: int = 4, valid_cookies: Optional[set] = None):
        self.part_size = part_size
        self.valid_cookies = valid_cookies
        self.folders: Dict[str, List[dict]] = {"0": []}
        self.tasks: Dict[str, dict] = {}
        self.known_sha1: set = set()
        self.rejected_tasks: set = set()
        self.fail_parts: Dict[int, str] = {}
        self.conflict_on_existing = False
        self.reject_next_drive_call_with_401 = False

        self.requests: List[tuple] = []
        self.listings: List[tuple] = []
        self.created_folders: List[tuple] = []
        self.puts: List[int] = []
        self.hash_ctx_checked = 0
        self.identity_checks: List[str] = []
        self.commits = 0
        self.finished: List[str] = []
        self._next_id = 1

    # tree helpers

    def _new_id(self, prefix: str) -> str:
        value = f"{prefix}{self._next_id}"
        self._next_id += 1
        return value

    def add_folder(self, parent: str, name: str) -> str:
        fid = self._new_id("dir")
        self.folders[fid] = []
        self.folders[parent].append({
            "fid": fid, "file_name": name, "dir": True, "size": 0,
            "l_created_at": 1700000000000, "l_updated_at": 1700000000000,
        })
        return fid

    def add_file(self, parent: str, name: str, size: int = 0) -> str:
        fid = self._new_id("file")
        self.folders[parent].append({
            "fid": fid, "file_name": name, "file": True, "size": size,
            "created_at": 1700000000000, "updated_at": 1700000500000,
        })
        return fid

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    @property
    def only_task(self) -> dict:
        assert len(self.tasks) == 1, list(self.tasks)
        return next(iter(self.tasks.values()))

    # routing

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.host, request.url.path))
        host = request.url.host
        if host == ACCOUNT_HOST:
            return self._account(request)
        if host == DRIVE_HOST:
            return self._drive(request)
        if host.endswith("." + OSS_HOST):
            return self._oss(request)
        return httpx.Response(404)

    def _cookie_ok(self, request: httpx.Request) -> bool:
        return self.valid_cookies is None or request.headers.get("cookie") in self.valid_cookies

    def _account(self, request: httpx.Request) -> httpx.Response:
        self.identity_checks.append(request.headers.get("cookie"))
        if self._cookie_ok(request):
            return httpx.Response(200, json={"success": True, "code": "OK", "data": {"nickname": "tester"}})
        return httpx.Response(200, json={"success": False, "code": "AUTH_FAIL", "data": {}})

    def _drive(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        assert params.get("pr") == "ucpro" and params.get("fr") == "pc"
        if self.reject_next_drive_call_with_401:
            self.reject_next_drive_call_with_401 = False
            return _error(401, 31001, "require login")
        if not self._cookie_ok(request):
            return _error(401, 31001, "require login")

        path = request.url.path
        body = json.loads(request.content) if request.content else {}
        if path == "/1/clouddrive/file/sort":
            return self._list(params)
        if path == "/1/clouddrive/file" and request.method == "POST":
            return self._create_folder(body)
        if path == "/1/clouddrive/file/upload/pre":
            return self._pre(body)
        if path == "/1/clouddrive/file/update/hash":
            return self._update_hash(body)
        if path == "/1/clouddrive/file/upload/auth":
            return self._auth(body)
        if path == "/1/clouddrive/file/upload/finish":
            return self._finish(body)
        return _error(404, 404, f"no route {path}")

    def _list(self, params) -> httpx.Response:
        fid = params["pdir_fid"]
        page = int(params["_page"])
        size = int(params["_size"])
        self.listings.append((fid, page))
        if fid not in self.folders:
            return _error(404, 41004, "folder not found")
        items = self.folders[fid]
        chunk = items[(page - 1) * size: page * size]
        return _ok({"list": chunk}, {"_total": len(items), "_page": page, "_size": size})

    def _create_folder(self, body: dict) -> httpx.Response:
        parent = body["pdir_fid"]
        if parent not in self.folders:
            return _error(400, 41004, "parent not found")
        fid = self.add_folder(parent, body["file_name"])
        self.created_folders.append((parent, body["file_name"], fid))
        return _ok({"fid": fid, "finish": True})

    def _pre(self, body: dict) -> httpx.Response:
        n = len(self.tasks) + 1
        task_id = f"task-{n}"
        task = {
            "task_id": task_id,
            "bucket": "bucket",
            "obj_key": f"obj/{n}",
            "upload_id": f"up-{n}",
            "upload_url": f"https://{OSS_HOST}",
            "auth_info": f"auth-{n}",
            "callback": {"callbackUrl": "https://cb.example.com", "callbackBody": "bucket=${bucket}"},
            "file_name": body["file_name"],
            "size": body["size"],
            "mime": body["format_type"],
            "pdir_fid": body["pdir_fid"],
            "parts": {},
            "object": None,
            "instant": False,
        }
        self.tasks[task_id] = task
        data = {k: task[k] for k in ("task_id", "bucket", "obj_key", "upload_id", "upload_url", "auth_info", "callback")}
        return _ok(data, {"part_size": self.part_size})

    def _update_hash(self, body: dict) -> httpx.Response:
        task = self.tasks.get(body["task_id"])
        if task is None or body["task_id"] in self.rejected_tasks:
            return _error(400, 41018, "upload task expired")
        task["sha1"] = body["sha1"]
        task["md5"] = body["md5"]
        task["instant"] = body["sha1"] in self.known_sha1
        return _ok({"finish": task["instant"]})

    def _auth(self, body: dict) -> httpx.Response:
        task = self.tasks[body["task_id"]]
        assert body["auth_info"] == task["auth_info"]
        return _ok({"auth_key": _sign(body["auth_meta"])})

    def _finish(self, body: dict) -> httpx.Response:
        task = self.tasks[body["task_id"]]
        assert body["obj_key"] == task["obj_key"]
        if task["object"] is None and not task["instant"]:
            return _error(400, 41020, "object not committed")
        fid = self.add_file(task["pdir_fid"], task["file_name"], task["size"])
        self.finished.append(task["task_id"])
        return _ok({"fid": fid, "file_name": task["file_name"], "preview_url": "https://preview.example.com/x"})

    # object store

    def _task_for(self, obj_key: str) -> dict:
        for task in self.tasks.values():
            if task["obj_key"] == obj_key:
                return task
        raise AssertionError(f"unknown object {obj_key}")

    @staticmethod
    def _oss_headers(request: httpx.Request) -> str:
        headers = {k.lower(): v for k, v in request.headers.items() if k.lower().startswith("x-oss-")}
        return "".join(f"{k}:{v}\n" for k, v in sorted(headers.items()))

    def _oss(self, request: httpx.Request) -> httpx.Response:
        bucket = request.url.host.split(".")[0]
        obj_key = request.url.path.lstrip("/")
        task = self._task_for(obj_key)
        params = request.url.params
        assert params["uploadId"] == task["upload_id"]
        if request.method == "PUT":
            return self._put_part(request, bucket, obj_key, task)
        if request.method == "POST":
            return self._complete(request, bucket, obj_key, task)
        return httpx.Response(405)

    def _put_part(self, request, bucket, obj_key, task) -> httpx.Response:
        n = int(request.url.params["partNumber"])
        canonical = (
            f"PUT\n\n{request.headers['content-type']}\n{request.headers['x-oss-date']}\n"
            f"{self._oss_headers(request)}/{bucket}/{obj_key}?partNumber={n}&uploadId={task['upload_id']}"
        )
        if request.headers.get("authorization") != _sign(canonical):
            return httpx.Response(403, text="<Error><Code>SignatureDoesNotMatch</Code></Error>")

        mode = self.fail_parts.pop(n, None)
        if mode == "disconnect":
            raise httpx.ConnectError("connection reset by peer", request=request)
        if mode == "error":
            return httpx.Response(500, text="<Error><Code>InternalError</Code></Error>")

        data = request.content
        header = request.headers.get("x-oss-hash-ctx")
        if n == 1:
            if header is not None:
                return httpx.Response(400, text="<Error><Code>UnexpectedHashCtx</Code></Error>")
        else:
            if header is None:
                return httpx.Response(400, text="<Error><Code>MissingHashCtx</Code></Error>")
            prefix = b"".join(task["parts"][i]["data"] for i in range(1, n))
            state = decode_hash_ctx(header)
            if state.byte_count != len(prefix):
                return httpx.Response(400, text="<Error><Code>InvalidHashCtx</Code></Error>")
            acc = restore(state)
            acc.update(data)
            if acc.digest() != hashlib.sha1(prefix + data).digest():
                return httpx.Response(400, text="<Error><Code>InvalidHashCtx</Code></Error>")
            self.hash_ctx_checked += 1

        etag = '"' + hashlib.md5(data).hexdigest().upper() + '"'
        if n in task["parts"] and self.conflict_on_existing:
            stored = task["parts"][n]["etag"]
            return httpx.Response(
                409,
                text=(
                    "<?xml version=\"1.0\" encoding=\"UTF-8\"?>\n<Error><Code>PartAlreadyExist</Code>"
                    f"<Message>part already exists</Message><PartEtag>{stored}</PartEtag>"
                    f"<PartNumber>{n}</PartNumber></Error>"
                ),
            )

        task["parts"][n] = {"data": data, "etag": etag}
        self.puts.append(n)
        return httpx.Response(200, headers={"ETag": etag})

    def _complete(self, request, bucket, obj_key, task) -> httpx.Response:
        body = request.content
        content_md5 = base64.b64encode(hashlib.md5(body).digest()).decode()
        assert request.headers["content-md5"] == content_md5
        canonical = (
            f"POST\n{content_md5}\napplication/xml\n{request.headers['x-oss-date']}\n"
            f"{self._oss_headers(request)}/{bucket}/{obj_key}?uploadId={task['upload_id']}"
        )
        if request.headers.get("authorization") != _sign(canonical):
            return httpx.Response(403, text="<Error><Code>SignatureDoesNotMatch</Code></Error>")

        callback = json.loads(base64.b64decode(request.headers["x-oss-callback"]))
        assert callback == task["callback"]

        pieces = []
        root = ET.fromstring(body)
        for expected_number, part in enumerate(root.findall("Part"), start=1):
            number = int(part.findtext("PartNumber"))
            assert number == expected_number
            stored = task["parts"].get(number)
            if stored is None or stored["etag"].strip('"') != part.findtext("ETag").strip('"'):
                return httpx.Response(400, text="<Error><Code>InvalidPart</Code></Error>")
            pieces.append(stored["data"])

        task["object"] = b"".join(pieces)
        self.commits += 1
        return httpx.Response(200, text="<CompleteMultipartUploadResult/>")


@pytest.fixture
def fake_drive():
    return FakeDrive()


@pytest.fixture
def make_config(tmp_path):
    def factory(tokens=("kps=alpha",), **overrides):
        fields = dict(access_tokens=list(tokens), state_dir=tmp_path / "state", session_retention_days=None)
        fields.update(overrides)
        return UploaderConfig(**fields)
    return factory


@pytest.fixture
def make_pool():
    def factory(tokens=("kps=alpha",), seed=0):
        return CredentialPool(list(tokens), rng=random.Random(seed))
    return factory
