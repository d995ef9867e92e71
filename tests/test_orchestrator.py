"""End-to-end upload tests against the in-memory drive."""
import hashlib
import os
import random
from unittest.mock import Mock

import pytest

from driveup.models import FailureCategory, UploadFailure, UploadOk
from driveup.orchestrator import UploadOrchestrator, single_upload
from driveup.orchestrator.single_upload import remote_file_path
from driveup.services.credentials import CredentialPool
from driveup.services.resume import ResumeStore, session_key


async def run_upload(fake_drive, config, path, dest=None, callback=None):
    pool = CredentialPool(config.access_tokens, rng=random.Random(0))
    async with UploadOrchestrator(config, pool=pool, transport=fake_drive.transport()) as uploader:
        return await uploader.upload(path, dest, callback)


def pre_upload_calls(fake_drive):
    return [r for r in fake_drive.requests if r[2] == "/1/clouddrive/file/upload/pre"]


@pytest.fixture
def payload():
    return os.urandom(450)


@pytest.fixture
def source(tmp_path, payload):
    path = tmp_path / "data.bin"
    path.write_bytes(payload)
    return path


@pytest.fixture
def drive(fake_drive):
    # 450 bytes -> 5 parts; 100 is not a multiple of 64 so the hash state carries a partial block
    fake_drive.part_size = 100
    return fake_drive


class TestRemoteFilePath:
    """Test how the destination names the remote file."""

    def test_folder_destinations_keep_local_name(self):
        assert remote_file_path("a.bin", None) == "/a.bin"
        assert remote_file_path("a.bin", "") == "/a.bin"
        assert remote_file_path("a.bin", "/") == "/a.bin"
        assert remote_file_path("a.bin", "/Backups/") == "/Backups/a.bin"
        assert remote_file_path("a.bin", "Backups\\2026\\") == "/Backups/2026/a.bin"

    def test_file_destination_renames(self):
        assert remote_file_path("a.bin", "/Backups/b.bin") == "/Backups/b.bin"


class TestUploadScenarios:
    """Full protocol runs."""

    @pytest.mark.asyncio
    async def test_multi_part_upload(self, drive, make_config, source, payload):
        progress = []
        result = await run_upload(drive, make_config(), source, "/Backups/", progress.append)

        assert isinstance(result, UploadOk)
        assert result.success and result.code == "OK"
        assert "preview_url" not in result.data
        assert drive.puts == [1, 2, 3, 4, 5]
        assert drive.hash_ctx_checked == 4
        assert drive.only_task["object"] == payload
        assert drive.only_task["sha1"] == hashlib.sha1(payload).hexdigest()
        assert drive.only_task["md5"] == hashlib.md5(payload).hexdigest()
        assert [p.bytes_transferred for p in progress] == [100, 200, 300, 400, 450, 450]
        assert progress[-1].percent == 100.0

    @pytest.mark.asyncio
    async def test_session_removed_after_success(self, drive, make_config, source):
        config = make_config()
        await run_upload(drive, config, source, "/")

        assert list(config.state_dir.glob("*.json")) == []

    @pytest.mark.asyncio
    async def test_zero_byte_file_uses_one_empty_part(self, drive, make_config, tmp_path):
        empty = tmp_path / "empty.txt"
        empty.write_bytes(b"")
        progress = []

        result = await run_upload(drive, make_config(), empty, "/", progress.append)

        assert result.success
        assert drive.puts == [1]
        assert drive.only_task["parts"][1]["data"] == b""
        assert drive.only_task["mime"] == "text/plain"
        assert drive.commits == 1
        assert progress[-1].percent == 100.0

    @pytest.mark.asyncio
    async def test_known_content_completes_instantly(self, drive, make_config, source, payload):
        drive.known_sha1.add(hashlib.sha1(payload).hexdigest())
        progress = []

        result = await run_upload(drive, make_config(), source, "/", progress.append)

        assert result.success and result.instant
        assert drive.puts == []
        assert drive.commits == 0
        assert drive.finished == ["task-1"]
        assert len(progress) == 1
        assert progress[0].instant and progress[0].percent == 100.0

    @pytest.mark.asyncio
    async def test_missing_ancestors_are_created_before_negotiation(self, drive, make_config, source):
        result = await run_upload(drive, make_config(), source, "/new/deep/dir/file.bin")

        assert result.success
        created = drive.created_folders
        assert [(parent, name) for parent, name, _ in created] == [
            ("0", "new"),
            (created[0][2], "deep"),
            (created[1][2], "dir"),
        ]
        task = drive.only_task
        assert task["pdir_fid"] == created[2][2]
        assert task["file_name"] == "file.bin"

        last_create = max(i for i, r in enumerate(drive.requests) if r[2] == "/1/clouddrive/file")
        first_pre = drive.requests.index(pre_upload_calls(drive)[0])
        assert last_create < first_pre

    @pytest.mark.asyncio
    async def test_async_progress_callback(self, drive, make_config, source):
        seen = []

        async def callback(progress):
            seen.append(progress.percent)

        result = await run_upload(drive, make_config(), source, "/", callback)

        assert result.success
        assert seen[-1] == 100.0


class TestResume:
    """Interrupted uploads continue where they stopped."""

    @pytest.mark.asyncio
    async def test_resume_after_part_two_of_five(self, drive, make_config, source, payload, monkeypatch):
        config = make_config()
        drive.fail_parts = {3: "disconnect"}

        first = await run_upload(drive, config, source, "/Backups/")

        assert isinstance(first, UploadFailure)
        assert first.code == "UPLOAD_PART_ERROR"
        assert first.category is FailureCategory.TRANSPORT
        assert first.recoverable
        store = ResumeStore(config.state_dir)
        saved = store.load(session_key(os.path.abspath(source), "/Backups/data.bin"))
        assert sorted(saved.uploaded_parts) == [1, 2]
        assert saved.hash_state.byte_count == 200

        # the persisted hash state must be used; re-hashing the prefix would fail the run
        monkeypatch.setattr(
            "driveup.orchestrator.single_upload.hash_prefix",
            Mock(side_effect=AssertionError("prefix was re-hashed")),
        )
        second = await run_upload(drive, config, source, "/Backups/")

        assert second.success
        assert drive.puts == [1, 2, 3, 4, 5]
        assert len(pre_upload_calls(drive)) == 1
        assert drive.hash_ctx_checked == 4
        assert drive.only_task["object"] == payload
        assert hashlib.sha1(drive.only_task["object"]).hexdigest() == hashlib.sha1(payload).hexdigest()

    @pytest.mark.asyncio
    async def test_ambiguous_retry_of_stored_part(self, drive, make_config, source, payload):
        config = make_config()
        drive.fail_parts = {4: "disconnect"}
        drive.conflict_on_existing = True
        await run_upload(drive, config, source, "/")

        # forget that part 3 was acknowledged, and the hash state with it
        store = ResumeStore(config.state_dir)
        key = session_key(os.path.abspath(source), "/data.bin")
        session = store.load(key)
        del session.uploaded_parts[3]
        session.hash_state = None
        store.save(session)

        result = await run_upload(drive, config, source, "/")

        assert result.success
        assert drive.puts == [1, 2, 3, 4, 5]
        assert drive.only_task["object"] == payload

    @pytest.mark.asyncio
    async def test_server_error_on_part_is_recoverable(self, drive, make_config, source, payload):
        config = make_config()
        drive.fail_parts = {2: "error"}

        first = await run_upload(drive, config, source, "/")
        assert first.code == "UPLOAD_PART_ERROR"
        assert first.category is FailureCategory.PROTOCOL
        assert first.recoverable

        second = await run_upload(drive, config, source, "/")
        assert second.success
        assert drive.puts == [1, 2, 3, 4, 5]
        assert drive.only_task["object"] == payload

    @pytest.mark.asyncio
    async def test_rejected_resumed_task_renegotiates(self, drive, make_config, source, payload):
        config = make_config()
        drive.fail_parts = {2: "error"}
        await run_upload(drive, config, source, "/")
        drive.rejected_tasks.add("task-1")

        result = await run_upload(drive, config, source, "/")

        assert result.success
        assert len(pre_upload_calls(drive)) == 2
        assert drive.tasks["task-2"]["object"] == payload

    @pytest.mark.asyncio
    async def test_changed_file_discards_session(self, drive, make_config, source):
        config = make_config()
        drive.fail_parts = {2: "error"}
        await run_upload(drive, config, source, "/")

        new_payload = os.urandom(230)
        source.write_bytes(new_payload)
        result = await run_upload(drive, config, source, "/")

        assert result.success
        assert len(pre_upload_calls(drive)) == 2
        assert drive.tasks["task-2"]["object"] == new_payload


class TestFailures:
    """Fatal failures come back as results, not exceptions."""

    @pytest.mark.asyncio
    async def test_missing_local_file(self, drive, make_config, tmp_path):
        config = make_config()
        result = await run_upload(drive, config, tmp_path / "nope.bin", "/")

        assert result.code == "FILE_INFO_ERROR"
        assert result.category is FailureCategory.LOCAL_IO
        assert not result.recoverable
        assert drive.requests == []
        assert not config.state_dir.exists() or list(config.state_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_file_in_destination_path(self, drive, make_config, source):
        drive.add_file("0", "taken")

        result = await run_upload(drive, make_config(), source, "/taken/x/")

        assert result.code == "PATH_ERROR"
        assert result.category is FailureCategory.PATH
        assert pre_upload_calls(drive) == []

    @pytest.mark.asyncio
    async def test_rejected_credentials(self, drive, make_config, source):
        drive.valid_cookies = set()

        result = await run_upload(drive, make_config(tokens=("kps=a", "kps=b")), source, "/")

        assert result.code == "AUTH_ERROR"
        assert result.category is FailureCategory.AUTH
        assert pre_upload_calls(drive) == []

    @pytest.mark.asyncio
    async def test_hash_rejection_on_fresh_task_is_fatal(self, drive, make_config, source):
        drive.rejected_tasks.add("task-1")

        result = await run_upload(drive, make_config(), source, "/")

        assert result.code == "HASH_VERIFICATION_ERROR"
        assert "41018" in result.message
        assert drive.puts == []

    @pytest.mark.asyncio
    async def test_unsaved_progress_is_not_recoverable(self, drive, make_config, source, monkeypatch):
        drive.fail_parts = {3: "disconnect"}
        monkeypatch.setattr(ResumeStore, "save", Mock(side_effect=OSError("disk full")))

        result = await run_upload(drive, make_config(), source, "/")

        assert result.code == "UPLOAD_PART_ERROR"
        assert result.category is FailureCategory.TRANSPORT
        assert not result.recoverable
        assert "could not be saved" in result.message

    @pytest.mark.asyncio
    async def test_resumed_progress_counts_only_new_bytes(self, drive, make_config, source, monkeypatch):
        config = make_config()
        drive.fail_parts = {3: "disconnect"}
        await run_upload(drive, config, source, "/")

        created = []
        real_tracker = single_upload.ProgressTracker

        def tracker(*args, **kwargs):
            created.append(kwargs.get("initial_bytes"))
            return real_tracker(*args, **kwargs)

        monkeypatch.setattr(single_upload, "ProgressTracker", tracker)
        result = await run_upload(drive, config, source, "/")

        assert result.success
        assert created == [200]
