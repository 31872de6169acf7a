"""rclone output parsing, config files and command lines."""

import configparser
import json
import stat
import subprocess

import pytest

from cloud_backup.exceptions import StorageAccessDenied, ToolExecutionFailed, ValidationError
from cloud_backup.models import (
    BackupMode,
    ChangeAction,
    OperationStatus,
    OperationType,
    Profile,
    ProfileRole,
)
from cloud_backup.sync.rclone import (
    RcloneConfigWriter,
    RcloneTool,
    is_authorization_failure,
    parse_dry_run_output,
    parse_listing,
    parse_stats,
)

from conftest import FakeRunner, make_federated, make_service

DRY_RUN_JSON = "\n".join([
    json.dumps({"level": "notice", "msg": "Skipped copy as --dry-run is set (size 1.2Ki)",
                "object": "docs/new.txt", "size": 1234, "skipped": "copy"}),
    json.dumps({"level": "notice", "msg": "Skipped update as --dry-run is set (size 10)",
                "object": "docs/changed.txt", "size": 10, "skipped": "update"}),
    json.dumps({"level": "notice", "msg": "Skipped delete as --dry-run is set (size 5)",
                "object": "old/gone.txt", "size": 5, "skipped": "delete"}),
    json.dumps({"level": "info", "msg": "There was nothing to transfer"}),
])

DRY_RUN_TEXT = """\
2025/06/10 10:00:00 NOTICE: photos/a.jpg: Skipped copy as --dry-run is set (size 2.5Mi)
2025/06/10 10:00:00 NOTICE: photos/b.jpg: Skipped delete as --dry-run is set (size 100)
2025/06/10 10:00:00 NOTICE: "notes.md": would update "notes.md"
"""

STATS = """\
2025/06/10 10:00:01 NOTICE:
Transferred:   	    1.500 KiB / 1.500 KiB, 100%, 0 B/s, ETA -
Transferred:            3 / 3, 100%
Elapsed time:         0.5s
"""


@pytest.fixture
def profile(tmp_path):
    source = tmp_path / "Documents"
    source.mkdir()
    return Profile(
        id="p1",
        name="Jane",
        role=ProfileRole.USER,
        user_id="sub-jane",
        bucket="acme-backups",
        prefix="users/sub-jane",
        sources=[str(source)],
        rclone_conf=str(tmp_path / "rclone.conf"),
        rclone_flags=["--checksum"],
    )


def test_parse_json_dry_run():
    changes = parse_dry_run_output(DRY_RUN_JSON)

    assert [(c.action, c.path, c.size) for c in changes] == [
        (ChangeAction.COPY, "docs/new.txt", 1234),
        (ChangeAction.UPDATE, "docs/changed.txt", 10),
        (ChangeAction.DELETE, "old/gone.txt", 5),
    ]


def test_parse_text_dry_run():
    changes = parse_dry_run_output(DRY_RUN_TEXT)

    assert [(c.action, c.path, c.size) for c in changes] == [
        (ChangeAction.COPY, "photos/a.jpg", int(2.5 * 1024 * 1024)),
        (ChangeAction.DELETE, "photos/b.jpg", 100),
        (ChangeAction.UPDATE, "notes.md", 0),
    ]


def test_parse_stats():
    assert parse_stats(STATS) == (3, 1536)
    assert parse_stats("nothing here") is None


def test_parse_listing_sorts_directories_first():
    output = json.dumps([
        {"Path": "b.txt", "Name": "b.txt", "Size": 12, "ModTime": "2025-06-10T10:00:00.000000000Z",
         "IsDir": False, "MimeType": "text/plain"},
        {"Path": "photos", "Name": "photos", "Size": -1, "IsDir": True},
        {"Path": "a.txt", "Name": "a.txt", "Size": 3, "IsDir": False},
    ])

    files = parse_listing(output)

    assert [f.name for f in files] == ["photos", "a.txt", "b.txt"]
    assert files[0].size == 0
    assert files[2].mod_time.year == 2025


def test_parse_listing_rejects_garbage():
    with pytest.raises(ToolExecutionFailed):
        parse_listing("not json")


def test_config_writer_federated(tmp_path):
    writer = RcloneConfigWriter(tmp_path / "rclone.conf")

    path = writer.write_federated(make_federated(), "eu-west-1")

    parser = configparser.ConfigParser(interpolation=None)
    parser.read(path)
    section = parser["aws"]
    assert section["type"] == "s3"
    assert section["provider"] == "AWS"
    assert section["env_auth"] == "false"
    assert section["session_token"] == "fed-token"
    assert section["region"] == "eu-west-1"
    assert section["acl"] == "private"
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_config_writer_service_has_no_session_token(tmp_path):
    writer = RcloneConfigWriter(tmp_path / "rclone-scheduled.conf", remote_name="backup")
    writer.write_service(make_service())

    parser = configparser.ConfigParser(interpolation=None)
    parser.read(writer.path)
    assert parser["backup"]["access_key_id"] == "AKIASERVICE"
    assert "session_token" not in parser["backup"]

    assert writer.remove()
    assert not writer.exists
    assert not writer.remove()


@pytest.mark.asyncio
async def test_dry_run_command_line(profile):
    runner = FakeRunner(lambda args: (0, "", DRY_RUN_JSON))
    tool = RcloneTool(runner=runner)

    change_set = await tool.run_dry_run(profile)

    assert runner.calls[0] == [
        "rclone", "sync", profile.sources[0], "aws:acme-backups/users/sub-jane",
        "--dry-run", "--use-json-log", "--stats=0",
        "--config", profile.rclone_conf, "--checksum",
    ]
    assert change_set.total_files == 3
    assert change_set.has_deletions


@pytest.mark.asyncio
async def test_dry_run_failure_raises(profile):
    tool = RcloneTool(runner=FakeRunner(lambda args: (1, "", "Failed to create file system")))

    with pytest.raises(ToolExecutionFailed) as error:
        await tool.run_dry_run(profile)
    assert error.value.exit_code == 1
    assert "Failed to create file system" in error.value.stderr


@pytest.mark.asyncio
async def test_run_copies_every_source(profile, tmp_path):
    second = tmp_path / "Pictures"
    second.mkdir()
    profile.sources.append(str(second))
    runner = FakeRunner(lambda args: (0, "", STATS))

    operation = await RcloneTool(runner=runner).run(profile)

    assert [call[1] for call in runner.calls] == ["copy", "copy"]
    assert operation.status == OperationStatus.COMPLETED
    assert operation.operation_type == OperationType.BACKUP
    assert operation.files_transferred == 6
    assert operation.bytes_transferred == 3072
    assert operation.completed_at is not None


@pytest.mark.asyncio
async def test_run_in_sync_mode(profile):
    profile.mode = BackupMode.SYNC
    runner = FakeRunner()

    await RcloneTool(runner=runner).run(profile)

    assert runner.calls[0][1] == "sync"


@pytest.mark.asyncio
async def test_failed_transfer_is_a_failed_operation(profile):
    runner = FakeRunner(lambda args: (7, "", "Fatal error: max transfer limit reached"))

    operation = await RcloneTool(runner=runner).run(profile)

    assert operation.status == OperationStatus.FAILED
    assert "max transfer limit" in operation.error_message



def test_authorization_failures_are_recognised():
    assert is_authorization_failure("Failed to copy: ExpiredToken: The provided token has expired.")
    assert is_authorization_failure("AccessDenied: Access Denied\n\tstatus code: 403")
    assert not is_authorization_failure("directory not found")


@pytest.mark.asyncio
async def test_expired_credential_on_transfer_raises(profile):
    runner = FakeRunner(lambda args: (1, "", "Failed to copy: ExpiredToken: The provided token has expired."))

    with pytest.raises(StorageAccessDenied) as error:
        await RcloneTool(runner=runner).run(profile)
    assert error.value.exit_code == 1


@pytest.mark.asyncio
async def test_refused_listing_raises_access_denied(profile):
    runner = FakeRunner(lambda args: (3, "", "AccessDenied: Access Denied status code: 403"))

    with pytest.raises(StorageAccessDenied):
        await RcloneTool(runner=runner).list_remote(profile)

@pytest.mark.asyncio
async def test_missing_source_raises(profile, tmp_path):
    profile.sources = [str(tmp_path / "missing")]

    with pytest.raises(ToolExecutionFailed, match="Source directory not found"):
        await RcloneTool(runner=FakeRunner()).run(profile)


@pytest.mark.asyncio
async def test_profile_without_sources_is_rejected(profile):
    profile.sources = []

    with pytest.raises(ValidationError):
        await RcloneTool(runner=FakeRunner()).run_dry_run(profile)


@pytest.mark.asyncio
async def test_missing_binary_raises(profile):
    def runner(args):
        raise FileNotFoundError(2, "No such file or directory", args[0])

    with pytest.raises(ToolExecutionFailed, match="Could not run rclone"):
        await RcloneTool(runner=runner).run_dry_run(profile)


@pytest.mark.asyncio
async def test_restore_copies_remote_paths(profile, tmp_path):
    runner = FakeRunner()
    target = str(tmp_path / "restore")

    operation = await RcloneTool(runner=runner).restore(profile, ["/docs/new.txt"], target)

    assert runner.calls[0][:4] == ["rclone", "copy", "aws:acme-backups/users/sub-jane/docs/new.txt", target]
    assert operation.operation_type == OperationType.RESTORE
    assert operation.status == OperationStatus.COMPLETED


@pytest.mark.asyncio
async def test_list_remote(profile):
    listing = json.dumps([{"Path": "a.txt", "Name": "a.txt", "Size": 3, "IsDir": False}])
    runner = FakeRunner(lambda args: (0, listing, ""))

    files = await RcloneTool(runner=runner).list_remote(profile, "docs", max_depth=1)

    assert runner.calls[0] == [
        "rclone", "lsjson", "aws:acme-backups/users/sub-jane/docs", "--fast-list",
        "--config", profile.rclone_conf, "--max-depth", "1",
    ]
    assert [f.path for f in files] == ["a.txt"]


@pytest.mark.asyncio
async def test_version():
    runner = FakeRunner(lambda args: (0, "rclone v1.66.0\n- os/version: darwin\n", ""))
    assert await RcloneTool(runner=runner).version() == "rclone v1.66.0"


@pytest.mark.asyncio
async def test_detect_skips_candidates_that_cannot_run():
    def runner(args):
        if args[0] == "/usr/local/bin/rclone":
            raise FileNotFoundError(2, "No such file or directory", args[0])
        if args[0] == "/usr/bin/rclone":
            return subprocess.CompletedProcess(args, 1, "", "exec format error")
        return subprocess.CompletedProcess(args, 0, "rclone v1.66.0\n", "")

    found = await RcloneTool(runner=runner).detect(["/usr/local/bin/rclone", "/usr/bin/rclone", "rclone"])

    assert found == ["rclone"]


@pytest.mark.asyncio
async def test_validate_config(tmp_path):
    runner = FakeRunner(lambda args: (0, "[aws]\ntype = s3\n", ""))
    tool = RcloneTool(runner=runner)
    conf = tmp_path / "rclone.conf"

    assert not await tool.validate_config("rclone", str(conf))
    assert runner.calls == []

    conf.write_text("[aws]\ntype = s3\n")
    assert await tool.validate_config("rclone", str(conf))
    assert runner.calls[0] == ["rclone", "config", "show", "--config", str(conf)]


@pytest.mark.asyncio
async def test_unreadable_config_is_invalid(tmp_path):
    conf = tmp_path / "rclone.conf"
    conf.write_text("not a config")
    tool = RcloneTool(runner=FakeRunner(lambda args: (1, "", "Failed to load config file")))

    assert not await tool.validate_config("rclone", str(conf))
