"""rclone integration: remote config files, dry runs, transfers and listings."""

import asyncio
import configparser
import io
import json
import logging
import re
import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

from dateutil import parser as date_parser

from ..exceptions import StorageAccessDenied, ToolExecutionFailed, ValidationError
from ..models import (
    BackupMode,
    ChangeAction,
    ChangeSet,
    CloudFile,
    FederatedCredential,
    FileChange,
    Operation,
    OperationStatus,
    OperationType,
    Profile,
    ServiceCredential,
)
from ..utils.file_utils import FileHelper
from ..utils.logging import OperationLogger, StepTimer
from ..utils.process import CommandRunner, run_command

logger = logging.getLogger(__name__)

RCLONE_CANDIDATES = [
    "/usr/local/bin/rclone",
    "/opt/homebrew/bin/rclone",
    "/usr/bin/rclone",
    "rclone",
]

_SKIPPED_RE = re.compile(
    r"NOTICE:\s*(?P<path>.+?):\s*Skipped (?P<action>copy|update|delete) as --dry-run is set"
    r"(?:\s*\(size (?P<size>[^)]+)\))?"
)
_WOULD_RE = re.compile(r'NOTICE:.*would (?P<action>copy|update|delete)\b.*?"(?P<path>[^"]+)"')
_FILES_RE = re.compile(r"Transferred:\s+(\d+)\s*/\s*(\d+),\s*\d+%")
_BYTES_RE = re.compile(r"Transferred:\s+([0-9.,]+\s*[KMGTP]?i?B)\s*/\s*([0-9.,]+\s*[KMGTP]?i?B)")
_AUTH_FAILURE_RE = re.compile(
    r"ExpiredToken|InvalidAccessKeyId|InvalidToken|TokenRefreshRequired|SignatureDoesNotMatch"
    r"|AccessDenied|status code: 403|403 Forbidden"
)

_ACTIONS = {
    "copy": ChangeAction.COPY,
    "update": ChangeAction.UPDATE,
    "delete": ChangeAction.DELETE,
}


def is_authorization_failure(stderr: str) -> bool:
    """True when rclone output shows S3 refusing the credential."""
    return bool(_AUTH_FAILURE_RE.search(stderr or ""))


def _failure(message: str, result: subprocess.CompletedProcess) -> ToolExecutionFailed:
    error_class = StorageAccessDenied if is_authorization_failure(result.stderr) else ToolExecutionFailed
    return error_class(message, stderr=result.stderr, exit_code=result.returncode)


def parse_dry_run_output(output: str) -> List[FileChange]:
    """Extract the planned changes from rclone ``--dry-run`` log output.

    Understands JSON log lines (``--use-json-log``) as well as the plain text
    ``Skipped <action> as --dry-run is set`` notices.

    Args:
        output: rclone stderr

    Returns:
        Changes in the order rclone reported them
    """
    changes = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue

        if line.startswith("{"):
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                entry = None
            if isinstance(entry, dict):
                action = _ACTIONS.get(entry.get("skipped", ""))
                path = entry.get("object")
                if action and path:
                    size = entry.get("size")
                    changes.append(FileChange(path=path, size=size if isinstance(size, int) and size > 0 else 0,
                                              action=action))
                continue

        match = _SKIPPED_RE.search(line)
        if match:
            size = FileHelper.parse_size(match.group("size") or "") or 0
            changes.append(FileChange(path=match.group("path"), size=size,
                                      action=_ACTIONS[match.group("action")]))
            continue

        match = _WOULD_RE.search(line)
        if match:
            changes.append(FileChange(path=match.group("path"), action=_ACTIONS[match.group("action")]))

    return changes


def parse_stats(output: str) -> Optional[Tuple[int, int]]:
    """Read the final ``Transferred:`` statistics.

    Returns:
        ``(files, bytes)`` from the last stats block, or None if rclone printed none
    """
    files = None
    size = None
    for line in output.splitlines():
        files_match = _FILES_RE.search(line)
        if files_match:
            files = int(files_match.group(1))
            continue
        bytes_match = _BYTES_RE.search(line)
        if bytes_match:
            size = FileHelper.parse_size(bytes_match.group(1))

    if files is None and size is None:
        return None
    return files or 0, size or 0


def parse_listing(output: str) -> List[CloudFile]:
    """Parse ``rclone lsjson`` output, directories first then by name."""
    try:
        items = json.loads(output or "[]")
    except json.JSONDecodeError as e:
        raise ToolExecutionFailed(f"Failed to parse rclone output: {e}", stderr=output) from e

    files = []
    for item in items:
        path = item.get("Path")
        if not path:
            continue
        mod_time = None
        if item.get("ModTime"):
            try:
                mod_time = date_parser.isoparse(item["ModTime"])
            except ValueError:
                logger.debug(f"Unparseable ModTime for {path}: {item['ModTime']}")
        files.append(CloudFile(
            path=path,
            name=item.get("Name") or path,
            size=max(item.get("Size") or 0, 0),
            mod_time=mod_time,
            is_dir=bool(item.get("IsDir")),
            mime_type=item.get("MimeType"),
        ))

    files.sort(key=lambda f: (not f.is_dir, f.name))
    return files


class RcloneConfigWriter:
    """Writes a single-remote rclone config file for one credential."""

    def __init__(self, path: Path, remote_name: str = "aws"):
        self.path = Path(path)
        self.remote_name = remote_name

    @property
    def exists(self) -> bool:
        return self.path.exists()

    def write(self, access_key_id: str, secret_key: str, region: str,
              session_token: Optional[str] = None) -> Path:
        parser = configparser.ConfigParser(interpolation=None)
        section = {
            "type": "s3",
            "provider": "AWS",
            "env_auth": "false",
            "access_key_id": access_key_id,
            "secret_access_key": secret_key,
        }
        if session_token:
            section["session_token"] = session_token
        section["region"] = region
        section["acl"] = "private"
        parser[self.remote_name] = section

        buffer = io.StringIO()
        parser.write(buffer)
        FileHelper.write_atomic(self.path, buffer.getvalue(), mode=0o600)
        logger.info(f"Wrote rclone config {self.path} (remote '{self.remote_name}')")
        return self.path

    def write_federated(self, credential: FederatedCredential, region: str) -> Path:
        return self.write(credential.access_key_id, credential.secret_key, region,
                          session_token=credential.session_token)

    def write_service(self, credential: ServiceCredential) -> Path:
        return self.write(credential.access_key_id, credential.secret_key, credential.region)

    def remove(self) -> bool:
        if not self.path.exists():
            return False
        self.path.unlink()
        logger.info(f"Removed rclone config {self.path}")
        return True


class RcloneTool:
    """Runs rclone for a profile and turns its output into ChangeSets and Operations."""

    def __init__(self, runner: Optional[CommandRunner] = None):
        """Initialize the tool.

        Args:
            runner: Callable running an argument list and returning a
                ``CompletedProcess``; defaults to ``subprocess.run``
        """
        self.runner = runner or run_command

    async def _exec(self, args: List[str]) -> subprocess.CompletedProcess:
        try:
            return await asyncio.to_thread(self.runner, args)
        except OSError as e:
            raise ToolExecutionFailed(f"Could not run {args[0]}: {e}", stderr=str(e)) from e

    @staticmethod
    def _require_sources(profile: Profile) -> None:
        if not profile.sources:
            raise ValidationError(f"Profile {profile.name} has no source folders", field="sources")

    async def version(self, rclone_bin: str = "rclone") -> str:
        """Return the first line of ``rclone version``."""
        result = await self._exec([rclone_bin, "version"])
        if result.returncode != 0:
            raise ToolExecutionFailed("rclone version failed", stderr=result.stderr, exit_code=result.returncode)
        lines = result.stdout.strip().splitlines()
        return lines[0] if lines else ""

    async def detect(self, candidates: Optional[List[str]] = None) -> List[str]:
        """Return the rclone binaries among ``candidates`` that answer ``rclone version``."""
        found = []
        for candidate in candidates or RCLONE_CANDIDATES:
            try:
                await self.version(candidate)
            except ToolExecutionFailed as e:
                logger.debug(f"No usable rclone at {candidate}: {e}")
                continue
            found.append(candidate)
        return found

    async def validate_config(self, rclone_bin: str, config_path: str) -> bool:
        """Check that ``config_path`` exists and rclone can read it."""
        if not config_path or not Path(config_path).exists():
            return False
        result = await self._exec([rclone_bin, "config", "show", "--config", config_path])
        if result.returncode != 0:
            logger.warning(f"rclone cannot read {config_path}: {result.stderr.strip()}")
        return result.returncode == 0

    async def run_dry_run(self, profile: Profile) -> ChangeSet:
        """Ask rclone what a sync of every source would change.

        Raises:
            ToolExecutionFailed: rclone could not be run or exited non-zero
        """
        self._require_sources(profile)
        destination = profile.destination()
        changes: List[FileChange] = []

        for source in profile.sources:
            args = [
                profile.rclone_bin, "sync", source, destination,
                "--dry-run", "--use-json-log", "--stats=0",
                "--config", profile.rclone_conf,
                *profile.rclone_flags,
            ]
            with StepTimer(logger, f"dry run of {source}", logging.DEBUG):
                result = await self._exec(args)
            if result.returncode != 0:
                raise _failure(f"rclone dry run failed for {source}", result)
            changes.extend(parse_dry_run_output(result.stderr))

        change_set = ChangeSet.from_changes(changes)
        logger.info(
            f"Preview for {profile.name}: {len(change_set.files_to_copy)} to copy, "
            f"{len(change_set.files_to_update)} to update, {len(change_set.files_to_delete)} to delete"
        )
        return change_set

    async def _transfer(self, operation: Operation, jobs: List[Tuple[str, List[str]]]) -> Operation:
        log = OperationLogger(logger, operation.profile_id, operation.id)
        output = []
        for label, args in jobs:
            with StepTimer(log, f"rclone {args[1]} {label}"):
                result = await self._exec(args)

            output.append(f"=== {label} ===\n{result.stdout}{result.stderr}\n")
            stats = parse_stats(result.stderr)
            if stats:
                operation.files_transferred += stats[0]
                operation.bytes_transferred += stats[1]

            if result.returncode != 0:
                operation.log_output = "".join(output)
                log.error(f"rclone exited with {result.returncode} for {label}")
                if is_authorization_failure(result.stderr):
                    raise _failure(f"Storage refused the credentials for {label}", result)
                return operation.finish(
                    OperationStatus.FAILED, f"rclone {args[1]} failed for {label}: {result.stderr.strip()}"
                )

        operation.log_output = "".join(output)
        log.info(
            f"Transferred {operation.files_transferred} files "
            f"({FileHelper.format_file_size(operation.bytes_transferred)})"
        )
        return operation.finish(OperationStatus.COMPLETED)

    async def run(self, profile: Profile) -> Operation:
        """Copy or sync every source to the profile's destination.

        A non-zero rclone exit yields an Operation with status FAILED and
        rclone's error text. Failing to start rclone raises ToolExecutionFailed,
        and storage refusing the credential raises StorageAccessDenied.
        """
        self._require_sources(profile)
        command = "sync" if profile.mode == BackupMode.SYNC else "copy"
        destination = profile.destination()
        jobs = []
        for source in profile.sources:
            if not Path(source).exists():
                raise ToolExecutionFailed(f"Source directory not found: {source}")
            jobs.append((source, [
                profile.rclone_bin, command, source, destination,
                "--config", profile.rclone_conf,
                "--stats=1m", "--stats-log-level", "NOTICE",
                *profile.rclone_flags,
            ]))

        operation = Operation(profile_id=profile.id, operation_type=OperationType.BACKUP)
        return await self._transfer(operation, jobs)

    async def restore(self, profile: Profile, remote_paths: List[str], local_target: str) -> Operation:
        """Copy remote paths from the profile's destination into a local folder."""
        if not remote_paths:
            raise ValidationError("Nothing selected to restore", field="remote_paths")
        base = profile.destination()
        jobs = []
        for remote_path in remote_paths:
            jobs.append((remote_path, [
                profile.rclone_bin, "copy", f"{base}/{remote_path.lstrip('/')}", local_target,
                "--config", profile.rclone_conf,
                "--stats=1m", "--stats-log-level", "NOTICE",
                "--checksum", "--fast-list",
            ]))

        operation = Operation(profile_id=profile.id, operation_type=OperationType.RESTORE)
        return await self._transfer(operation, jobs)

    async def list_remote(self, profile: Profile, path: Optional[str] = None,
                          max_depth: Optional[int] = None) -> List[CloudFile]:
        """List files under the profile's destination."""
        target = profile.destination()
        if path:
            target = f"{target}/{path.lstrip('/')}"
        args = [profile.rclone_bin, "lsjson", target, "--fast-list", "--config", profile.rclone_conf]
        if max_depth is not None:
            args += ["--max-depth", str(max_depth)]
        else:
            args.append("--recursive")

        result = await self._exec(args)
        if result.returncode != 0:
            raise _failure(f"Failed to list {target}", result)
        return parse_listing(result.stdout)
