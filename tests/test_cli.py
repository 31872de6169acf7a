"""Command-line interface."""

import pytest
import yaml
from click.testing import CliRunner

from cloud_backup import cli as cli_module
from cloud_backup.auth.cognito_auth import AuthSuccess, NewPasswordRequired
from cloud_backup.auth.credential_exchange import CredentialExchangeCoordinator
from cloud_backup.cli import cli
from cloud_backup.exceptions import CredentialOrphaned
from cloud_backup.models import BackupMode, Profile, ProfileRole
from cloud_backup.profiles.provisioner import ProfileProvisioner
from cloud_backup.schedule.manager import ScheduleManager
from cloud_backup.schedule.scheduler import OSScheduler
from cloud_backup.storage.credential_store import CredentialStore
from cloud_backup.sync.backup_manager import BackupManager
from cloud_backup.sync.confirmation import SyncGate
from cloud_backup.sync.rclone import RcloneConfigWriter

from conftest import make_session
from test_authenticator import ScriptedProvider
from test_confirmation import FakeTool, change_set
from test_credential_exchange import DummyFederatedService, DummyIssuer
from test_scheduler import RecordingBackend


@pytest.fixture
def settings_file(settings, tmp_path):
    path = tmp_path / "settings.yaml"
    settings.to_yaml(path)
    return path


@pytest.fixture
def tool():
    return FakeTool(change_set(deletions=2))


@pytest.fixture
def manager(settings, profile_store, tool, monkeypatch):
    coordinator = CredentialExchangeCoordinator(
        DummyFederatedService(),
        CredentialStore(settings.config_dir),
        issuer=DummyIssuer(),
        unattended_registrar=RcloneConfigWriter(settings.scheduled_rclone_conf),
    )
    built = BackupManager(
        settings,
        profile_store,
        coordinator,
        ProfileProvisioner(profile_store, settings, interactive_config=RcloneConfigWriter(settings.rclone_conf)),
        SyncGate(tool),
        ScheduleManager(OSScheduler(settings, profile_store, backend=RecordingBackend())),
    )
    monkeypatch.setattr(BackupManager, "from_settings", classmethod(lambda cls, settings, notifier=None: built))
    monkeypatch.setattr(built, "check_bucket_access", lambda profile, credential: True)
    return built


@pytest.fixture
def sync_profile(profile_store, tmp_path):
    source = tmp_path / "Documents"
    source.mkdir()
    return profile_store.add_profile(Profile(
        name="Jane",
        role=ProfileRole.USER,
        user_id="sub-jane",
        bucket="acme-backups",
        prefix="users/sub-jane",
        sources=[str(source)],
        mode=BackupMode.SYNC,
    ), make_active=True)


def run(settings_file, *args, input=None):
    return CliRunner().invoke(cli, ["--config", str(settings_file), *args], input=input)


def test_init_writes_settings(tmp_path):
    path = tmp_path / "settings.yaml"

    result = CliRunner().invoke(cli, [
        "--config", str(path), "init",
        "--region", "us-west-2",
        "--user-pool-id", "us-west-2_Pool",
        "--app-client-id", "client789",
        "--identity-pool-id", "us-west-2:pool",
        "--bucket", "acme-west",
        "--issuance-url", "",
    ])

    assert result.exit_code == 0, result.output
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert data["cognito"]["user_pool_id"] == "us-west-2_Pool"
    assert data["bucket_name"] == "acme-west"
    assert "issuance_url" not in data


def test_login_answers_the_new_password_challenge(settings_file, manager, monkeypatch):
    provider = ScriptedProvider(NewPasswordRequired(("phone_number",)), AuthSuccess(make_session()))
    monkeypatch.setattr(cli_module, "CognitoIdentityProvider", lambda settings: provider)

    result = run(settings_file, "login", "--email", "jane@acme.com", "--password", "Temp123!",
                 input="longenough1\nlongenough1\n+15551234567\n")

    assert result.exit_code == 0, result.output
    assert "Signed in as jane@acme.com" in result.output
    assert "Bucket access: ✅ ok" in result.output
    assert "rclone: ✅ rclone v1.66.0" in result.output
    assert "Scheduled backups:" in result.output
    assert "unavailable" not in result.output
    assert provider.calls[-1] == ("submit_new_password", ("longenough1", {"phone_number": "+15551234567"}))
    assert manager.provisioner.active_profile().user_id == "sub-jane"


def test_login_with_orphaned_credential(settings_file, manager, monkeypatch):
    provider = ScriptedProvider(AuthSuccess(make_session()))
    monkeypatch.setattr(cli_module, "CognitoIdentityProvider", lambda settings: provider)
    manager.coordinator.issuer = DummyIssuer(result=CredentialOrphaned("A service account already exists"))

    result = run(settings_file, "login", "--email", "jane@acme.com", "--password", "Temp123!")

    assert result.exit_code == 1
    assert "contact your administrator" in result.output


def test_backup_without_profile_fails(settings_file, manager):
    result = run(settings_file, "backup")

    assert result.exit_code == 1
    assert "No active profile" in result.output


def test_sync_backup_can_be_declined(settings_file, manager, sync_profile, tool):
    result = run(settings_file, "backup", input="n\n")

    assert result.exit_code == 0, result.output
    assert "DELETE 2 remote files" in result.output
    assert "Cancelled" in result.output
    assert tool.runs == 0
    assert manager.history() == []


def test_sync_backup_with_yes_runs(settings_file, manager, sync_profile, tool):
    result = run(settings_file, "backup", "--yes")

    assert result.exit_code == 0, result.output
    assert tool.runs == 1
    assert len(manager.history(sync_profile.id)) == 1

    history = run(settings_file, "history")
    assert history.exit_code == 0, history.output
    assert "Operations: 1" in history.output


def test_profiles_list_and_configure(settings_file, manager, sync_profile, tmp_path):
    pictures = tmp_path / "Pictures"
    pictures.mkdir()

    listed = run(settings_file, "profiles", "list")
    assert listed.exit_code == 0, listed.output
    assert "Jane" in listed.output

    configured = run(settings_file, "profiles", "configure", "--source", str(pictures), "--mode", "copy")
    assert configured.exit_code == 0, configured.output
    profile = manager.provisioner.active_profile()
    assert profile.sources == [str(pictures.resolve())]
    assert profile.mode == BackupMode.COPY


def test_schedule_enable_and_disable(settings_file, manager, sync_profile, settings):
    RcloneConfigWriter(settings.scheduled_rclone_conf).write("AKIA", "secret", "us-east-1")

    enabled = run(settings_file, "schedule", "enable", "--frequency", "weekly", "--day", "1", "--time", "14:30")
    assert enabled.exit_code == 0, enabled.output
    assert "Weekly on Monday at 14:30" in enabled.output

    disabled = run(settings_file, "schedule", "disable")
    assert disabled.exit_code == 0, disabled.output
    schedule = manager.profile_store.get_schedule(sync_profile.id)
    assert schedule.enabled is False
    assert schedule.next_run is None


def test_schedule_enable_rejects_a_bad_time(settings_file, manager, sync_profile):
    result = run(settings_file, "schedule", "enable", "--time", "25:00")

    assert result.exit_code == 1
    assert "Time out of range" in result.output


def test_revoke_removes_the_service_credential(settings_file, manager, sync_profile, settings):
    CredentialStore(settings.config_dir).put("sub-jane", DummyIssuer().result)

    result = run(settings_file, "revoke", "--yes")

    assert result.exit_code == 0, result.output
    assert "Service credential removed" in result.output
    assert CredentialStore(settings.config_dir).get("sub-jane") is None


def test_status_reports_issuance_tooling_and_stored_credentials(settings_file, manager, sync_profile, settings):
    CredentialStore(settings.config_dir).put("sub-jane", DummyIssuer().result)

    result = run(settings_file, "status")

    assert result.exit_code == 0, result.output
    assert "Issuance endpoint: configured" in result.output
    assert "Stored service credentials: 1" in result.output
    assert "rclone: ✅ rclone v1.66.0" in result.output
    assert "rclone config: ❌ missing or unreadable" in result.output
    assert "Jane (User)" in result.output
