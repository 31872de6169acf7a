"""Settings loading from YAML and the environment."""

import pytest

from cloud_backup.config.settings import AppSettings
from cloud_backup.exceptions import ConfigError

ENV = {
    "CLOUD_BACKUP_REGION": "eu-west-1",
    "CLOUD_BACKUP_USER_POOL_ID": "eu-west-1_Pool",
    "CLOUD_BACKUP_APP_CLIENT_ID": "client456",
    "CLOUD_BACKUP_IDENTITY_POOL_ID": "eu-west-1:pool",
    "CLOUD_BACKUP_BUCKET": "acme-eu",
}


def test_yaml_round_trip(settings, tmp_path):
    path = tmp_path / "settings.yaml"
    settings.to_yaml(path)

    loaded = AppSettings.from_yaml(path)

    assert loaded == settings
    assert loaded.cognito.provider_name == "cognito-idp.us-east-1.amazonaws.com/us-east-1_TestPool"


def test_derived_paths(settings):
    assert settings.config_file.name == "config.json"
    assert settings.rclone_conf.name == "rclone.conf"
    assert settings.scheduled_rclone_conf.name == "rclone-scheduled.conf"
    assert settings.scripts_dir.parent == settings.config_dir
    assert settings.logs_dir.parent == settings.config_dir
    assert settings.unattended_configured


def test_blank_issuance_url_is_unset(settings):
    updated = AppSettings(**{**settings.model_dump(), "issuance_url": "  "})
    assert updated.issuance_url is None
    assert not updated.unattended_configured


def test_missing_yaml_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        AppSettings.from_yaml(tmp_path / "missing.yaml")


def test_invalid_yaml_settings(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("bucket_name: only-a-bucket\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        AppSettings.from_yaml(path)


def test_from_env(monkeypatch, tmp_path):
    for name, value in ENV.items():
        monkeypatch.setenv(name, value)
    monkeypatch.setenv("CLOUD_BACKUP_CONFIG_DIR", str(tmp_path))

    settings = AppSettings.from_env()

    assert settings.cognito.region == "eu-west-1"
    assert settings.bucket_name == "acme-eu"
    assert settings.issuance_url is None
    assert settings.config_dir == tmp_path


def test_from_env_reports_missing_variables(monkeypatch):
    for name in ENV:
        monkeypatch.delenv(name, raising=False)

    with pytest.raises(ConfigError, match="CLOUD_BACKUP_USER_POOL_ID"):
        AppSettings.from_env()


def test_load_prefers_the_file(settings, tmp_path, monkeypatch):
    for name, value in ENV.items():
        monkeypatch.setenv(name, value)
    path = tmp_path / "settings.yaml"

    assert AppSettings.load(path).bucket_name == "acme-eu"

    settings.to_yaml(path)
    assert AppSettings.load(path).bucket_name == "acme-backups"
