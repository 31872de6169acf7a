"""Configuration settings for the backup application."""

import os
from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator

from ..exceptions import ConfigError
from ..models import DEFAULT_RCLONE_FLAGS

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "cloud-backup-app"
ENV_PREFIX = "CLOUD_BACKUP_"


class CognitoSettings(BaseModel):
    """Identity provider (user pool) and federation (identity pool) settings."""
    region: str = "us-east-1"
    user_pool_id: str
    app_client_id: str
    identity_pool_id: str
    client_secret: Optional[str] = None

    @property
    def provider_name(self) -> str:
        """Login key the identity pool expects for tokens from this user pool."""
        return f"cognito-idp.{self.region}.amazonaws.com/{self.user_pool_id}"


class AppSettings(BaseModel):
    """Main configuration class."""
    cognito: CognitoSettings
    bucket_name: str
    issuance_url: Optional[str] = None  # Backend function minting service credentials
    admin_group: str = "Admin"
    config_dir: Path = DEFAULT_CONFIG_DIR
    rclone_bin: str = "rclone"
    remote_name: str = "aws"
    default_flags: List[str] = Field(default_factory=lambda: list(DEFAULT_RCLONE_FLAGS))
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @field_validator("issuance_url")
    @classmethod
    def blank_url_is_unset(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("config_dir", mode="before")
    @classmethod
    def expand_config_dir(cls, v):
        return Path(v).expanduser()

    @property
    def config_file(self) -> Path:
        return self.config_dir / "config.json"

    @property
    def rclone_conf(self) -> Path:
        """Remote config holding the federated (interactive) credential."""
        return self.config_dir / "rclone.conf"

    @property
    def scheduled_rclone_conf(self) -> Path:
        """Remote config holding the service credential for unattended runs."""
        return self.config_dir / "rclone-scheduled.conf"

    @property
    def scripts_dir(self) -> Path:
        return self.config_dir / "scripts"

    @property
    def logs_dir(self) -> Path:
        return self.config_dir / "logs"

    @property
    def unattended_configured(self) -> bool:
        return self.issuance_url is not None

    @classmethod
    def from_yaml(cls, config_path: Union[str, Path]) -> "AppSettings":
        """Load settings from YAML file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        try:
            return cls(**config_data)
        except ValueError as e:
            raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e

    def to_yaml(self, config_path: Union[str, Path]) -> None:
        """Save settings to YAML file."""
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(self.model_dump(mode="json", exclude_none=True), f,
                           default_flow_style=False, indent=2)

    @classmethod
    def from_env(cls) -> "AppSettings":
        """Load settings from environment variables."""
        def env(name: str, default: Optional[str] = None) -> Optional[str]:
            return os.getenv(ENV_PREFIX + name, default)

        missing = [name for name in ("USER_POOL_ID", "APP_CLIENT_ID", "IDENTITY_POOL_ID", "BUCKET")
                   if not env(name)]
        if missing:
            raise ConfigError(
                "Missing environment variables: " + ", ".join(ENV_PREFIX + m for m in missing)
            )

        data = {
            'cognito': {
                'region': env('REGION', 'us-east-1'),
                'user_pool_id': env('USER_POOL_ID'),
                'app_client_id': env('APP_CLIENT_ID'),
                'identity_pool_id': env('IDENTITY_POOL_ID'),
                'client_secret': env('CLIENT_SECRET'),
            },
            'bucket_name': env('BUCKET'),
            'issuance_url': env('ISSUANCE_URL'),
            'admin_group': env('ADMIN_GROUP', 'Admin'),
            'rclone_bin': env('RCLONE_BIN', 'rclone'),
            'log_level': env('LOG_LEVEL', 'INFO'),
        }
        if env('CONFIG_DIR'):
            data['config_dir'] = env('CONFIG_DIR')
        return cls(**data)

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> "AppSettings":
        """Load from YAML when the file exists, otherwise from the environment."""
        if config_path is not None and Path(config_path).exists():
            return cls.from_yaml(config_path)
        return cls.from_env()
