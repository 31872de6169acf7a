import subprocess
from typing import Callable, List, Optional, Tuple

import pytest
from jose import jwt

from cloud_backup.config.settings import AppSettings, CognitoSettings
from cloud_backup.models import FederatedCredential, ServiceCredential, Session
from cloud_backup.storage.profile_store import ProfileStore

ISSUANCE_URL = "https://issuer.example.com/create-user"


def make_id_token(sub: str, email: str, groups: Optional[List[str]] = None) -> str:
    claims = {"sub": sub, "email": email, "token_use": "id"}
    if groups:
        claims["cognito:groups"] = groups
    return jwt.encode(claims, "test-secret", algorithm="HS256")


def make_session(sub: str = "sub-jane", email: str = "jane@acme.com",
                 groups: Optional[List[str]] = None) -> Session:
    return Session(
        subject_id=sub,
        email=email,
        groups=groups or [],
        id_token=make_id_token(sub, email, groups),
        access_token=f"access-{sub}",
    )


def make_federated(key: str = "ASIAFEDERATED") -> FederatedCredential:
    return FederatedCredential(access_key_id=key, secret_key="fed-secret", session_token="fed-token")


def make_service(username: str = "backup-user-jane") -> ServiceCredential:
    return ServiceCredential(
        access_key_id="AKIASERVICE",
        secret_key="svc-secret",
        region="us-east-1",
        service_username=username,
        bucket="acme-backups",
        prefix="users/sub-jane",
    )


class FakeRunner:
    """Records argument lists and answers them with ``(returncode, stdout, stderr)``."""

    def __init__(self, handler: Optional[Callable[[List[str]], Tuple[int, str, str]]] = None):
        self.handler = handler
        self.calls: List[List[str]] = []

    def __call__(self, args: List[str]) -> subprocess.CompletedProcess:
        self.calls.append(list(args))
        returncode, stdout, stderr = self.handler(args) if self.handler else (0, "", "")
        return subprocess.CompletedProcess(args, returncode, stdout, stderr)


@pytest.fixture
def settings(tmp_path) -> AppSettings:
    return AppSettings(
        cognito=CognitoSettings(
            region="us-east-1",
            user_pool_id="us-east-1_TestPool",
            app_client_id="client123",
            identity_pool_id="us-east-1:11111111-2222-3333-4444-555555555555",
        ),
        bucket_name="acme-backups",
        issuance_url=ISSUANCE_URL,
        config_dir=tmp_path / "config",
    )


@pytest.fixture
def profile_store(settings) -> ProfileStore:
    return ProfileStore(settings.config_file)
