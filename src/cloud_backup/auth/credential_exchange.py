"""Exchange an authenticated session for federated and service storage credentials."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from ..exceptions import CredentialExchangeFailed, CredentialOrphaned
from ..models import FederatedCredential, ServiceCredential, Session
from ..storage.credential_store import CredentialStore

logger = logging.getLogger(__name__)

ORPHANED_MESSAGE = (
    "A service account already exists for this user but its credentials are not stored "
    "on this computer. Please contact your administrator to generate new access keys."
)


class ServiceCredentialIssuer:
    """Client of the backend function that mints one service credential per identity."""

    def __init__(self, url: str, session: Optional[requests.Session] = None, timeout: float = 30):
        """Initialize the issuer.

        Args:
            url: Issuance endpoint
            session: Optional requests session (tests pass a mock)
            timeout: Request timeout in seconds
        """
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout

    def _post(self, payload: Dict[str, str]) -> Dict[str, Any]:
        response = self.session.post(self.url, json=payload, timeout=self.timeout)
        try:
            data = response.json()
        except ValueError:
            data = None

        if not isinstance(data, dict):
            raise CredentialExchangeFailed(f"HTTP {response.status_code}: {response.text[:500]}")
        if not response.ok and not data.get("user_exists"):
            raise CredentialExchangeFailed(
                f"HTTP {response.status_code}: {data.get('error') or data.get('message') or response.text[:500]}"
            )
        return data

    async def issue(self, subject_id: str, email: str, access_token: str) -> ServiceCredential:
        """Request a service credential for an identity.

        Raises:
            CredentialOrphaned: The identity already has a credential
            CredentialExchangeFailed: Network or backend failure
        """
        # The backend reads the access token from the ``id_token`` field.
        payload = {"cognito_user_id": subject_id, "email": email, "id_token": access_token}
        try:
            data = await asyncio.to_thread(self._post, payload)
        except requests.RequestException as e:
            raise CredentialExchangeFailed(f"Issuance request failed: {e}") from e

        if not data.get("success"):
            if data.get("user_exists"):
                raise CredentialOrphaned(ORPHANED_MESSAGE, service_username=data.get("iam_username"))
            raise CredentialExchangeFailed(data.get("error") or "Failed to create service credential")

        try:
            return ServiceCredential(
                access_key_id=data["access_key_id"],
                secret_key=data["secret_access_key"],
                region=data["region"],
                service_username=data["iam_username"],
                bucket=data["bucket"],
                prefix=data.get("s3_prefix") or "",
            )
        except KeyError as e:
            raise CredentialExchangeFailed(f"Issuance response is missing {e}") from e


@dataclass
class ExchangeResult:
    """Outcome of exchanging one session for both credential kinds."""
    federated: Optional[FederatedCredential] = None
    service: Optional[ServiceCredential] = None
    unattended_available: bool = False
    federated_error: Optional[str] = None
    service_error: Optional[str] = None


class CredentialExchangeCoordinator:
    """Obtains and caches the two credential kinds for a signed-in identity.

    The federated credential is kept in memory only. The service credential is
    read from the credential store when cached and otherwise requested from
    the issuer, at most once per subject at a time.
    """

    def __init__(
        self,
        federated_service,
        credential_store: CredentialStore,
        issuer: Optional[ServiceCredentialIssuer] = None,
        unattended_registrar=None,
    ):
        """Initialize the coordinator.

        Args:
            federated_service: Collaborator with ``async exchange(identity_token)``
            credential_store: Persistent store of service credentials
            issuer: Issuance client, or None when no backend is configured
            unattended_registrar: Writes the config scheduled runs use
                (``write_service`` / ``remove``), optional
        """
        self.federated_service = federated_service
        self.credential_store = credential_store
        self.issuer = issuer
        self.unattended_registrar = unattended_registrar
        self.unattended_available = False
        self._federated: Optional[FederatedCredential] = None
        self._federated_subject: Optional[str] = None
        self._subject_locks: Dict[str, asyncio.Lock] = {}

    @property
    def federated_credential(self) -> Optional[FederatedCredential]:
        return self._federated

    async def derive_federated_credential(self, session: Session) -> FederatedCredential:
        """Exchange the session's identity token for a federated credential.

        Raises:
            CredentialExchangeFailed: The exchange failed; safe to retry
        """
        credential = await self.federated_service.exchange(session.id_token)
        self._federated = credential
        self._federated_subject = session.subject_id
        return credential

    def invalidate_federated(self) -> None:
        """Forget the federated credential after a storage call was refused."""
        if self._federated is not None:
            logger.info("Federated credential invalidated")
        self._federated = None
        self._federated_subject = None

    async def ensure_federated(self, session: Session) -> FederatedCredential:
        """Return a usable federated credential, deriving a new one only when needed."""
        credential = self._federated
        if credential is None or self._federated_subject != session.subject_id or credential.is_expired():
            return await self.derive_federated_credential(session)
        return credential

    def _lock_for(self, subject_id: str) -> asyncio.Lock:
        lock = self._subject_locks.get(subject_id)
        if lock is None:
            lock = asyncio.Lock()
            self._subject_locks[subject_id] = lock
        return lock

    def _register(self, credential: ServiceCredential) -> None:
        if self.unattended_registrar is not None:
            self.unattended_registrar.write_service(credential)

    async def get_or_create_service_credential(
        self, subject_id: str, email: str, access_token: str
    ) -> Optional[ServiceCredential]:
        """Return the subject's service credential, requesting one only if none is cached.

        Returns:
            The credential, or None when it is not cached and no issuer is
            configured (unattended operation unavailable)

        Raises:
            CredentialOrphaned: The backend already issued a credential that is not cached here
            CredentialExchangeFailed: The issuance call failed
        """
        async with self._lock_for(subject_id):
            cached = self.credential_store.get(subject_id)
            if cached is not None:
                logger.info(f"Using stored service credential {cached.service_username}")
                self._register(cached)
                self.unattended_available = True
                return cached

            if self.issuer is None:
                logger.info("No issuance endpoint configured; scheduled backups are unavailable")
                self.unattended_available = False
                return None

            logger.info(f"Requesting service credential for {email}")
            credential = await self.issuer.issue(subject_id, email, access_token)
            self.credential_store.put(subject_id, credential)
            self._register(credential)
            self.unattended_available = True
            logger.info(f"✅ Service credential {credential.service_username} issued and stored")
            return credential

    async def exchange(self, session: Session) -> ExchangeResult:
        """Obtain both credential kinds, federated first.

        A failed federated exchange or a failed issuance call is recorded in
        the result rather than raised. ``CredentialOrphaned`` is raised.
        """
        result = ExchangeResult()
        try:
            result.federated = await self.derive_federated_credential(session)
        except CredentialExchangeFailed as e:
            logger.warning(f"Federated credential exchange failed: {e}")
            result.federated_error = str(e)

        try:
            result.service = await self.get_or_create_service_credential(
                session.subject_id, session.email, session.access_token
            )
        except CredentialExchangeFailed as e:
            logger.warning(f"Service credential issuance failed: {e}")
            result.service_error = str(e)

        result.unattended_available = result.service is not None
        return result

    def revoke_service_credential(self, subject_id: str) -> bool:
        """Delete the cached service credential and the unattended runner config.

        Returns:
            True if a cached credential was removed
        """
        removed = self.credential_store.delete(subject_id)
        if self.unattended_registrar is not None:
            self.unattended_registrar.remove()
        self.unattended_available = False
        logger.info(f"Revoked service credential for subject {subject_id}")
        return removed
