"""Storage credentials: the identity pool exchange and bucket access checks."""

import asyncio
import logging

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..config.settings import CognitoSettings
from ..exceptions import CredentialExchangeFailed
from ..models import FederatedCredential

logger = logging.getLogger(__name__)


class BucketAccess:
    """S3 access with a federated credential, checked against one profile's prefix."""

    def __init__(self, credential: FederatedCredential, region: str, client=None):
        self.credential = credential
        self.region = region
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                's3',
                aws_access_key_id=self.credential.access_key_id,
                aws_secret_access_key=self.credential.secret_key,
                aws_session_token=self.credential.session_token,
                region_name=self.region,
            )
        return self._client

    def can_list(self, bucket: str, prefix: str = "") -> bool:
        """List at most one key under ``prefix``; False when S3 refuses or is unreachable."""
        try:
            self.client.list_objects_v2(Bucket=bucket, Prefix=prefix, MaxKeys=1)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Cannot list s3://{bucket}/{prefix}: {e}")
            return False
        logger.debug(f"Listed s3://{bucket}/{prefix}")
        return True


class FederatedCredentialService:
    """Exchange a user pool identity token for temporary storage credentials.

    Uses the Cognito identity pool: ``GetId`` resolves the identity for the
    token, ``GetCredentialsForIdentity`` returns the temporary keys.
    """

    def __init__(self, settings: CognitoSettings, client=None):
        self.settings = settings
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client('cognito-identity', region_name=self.settings.region)
        return self._client

    def _exchange(self, identity_token: str) -> FederatedCredential:
        client = self._get_client()
        logins = {self.settings.provider_name: identity_token}

        identity = client.get_id(IdentityPoolId=self.settings.identity_pool_id, Logins=logins)
        identity_id = identity.get('IdentityId')
        if not identity_id:
            raise CredentialExchangeFailed("Identity pool returned no identity id")

        response = client.get_credentials_for_identity(IdentityId=identity_id, Logins=logins)
        creds = response.get('Credentials') or {}
        try:
            return FederatedCredential(
                access_key_id=creds['AccessKeyId'],
                secret_key=creds['SecretKey'],
                session_token=creds['SessionToken'],
                expiry=creds.get('Expiration'),
            )
        except KeyError as e:
            raise CredentialExchangeFailed(f"Identity pool response is missing {e}") from e

    async def exchange(self, identity_token: str) -> FederatedCredential:
        """Exchange an identity token for a FederatedCredential.

        Raises:
            CredentialExchangeFailed: The identity pool refused or could not be reached
        """
        try:
            credential = await asyncio.to_thread(self._exchange, identity_token)
        except ClientError as e:
            message = e.response.get('Error', {}).get('Message', str(e))
            raise CredentialExchangeFailed(f"Federated credential exchange failed: {message}") from e
        except BotoCoreError as e:
            raise CredentialExchangeFailed(f"Federated credential exchange failed: {e}") from e

        logger.info(f"Obtained federated credentials (expires {credential.expiry})")
        return credential
