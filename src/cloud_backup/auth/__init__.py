"""Authentication module for the identity provider and cloud storage."""

from .cloud_auth import BucketAccess, FederatedCredentialService
from .cognito_auth import Authenticator, AuthStage, CognitoIdentityProvider
from .credential_exchange import CredentialExchangeCoordinator, ExchangeResult, ServiceCredentialIssuer

__all__ = [
    "BucketAccess",
    "FederatedCredentialService",
    "Authenticator",
    "AuthStage",
    "CognitoIdentityProvider",
    "CredentialExchangeCoordinator",
    "ExchangeResult",
    "ServiceCredentialIssuer",
]
