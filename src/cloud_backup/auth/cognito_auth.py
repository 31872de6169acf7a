"""Cognito user pool sign-in: provider client and challenge-response state machine."""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from jose import JWTError, jwt

from ..config.settings import CognitoSettings
from ..exceptions import (
    InvalidChallengeResponse,
    InvalidCredentials,
    OperationInProgress,
    ProviderError,
    ValidationError,
)
from ..models import Session

logger = logging.getLogger(__name__)

SECOND_FACTOR_CHALLENGES = {
    "SOFTWARE_TOKEN_MFA": "SOFTWARE_TOKEN_MFA_CODE",
    "SMS_MFA": "SMS_MFA_CODE",
}
NEW_PASSWORD_CHALLENGE = "NEW_PASSWORD_REQUIRED"
ATTRIBUTE_PREFIX = "userAttributes."

# Error codes that mean "the answer was wrong", not "the service failed".
REJECTION_CODES = {
    "NotAuthorizedException",
    "UserNotFoundException",
    "UserNotConfirmedException",
    "PasswordResetRequiredException",
    "CodeMismatchException",
    "ExpiredCodeException",
    "InvalidPasswordException",
    "InvalidParameterException",
}


@dataclass(frozen=True)
class AuthSuccess:
    session: Session


@dataclass(frozen=True)
class SecondFactorRequired:
    challenge_name: str = "SOFTWARE_TOKEN_MFA"


@dataclass(frozen=True)
class NewPasswordRequired:
    required_attributes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AuthRejected:
    reason: str
    session_expired: bool = False


AuthOutcome = Union[AuthSuccess, SecondFactorRequired, NewPasswordRequired, AuthRejected]


@dataclass
class _PendingChallenge:
    username: str
    challenge_name: str
    session: str


def normalize_attribute(name: str) -> str:
    """Strip the ``userAttributes.`` prefix Cognito puts on attribute names."""
    if name.startswith(ATTRIBUTE_PREFIX):
        return name[len(ATTRIBUTE_PREFIX):]
    return name


def session_from_tokens(auth_result: Dict[str, Any], fallback_email: str = "") -> Session:
    """Build a Session from a Cognito ``AuthenticationResult``.

    The identity token's claims are read without verifying the signature:
    the token was just received from the provider over TLS, and anything
    that grants access downstream verifies it again.

    Args:
        auth_result: ``AuthenticationResult`` dictionary
        fallback_email: Login name used when the token has no email claim

    Returns:
        Session for the signed-in subject
    """
    id_token = auth_result.get("IdToken", "")
    try:
        claims = jwt.get_unverified_claims(id_token)
    except JWTError as e:
        raise ProviderError(f"Identity token could not be read: {e}") from e

    subject_id = claims.get("sub")
    if not subject_id:
        raise ProviderError("Identity token has no subject claim")

    return Session(
        subject_id=subject_id,
        email=claims.get("email") or fallback_email,
        groups=list(claims.get("cognito:groups", [])),
        id_token=id_token,
        access_token=auth_result.get("AccessToken", ""),
        refresh_token=auth_result.get("RefreshToken", ""),
    )


class CognitoIdentityProvider:
    """Identity provider collaborator backed by a Cognito user pool.

    Keeps the pending challenge of the current sign-in attempt so that
    ``submit_second_factor`` and ``submit_new_password`` can answer it.
    """

    def __init__(self, settings: CognitoSettings, client=None):
        """Initialize the provider.

        Args:
            settings: User pool settings
            client: Optional pre-built ``cognito-idp`` client
        """
        self.settings = settings
        self._client = client
        self._pending: Optional[_PendingChallenge] = None
        # Bumped by reset(); answers of older attempts leave _pending alone
        self._epoch = 0

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client('cognito-idp', region_name=self.settings.region)
        return self._client

    def _secret_hash(self, username: str) -> Optional[str]:
        if not self.settings.client_secret:
            return None
        digest = hmac.new(
            self.settings.client_secret.encode('utf-8'),
            (username + self.settings.app_client_id).encode('utf-8'),
            hashlib.sha256,
        ).digest()
        return base64.b64encode(digest).decode()

    def _with_secret(self, params: Dict[str, str], username: str) -> Dict[str, str]:
        secret_hash = self._secret_hash(username)
        if secret_hash:
            params["SECRET_HASH"] = secret_hash
        return params

    async def _call(self, method: str, **kwargs) -> Union[Dict[str, Any], AuthRejected]:
        client = self._get_client()
        try:
            return await asyncio.to_thread(getattr(client, method), **kwargs)
        except ClientError as e:
            error = e.response.get("Error", {})
            code = error.get("Code", "")
            message = error.get("Message", str(e))
            if code in REJECTION_CODES:
                expired = code == "NotAuthorizedException" and "session" in message.lower()
                logger.info(f"Cognito rejected {method}: {code}")
                return AuthRejected(reason=message, session_expired=expired)
            raise ProviderError(message, code=code) from e
        except BotoCoreError as e:
            raise ProviderError(str(e)) from e

    def _set_pending(self, epoch: int, pending: Optional[_PendingChallenge]) -> None:
        if epoch != self._epoch:
            logger.debug("Ignoring challenge state from an abandoned sign-in attempt")
            return
        self._pending = pending

    def _interpret(self, username: str, response: Dict[str, Any], epoch: int) -> AuthOutcome:
        if "AuthenticationResult" in response:
            self._set_pending(epoch, None)
            session = session_from_tokens(response["AuthenticationResult"], fallback_email=username)
            logger.info(f"✅ Signed in as {session.email}")
            return AuthSuccess(session)

        challenge = response.get("ChallengeName", "")
        params = response.get("ChallengeParameters", {}) or {}
        challenge_user = params.get("USER_ID_FOR_SRP", username)

        if challenge in SECOND_FACTOR_CHALLENGES:
            self._set_pending(epoch, _PendingChallenge(challenge_user, challenge, response.get("Session", "")))
            logger.info(f"Second factor required ({challenge})")
            return SecondFactorRequired(challenge_name=challenge)

        if challenge == NEW_PASSWORD_CHALLENGE:
            self._set_pending(epoch, _PendingChallenge(challenge_user, challenge, response.get("Session", "")))
            try:
                required = json.loads(params.get("requiredAttributes", "[]") or "[]")
            except json.JSONDecodeError:
                required = []
            attributes = tuple(normalize_attribute(a) for a in required)
            logger.info(f"New password required (attributes: {list(attributes)})")
            return NewPasswordRequired(required_attributes=attributes)

        raise ProviderError(f"Unsupported authentication challenge: {challenge or 'none'}")

    def _require_pending(self, *names: str) -> _PendingChallenge:
        if self._pending is None or self._pending.challenge_name not in names:
            raise ProviderError("No matching authentication challenge is pending")
        return self._pending

    async def authenticate(self, username: str, password: str) -> AuthOutcome:
        """Start a sign-in with email and password."""
        self.reset()
        epoch = self._epoch
        response = await self._call(
            'initiate_auth',
            AuthFlow='USER_PASSWORD_AUTH',
            ClientId=self.settings.app_client_id,
            AuthParameters=self._with_secret({'USERNAME': username, 'PASSWORD': password}, username),
        )
        if isinstance(response, AuthRejected):
            return response
        return self._interpret(username, response, epoch)

    async def submit_second_factor(self, code: str) -> AuthOutcome:
        """Answer a pending MFA challenge."""
        pending = self._require_pending(*SECOND_FACTOR_CHALLENGES)
        epoch = self._epoch
        responses = {'USERNAME': pending.username, SECOND_FACTOR_CHALLENGES[pending.challenge_name]: code}
        response = await self._call(
            'respond_to_auth_challenge',
            ClientId=self.settings.app_client_id,
            ChallengeName=pending.challenge_name,
            Session=pending.session,
            ChallengeResponses=self._with_secret(responses, pending.username),
        )
        if isinstance(response, AuthRejected):
            return response
        return self._interpret(pending.username, response, epoch)

    async def submit_new_password(self, password: str, attributes: Dict[str, str]) -> AuthOutcome:
        """Answer a pending forced-password-reset challenge."""
        pending = self._require_pending(NEW_PASSWORD_CHALLENGE)
        epoch = self._epoch
        responses = {'USERNAME': pending.username, 'NEW_PASSWORD': password}
        for name, value in attributes.items():
            responses[ATTRIBUTE_PREFIX + normalize_attribute(name)] = value
        response = await self._call(
            'respond_to_auth_challenge',
            ClientId=self.settings.app_client_id,
            ChallengeName=NEW_PASSWORD_CHALLENGE,
            Session=pending.session,
            ChallengeResponses=self._with_secret(responses, pending.username),
        )
        if isinstance(response, AuthRejected):
            return response
        return self._interpret(pending.username, response, epoch)

    def reset(self) -> None:
        """Forget any pending challenge and disown answers still in flight."""
        self._epoch += 1
        self._pending = None


class AuthStage(str, Enum):
    AWAITING_CREDENTIALS = "AwaitingCredentials"
    CHALLENGE_SECOND_FACTOR = "ChallengeSecondFactor"
    CHALLENGE_NEW_PASSWORD = "ChallengeNewPassword"
    AUTHENTICATED = "Authenticated"
    FAILED = "Failed"


@dataclass(frozen=True)
class AwaitingCredentials:
    stage: AuthStage = field(default=AuthStage.AWAITING_CREDENTIALS, init=False)


@dataclass(frozen=True)
class ChallengeSecondFactor:
    username: str
    stage: AuthStage = field(default=AuthStage.CHALLENGE_SECOND_FACTOR, init=False)


@dataclass(frozen=True)
class ChallengeNewPassword:
    username: str
    required_attributes: Tuple[str, ...] = ()
    stage: AuthStage = field(default=AuthStage.CHALLENGE_NEW_PASSWORD, init=False)


@dataclass(frozen=True)
class Authenticated:
    session: Session
    stage: AuthStage = field(default=AuthStage.AUTHENTICATED, init=False)


@dataclass(frozen=True)
class Failed:
    """The challenge session expired; only ``cancel()`` leaves this state."""
    username: str
    reason: str
    stage: AuthStage = field(default=AuthStage.FAILED, init=False)


AuthState = Union[AwaitingCredentials, ChallengeSecondFactor, ChallengeNewPassword, Authenticated, Failed]

MIN_PASSWORD_LENGTH = 8
SECOND_FACTOR_PATTERN = re.compile(r"^\d{6}$")


class Authenticator:
    """Drives one sign-in through the provider's challenge sequence.

    Every submit validates its input locally, calls the provider at most
    once and returns the resulting state. Only one call may be in flight at
    a time. ``cancel()`` starts a new attempt; a provider answer that
    arrives for an attempt that has been cancelled is discarded.
    """

    def __init__(self, provider):
        """Initialize the authenticator.

        Args:
            provider: Identity provider collaborator (``authenticate``,
                ``submit_second_factor``, ``submit_new_password``, ``reset``)
        """
        self.provider = provider
        self._state: AuthState = AwaitingCredentials()
        self._generation = 0
        self._in_flight: Optional[int] = None

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        if isinstance(self._state, Authenticated):
            return self._state.session
        return None

    @property
    def busy(self) -> bool:
        return self._in_flight == self._generation

    def _expect(self, *states: type) -> None:
        if not isinstance(self._state, states):
            raise ValidationError(
                f"Not expected while in state {self._state.stage.value}", field="state"
            )

    async def _call(self, fn, *args) -> Optional[AuthOutcome]:
        """Run one provider call; None means the attempt was cancelled meanwhile."""
        if self.busy:
            raise OperationInProgress("An authentication request is already in progress")

        generation = self._generation
        self._in_flight = generation
        try:
            outcome = await fn(*args)
        except Exception:
            if generation != self._generation:
                logger.info("Discarding provider error for a cancelled sign-in attempt")
                return None
            raise
        finally:
            if self._in_flight == generation:
                self._in_flight = None

        if generation != self._generation:
            logger.info("Discarding provider answer for a cancelled sign-in attempt")
            return None
        return outcome

    def _enter(self, state: AuthState) -> AuthState:
        logger.debug(f"Authentication state: {self._state.stage.value} -> {state.stage.value}")
        self._state = state
        return state

    def _accept_success(self, outcome: AuthOutcome) -> Optional[AuthState]:
        if isinstance(outcome, AuthSuccess):
            return self._enter(Authenticated(outcome.session))
        return None

    async def submit_password(self, email: str, password: str) -> AuthState:
        """Start signing in with email and password.

        Raises:
            ValidationError: Empty email or password
            InvalidCredentials: The provider rejected the pair
            ProviderError: The provider or network failed
        """
        self._expect(AwaitingCredentials)
        email = (email or "").strip()
        if not email:
            raise ValidationError("Email is required", field="email")
        if not password:
            raise ValidationError("Password is required", field="password")

        outcome = await self._call(self.provider.authenticate, email, password)
        if outcome is None:
            return self._state

        state = self._accept_success(outcome)
        if state is not None:
            return state
        if isinstance(outcome, SecondFactorRequired):
            return self._enter(ChallengeSecondFactor(username=email))
        if isinstance(outcome, NewPasswordRequired):
            attributes = tuple(normalize_attribute(a) for a in outcome.required_attributes)
            return self._enter(ChallengeNewPassword(username=email, required_attributes=attributes))
        if isinstance(outcome, AuthRejected):
            raise InvalidCredentials(outcome.reason or "Incorrect email or password")
        raise ProviderError(f"Unexpected provider answer: {outcome!r}")

    async def submit_second_factor(self, code: str) -> AuthState:
        """Answer the second-factor challenge with a 6-digit code."""
        self._expect(ChallengeSecondFactor)
        code = (code or "").strip()
        if not SECOND_FACTOR_PATTERN.match(code):
            raise ValidationError("Verification code must be 6 digits", field="code")

        outcome = await self._call(self.provider.submit_second_factor, code)
        if outcome is None:
            return self._state

        state = self._accept_success(outcome)
        if state is not None:
            return state
        if isinstance(outcome, AuthRejected):
            return self._reject_challenge(outcome, "Invalid verification code")
        raise ProviderError(f"Unexpected provider answer: {outcome!r}")

    async def submit_new_password(
        self,
        new_password: str,
        confirm_password: str,
        extra_attributes: Optional[Dict[str, str]] = None,
    ) -> AuthState:
        """Answer the forced-password-reset challenge.

        Args:
            new_password: Replacement password
            confirm_password: Must equal ``new_password``
            extra_attributes: Attribute values, e.g. ``{"phone_number": "+15551234567"}``

        Raises:
            ValidationError: Password too short, mismatch, or a required attribute is missing
            InvalidChallengeResponse: The provider rejected the new password
        """
        self._expect(ChallengeNewPassword)
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters", field="new_password"
            )
        if new_password != confirm_password:
            raise ValidationError("Passwords do not match", field="confirm_password")

        attributes = {
            normalize_attribute(name): value.strip()
            for name, value in (extra_attributes or {}).items()
            if value and value.strip()
        }
        for required in self._state.required_attributes:
            if required not in attributes:
                raise ValidationError(f"{required} is required", field=required)

        outcome = await self._call(self.provider.submit_new_password, new_password, attributes)
        if outcome is None:
            return self._state

        state = self._accept_success(outcome)
        if state is not None:
            return state
        if isinstance(outcome, SecondFactorRequired):
            return self._enter(ChallengeSecondFactor(username=self._state.username))
        if isinstance(outcome, AuthRejected):
            return self._reject_challenge(outcome, "New password was rejected")
        raise ProviderError(f"Unexpected provider answer: {outcome!r}")

    def _reject_challenge(self, outcome: AuthRejected, default: str) -> AuthState:
        reason = outcome.reason or default
        if outcome.session_expired:
            logger.warning(f"Authentication challenge expired: {reason}")
            return self._enter(Failed(username=self._state.username, reason=reason))
        raise InvalidChallengeResponse(reason)

    def cancel(self) -> AuthState:
        """Abandon the current attempt and return to AwaitingCredentials.

        Has no effect once authenticated; use ``sign_out()`` for that.
        """
        if isinstance(self._state, Authenticated):
            return self._state
        self._generation += 1
        self.provider.reset()
        return self._enter(AwaitingCredentials())

    def sign_out(self) -> AuthState:
        """Drop the session."""
        self._generation += 1
        self.provider.reset()
        if self._state.stage != AuthStage.AWAITING_CREDENTIALS:
            logger.info("Signed out")
        return self._enter(AwaitingCredentials())
