"""Derive the local backup profile for a signed-in identity."""

import logging
from typing import List, Optional

from pydantic import ValidationError as ModelValidationError

from ..config.settings import AppSettings
from ..exceptions import ValidationError
from ..models import BackupMode, FederatedCredential, Profile, ProfileRole, Session
from ..storage.profile_store import ProfileStore

logger = logging.getLogger(__name__)

USER_PREFIX_ROOT = "users"


def scope_for(role: ProfileRole, subject_id: str) -> str:
    """Prefix a profile of the given role may use: the whole bucket for admins."""
    if role == ProfileRole.ADMIN:
        return ""
    return f"{USER_PREFIX_ROOT}/{subject_id}"


class ProfileProvisioner:
    """Creates, reconciles and selects profiles in the profile store."""

    def __init__(self, profile_store: ProfileStore, settings: AppSettings, interactive_config=None):
        """Initialize the provisioner.

        Args:
            profile_store: Persistent profile store
            settings: Application settings (tool paths, default flags, admin group)
            interactive_config: Optional RcloneConfigWriter for the federated credential
        """
        self.profile_store = profile_store
        self.settings = settings
        self.interactive_config = interactive_config

    def is_admin(self, session: Session) -> bool:
        return session.is_member(self.settings.admin_group)

    def _build(self, **fields) -> Profile:
        defaults = {
            "rclone_bin": self.settings.rclone_bin,
            "rclone_conf": str(self.settings.rclone_conf),
            "remote": self.settings.remote_name,
            "rclone_flags": list(self.settings.default_flags),
        }
        defaults.update({k: v for k, v in fields.items() if v is not None})
        try:
            return Profile(**defaults)
        except ModelValidationError as e:
            raise ValidationError(f"Invalid profile: {e}", field="profile") from e

    def get_or_create_profile(
        self,
        session: Session,
        is_admin: bool,
        bucket_name: str,
        federated_credential: Optional[FederatedCredential] = None,
    ) -> Profile:
        """Return the profile of the session's identity, creating it on first login.

        An existing profile has its role and prefix brought in line with the
        identity's current group membership. The returned profile is active.

        Args:
            session: Authenticated session
            is_admin: Whether the identity belongs to the administrator group
            bucket_name: Bucket new profiles back up to
            federated_credential: When given, written to the interactive rclone config

        Returns:
            The active profile for the identity
        """
        role = ProfileRole.ADMIN if is_admin else ProfileRole.USER
        prefix = scope_for(role, session.subject_id)

        profile = self.profile_store.find_by_user(session.subject_id)
        if profile is None:
            profile = self._build(
                name=session.email,
                role=role,
                user_id=session.subject_id,
                bucket=bucket_name,
                prefix=prefix,
            )
            self.profile_store.add_profile(profile, make_active=True)
            logger.info(f"✅ Created {role.value} profile for {session.email}")
        else:
            changed = False
            if profile.role != role or profile.prefix != prefix:
                logger.info(
                    f"Profile {profile.id} scope changed: {profile.role.value}/{profile.prefix or '<bucket>'}"
                    f" -> {role.value}/{prefix or '<bucket>'}"
                )
                profile = profile.model_copy(update={"role": role, "prefix": prefix})
                changed = True
            if not profile.bucket:
                profile.bucket = bucket_name
                changed = True
            if changed:
                self.profile_store.update_profile(profile)
            self.profile_store.set_active(profile.id)

        if federated_credential is not None:
            self.refresh_interactive_config(federated_credential)

        return profile

    def refresh_interactive_config(self, credential: FederatedCredential) -> None:
        """Write the federated credential to the rclone config interactive runs use."""
        if self.interactive_config is not None:
            self.interactive_config.write_federated(credential, self.settings.cognito.region)

    def select_active_profile(self, profile_id: str) -> Profile:
        """Make a profile the active one.

        Raises:
            ProfileNotFound: Unknown profile id
        """
        profile = self.profile_store.set_active(profile_id)
        logger.info(f"Active profile: {profile.name}")
        return profile

    def create_profile(
        self,
        name: str,
        role: ProfileRole,
        user_id: Optional[str] = None,
        bucket: Optional[str] = None,
        prefix: Optional[str] = None,
        sources: Optional[List[str]] = None,
        mode: BackupMode = BackupMode.COPY,
        make_active: bool = False,
    ) -> Profile:
        """Create a profile by hand (setup without sign-in)."""
        if not name.strip():
            raise ValidationError("Profile name is required", field="name")
        if prefix is None and user_id:
            prefix = scope_for(role, user_id)
        profile = self._build(
            name=name.strip(),
            role=role,
            user_id=user_id,
            bucket=bucket or self.settings.bucket_name,
            prefix=prefix,
            sources=sources,
            mode=mode,
        )
        return self.profile_store.add_profile(profile, make_active=make_active)

    def update_profile(self, profile: Profile) -> Profile:
        try:
            validated = Profile.model_validate(profile.model_dump())
        except ModelValidationError as e:
            raise ValidationError(f"Invalid profile: {e}", field="profile") from e
        return self.profile_store.update_profile(validated)

    def delete_profile(self, profile_id: str) -> None:
        self.profile_store.delete_profile(profile_id)

    def list_profiles(self) -> List[Profile]:
        return self.profile_store.list_profiles()

    def active_profile(self) -> Optional[Profile]:
        return self.profile_store.get_active()
