"""Dry-run preview and the confirmation gate in front of deleting syncs."""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from ..exceptions import ValidationError
from ..models import BackupMode, ChangeSet, Operation, Profile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfirmationRequired:
    """The run would delete remote files and has not been confirmed."""
    change_set: ChangeSet

    @property
    def deletions(self) -> int:
        return len(self.change_set.files_to_delete)


class SyncGate:
    """Runs backups, previewing Sync-mode runs and holding back unconfirmed deletions.

    Copy mode never deletes remote files, so Copy-mode runs go straight to
    the executor.
    """

    def __init__(self, tool, executor=None):
        """Initialize the gate.

        Args:
            tool: Sync tool collaborator providing ``async run_dry_run(profile)``
            executor: Collaborator providing ``async run(profile)``; defaults to ``tool``
        """
        self.tool = tool
        self.executor = executor or tool

    async def preview(self, profile: Profile) -> ChangeSet:
        """Compute what a sync would change, without changing anything.

        Raises:
            ValidationError: The profile is not in Sync mode
        """
        if profile.mode != BackupMode.SYNC:
            raise ValidationError("Preview is only available for Sync mode", field="mode")
        return await self.tool.run_dry_run(profile)

    async def confirm_and_run(
        self,
        profile: Profile,
        change_set: Optional[ChangeSet] = None,
        confirmed: bool = False,
    ) -> Union[Operation, ConfirmationRequired]:
        """Run a backup unless it would delete remote files without confirmation.

        Args:
            profile: Profile to back up
            change_set: Preview the operator has seen; computed when omitted (Sync mode)
            confirmed: Whether the operator explicitly confirmed the deletions

        Returns:
            The executor's Operation, or ConfirmationRequired when the change
            set has deletions and ``confirmed`` is false
        """
        if profile.mode == BackupMode.SYNC:
            if change_set is None:
                change_set = await self.preview(profile)
            if change_set.has_deletions and not confirmed:
                logger.info(
                    f"Sync of {profile.name} would delete {len(change_set.files_to_delete)} remote "
                    f"files; waiting for confirmation"
                )
                return ConfirmationRequired(change_set)

        return await self.executor.run(profile)
