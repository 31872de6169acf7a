"""Local store for long-lived service credentials, keyed by subject identifier."""

import json
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError as ModelValidationError

from ..exceptions import StorageError, ValidationError
from ..models import ServiceCredential
from ..utils.file_utils import FileHelper

logger = logging.getLogger(__name__)


class CredentialStore:
    """One JSON file per subject under the application config directory.

    Files are written atomically with owner-only permissions. Writes for the
    same subject are last-writer-wins; a subject's file name is derived from
    its identifier only, so one subject can never overwrite another's
    credential.
    """

    FILE_PREFIX = "iam-"

    def __init__(self, directory: Path):
        """Initialize the store.

        Args:
            directory: Directory holding the credential files
        """
        self.directory = Path(directory)

    def _path_for(self, subject_id: str) -> Path:
        try:
            FileHelper.sanitize_key(subject_id)
        except ValueError as e:
            raise ValidationError(str(e), field="subject_id") from e
        return self.directory / f"{self.FILE_PREFIX}{subject_id}.json"

    def get(self, subject_id: str) -> Optional[ServiceCredential]:
        """Return the cached credential for a subject, if any."""
        path = self._path_for(subject_id)
        if not path.exists():
            logger.debug(f"No stored service credential for subject {subject_id}")
            return None

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            credential = ServiceCredential(**data)
        except (OSError, json.JSONDecodeError, ModelValidationError) as e:
            raise StorageError(f"Failed to read stored credential {path}: {e}") from e

        logger.debug(f"Found stored service credential for subject {subject_id}")
        return credential

    def put(self, subject_id: str, credential: ServiceCredential) -> None:
        """Persist a credential for a subject, replacing any previous one."""
        path = self._path_for(subject_id)
        try:
            FileHelper.write_json_text(path, credential.model_dump_json(indent=2), mode=0o600)
        except OSError as e:
            raise StorageError(f"Failed to write credential file {path}: {e}") from e
        logger.info(f"Stored service credential {credential.service_username} for subject {subject_id}")

    def delete(self, subject_id: str) -> bool:
        """Remove a subject's credential.

        Returns:
            True if a credential was removed
        """
        path = self._path_for(subject_id)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as e:
            raise StorageError(f"Failed to delete credential file {path}: {e}") from e
        logger.info(f"Deleted service credential for subject {subject_id}")
        return True

    def subjects(self) -> List[str]:
        """List subjects with a stored credential."""
        if not self.directory.exists():
            return []
        return sorted(
            p.stem[len(self.FILE_PREFIX):]
            for p in self.directory.glob(f"{self.FILE_PREFIX}*.json")
        )
