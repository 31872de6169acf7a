"""File utility functions."""

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Optional


class FileHelper:
    """Helper class for file operations."""

    _SIZE_PATTERN = re.compile(r"^([0-9]*\.?[0-9]+)\s*([KMGTP]?)(i?)(B?)$", re.IGNORECASE)
    _UNITS = {"": 0, "K": 1, "M": 2, "G": 3, "T": 4, "P": 5}

    @staticmethod
    def format_file_size(size_bytes: float) -> str:
        """Format file size in human readable format.

        Args:
            size_bytes: Size in bytes

        Returns:
            Formatted size string
        """
        if size_bytes == 0:
            return "0 B"

        size_names = ["B", "KB", "MB", "GB", "TB", "PB"]
        i = 0

        while size_bytes >= 1024 and i < len(size_names) - 1:
            size_bytes /= 1024.0
            i += 1

        return f"{size_bytes:.1f} {size_names[i]}"

    @classmethod
    def parse_size(cls, size_str: str) -> Optional[int]:
        """Parse a size as printed by the sync tool.

        Accepts plain byte counts and suffixed values such as ``1.5 MiB``,
        ``12Ki`` or ``3.2 GB`` (binary multiples either way).

        Args:
            size_str: Size text

        Returns:
            Size in bytes, or None if the text is not a size
        """
        text = size_str.replace(",", "").strip()
        match = cls._SIZE_PATTERN.match(text)
        if not match:
            return None
        number, unit = match.group(1), match.group(2).upper()
        return int(float(number) * (1024 ** cls._UNITS[unit]))

    @staticmethod
    def write_atomic(path: Path, content: str, mode: Optional[int] = None) -> None:
        """Write text through a temporary file and rename it into place.

        Args:
            path: Destination file
            content: Text to write
            mode: Optional permission bits applied before the rename
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(content)
            if mode is not None:
                os.chmod(tmp_name, mode)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    @classmethod
    def write_json_text(cls, path: Path, text: str, mode: Optional[int] = None) -> None:
        # Refuse to persist anything that would not load back.
        json.loads(text)
        cls.write_atomic(path, text, mode)

    @staticmethod
    def sanitize_key(key: str) -> str:
        """Validate a value used as a file name component.

        Args:
            key: Key such as a subject identifier

        Returns:
            The key unchanged

        Raises:
            ValueError: If the key is empty or could escape its directory
        """
        if not key or key in (".", "..") or any(sep in key for sep in ("/", "\\", "\0")):
            raise ValueError(f"Unsafe key: {key!r}")
        return key
