"""File-backed JSON documents for state that must survive restarts."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class JsonDocument:
    """A single JSON object persisted to disk with atomic replace.

    Reads never raise: a missing file yields an empty document and a corrupt
    file is logged and treated as empty so the caller can rewrite defaults.
    """

    def __init__(self, path: str | Path) -> None:
        """Initialize the document.

        Args:
            path: Location of the JSON file; parent directories are created on save.
        """
        self.path = Path(path)

    def exists(self) -> bool:
        """Check whether the file exists."""
        return self.path.is_file()

    def load(self) -> dict[str, Any]:
        """Read the document.

        Returns:
            The stored object, or an empty dict if missing or unreadable.
        """
        if not self.path.is_file():
            return {}

        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as e:
            logger.error("Failed to read state file", extra={"path": str(self.path), "error": str(e)})
            return {}

        if not raw.strip():
            return {}

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(
                "Corrupt state file, ignoring contents",
                extra={"path": str(self.path), "error": str(e)},
            )
            return {}

        if not isinstance(data, dict):
            logger.warning("State file is not a JSON object", extra={"path": str(self.path)})
            return {}
        return data

    def save(self, data: dict[str, Any]) -> None:
        """Write the document atomically.

        Args:
            data: JSON-serializable object.

        Raises:
            OSError: If the file cannot be written.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
