"""Two-tier access control: one admin, a privileged allow-list, and a mode flag.

In private mode only the admin and privileged users may use the bot; in
public mode everyone may. The mode is persisted so it survives restarts.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from enum import Enum
from pathlib import Path

from omnibot.exceptions import InvalidAccessModeError
from omnibot.storage import JsonDocument

logger = logging.getLogger(__name__)

STATE_FILENAME = "state.json"


class AccessMode(str, Enum):
    """Process-wide access mode."""

    PUBLIC = "public"
    PRIVATE = "private"


class AccessStateStore:
    """Persists the access mode in a JSON document.

    Invalid or unreadable state falls back to private mode and is rewritten.
    """

    def __init__(self, path: str | Path) -> None:
        """Initialize the store.

        Args:
            path: Location of the state document.
        """
        self._doc = JsonDocument(path)

    def load(self) -> AccessMode:
        """Read the persisted mode, repairing the file if needed."""
        state = self._doc.load()
        raw = state.get("access_mode")
        try:
            return AccessMode(raw)
        except ValueError:
            if self._doc.exists() or raw is not None:
                logger.warning("Invalid access mode in state, resetting", extra={"value": raw})
            self.save(AccessMode.PRIVATE)
            return AccessMode.PRIVATE

    def save(self, mode: AccessMode) -> None:
        """Persist the mode."""
        self._doc.save({"access_mode": mode.value})


class AccessControl:
    """Gates command execution on identity and the access mode.

    Attributes:
        admin_id: The single administrator's user ID.
        privileged_ids: Users admitted in private mode besides the admin.
    """

    def __init__(
        self,
        admin_id: int,
        privileged_ids: Iterable[int] = (),
        store: AccessStateStore | None = None,
    ) -> None:
        """Initialize access control.

        Args:
            admin_id: The administrator's user ID.
            privileged_ids: Additional users admitted in private mode.
            store: Persistence for the access mode; in-memory only when None.
        """
        self.admin_id = admin_id
        self.privileged_ids = frozenset(privileged_ids)
        self._store = store
        self._mode = store.load() if store is not None else AccessMode.PRIVATE

    @property
    def mode(self) -> AccessMode:
        """The current access mode."""
        return self._mode

    @property
    def is_public(self) -> bool:
        """Whether everyone is admitted."""
        return self._mode is AccessMode.PUBLIC

    def is_admin(self, user_id: int | None) -> bool:
        """Check whether a user is the administrator."""
        return user_id is not None and user_id == self.admin_id

    def is_authorized(self, user_id: int | None) -> bool:
        """Check whether a user may use gated commands under the current mode."""
        if self.is_public:
            return True
        if user_id is None:
            return False
        return user_id == self.admin_id or user_id in self.privileged_ids

    def set_access_mode(self, mode: AccessMode | str) -> AccessMode:
        """Change and persist the access mode.

        Args:
            mode: ``"public"`` or ``"private"``.

        Returns:
            The new mode.

        Raises:
            InvalidAccessModeError: If the mode is not recognised.
        """
        try:
            new_mode = AccessMode(mode)
        except ValueError:
            raise InvalidAccessModeError(str(mode)) from None

        if self._store is not None:
            self._store.save(new_mode)
        self._mode = new_mode

        logger.info("Access mode changed", extra={"access_mode": new_mode.value})
        return new_mode
