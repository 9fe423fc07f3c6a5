"""Tests for access control and persisted access mode."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from omnibot.access import STATE_FILENAME, AccessControl, AccessMode, AccessStateStore
from omnibot.exceptions import InvalidAccessModeError, MalformedInputError

ADMIN = 1
FRIEND = 2
STRANGER = 3


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / STATE_FILENAME


class TestAccessControl:
    """Tests for AccessControl decisions."""

    def test_defaults_to_private(self) -> None:
        access = AccessControl(ADMIN, [FRIEND])
        assert access.mode is AccessMode.PRIVATE
        assert access.is_public is False

    def test_private_mode(self) -> None:
        """Only the admin and privileged users pass in private mode."""
        access = AccessControl(ADMIN, [FRIEND])
        assert access.is_authorized(ADMIN) is True
        assert access.is_authorized(FRIEND) is True
        assert access.is_authorized(STRANGER) is False
        assert access.is_authorized(None) is False

    def test_public_mode(self) -> None:
        access = AccessControl(ADMIN, [FRIEND])
        access.set_access_mode("public")
        assert access.is_authorized(STRANGER) is True

    def test_is_admin(self) -> None:
        access = AccessControl(ADMIN, [FRIEND])
        assert access.is_admin(ADMIN) is True
        assert access.is_admin(FRIEND) is False
        assert access.is_admin(None) is False

    def test_invalid_mode(self) -> None:
        access = AccessControl(ADMIN)
        with pytest.raises(InvalidAccessModeError) as exc_info:
            access.set_access_mode("sideways")
        assert exc_info.value.mode == "sideways"
        assert exc_info.value.usage == "/access [public|private]"
        assert isinstance(exc_info.value, MalformedInputError)
        assert access.mode is AccessMode.PRIVATE


class TestPersistence:
    """Tests for AccessStateStore."""

    def test_missing_file_creates_private_state(self, state_path: Path) -> None:
        store = AccessStateStore(state_path)
        assert store.load() is AccessMode.PRIVATE
        assert json.loads(state_path.read_text()) == {"access_mode": "private"}

    def test_mode_survives_restart(self, state_path: Path) -> None:
        """A mode change is visible to a freshly constructed controller."""
        AccessControl(ADMIN, store=AccessStateStore(state_path)).set_access_mode(AccessMode.PUBLIC)

        reloaded = AccessControl(ADMIN, store=AccessStateStore(state_path))

        assert reloaded.mode is AccessMode.PUBLIC

    def test_corrupt_file_resets_to_private(self, state_path: Path) -> None:
        state_path.write_text("{not json")

        assert AccessStateStore(state_path).load() is AccessMode.PRIVATE
        assert json.loads(state_path.read_text()) == {"access_mode": "private"}

    def test_unknown_value_resets_to_private(self, state_path: Path) -> None:
        state_path.write_text(json.dumps({"access_mode": "everyone"}))
        assert AccessStateStore(state_path).load() is AccessMode.PRIVATE
        assert json.loads(state_path.read_text()) == {"access_mode": "private"}

    def test_failed_change_is_not_persisted(self, state_path: Path) -> None:
        access = AccessControl(ADMIN, store=AccessStateStore(state_path))
        with pytest.raises(InvalidAccessModeError):
            access.set_access_mode("maybe")
        assert json.loads(state_path.read_text()) == {"access_mode": "private"}
