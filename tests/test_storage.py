"""Tests for JSON document persistence."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from omnibot.storage import JsonDocument


class TestJsonDocument:
    """Tests for JsonDocument."""

    def test_missing_file(self, tmp_path: Path) -> None:
        doc = JsonDocument(tmp_path / "missing.json")
        assert doc.exists() is False
        assert doc.load() == {}

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.json"
        path.write_text("   ")
        assert JsonDocument(path).load() == {}

    def test_corrupt_file(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("{oops")
        assert JsonDocument(path).load() == {}

    def test_non_object(self, tmp_path: Path) -> None:
        path = tmp_path / "list.json"
        path.write_text("[1, 2, 3]")
        assert JsonDocument(path).load() == {}

    def test_save_and_load(self, tmp_path: Path) -> None:
        """Saved documents round-trip and create parent directories."""
        doc = JsonDocument(tmp_path / "nested" / "state.json")
        doc.save({"b": 2, "a": [1]})

        assert doc.exists() is True
        assert doc.load() == {"a": [1], "b": 2}

    def test_save_leaves_no_temp_files(self, tmp_path: Path) -> None:
        doc = JsonDocument(tmp_path / "state.json")
        doc.save({"x": 1})
        doc.save({"x": 2})
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_failed_save_keeps_previous_content(self, tmp_path: Path) -> None:
        """A write that fails midway never clobbers the existing file."""
        path = tmp_path / "state.json"
        doc = JsonDocument(path)
        doc.save({"x": 1})

        with patch("omnibot.storage.json.dump", side_effect=TypeError("not serializable")):
            with pytest.raises(TypeError):
                doc.save({"x": object()})

        assert json.loads(path.read_text()) == {"x": 1}
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]
