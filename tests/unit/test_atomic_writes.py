"""
Tests for atomic file replacement used by the JSON checkpoint store.
"""

import json
import os
import time
from unittest.mock import patch

import pytest
from shelfcrawl.utils.atomic import atomic_write_json, atomic_write_text, remove_stale_temp_files


@pytest.mark.unit
class TestAtomicWrites:
    def test_write_creates_parents(self, tmp_path):
        target = tmp_path / "nested" / "deep" / "state.json"

        atomic_write_json(target, {"step": 2, "names": ["Alpha", "Β"]})

        assert json.loads(target.read_text(encoding="utf-8")) == {"step": 2, "names": ["Alpha", "Β"]}

    def test_replaces_existing_content(self, tmp_path):
        target = tmp_path / "state.json"
        atomic_write_json(target, {"version": 1})
        atomic_write_json(target, {"version": 2})

        assert json.loads(target.read_text(encoding="utf-8")) == {"version": 2}
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_unserialisable_data(self, tmp_path):
        target = tmp_path / "state.json"

        with pytest.raises(ValueError):
            atomic_write_json(target, {"when": object()})

        assert not target.exists()

    def test_failed_replace_leaves_no_temp_file(self, tmp_path):
        target = tmp_path / "state.txt"
        target.write_text("old", encoding="utf-8")

        with patch("shelfcrawl.utils.atomic.os.replace", side_effect=OSError("busy")), patch(
            "shelfcrawl.utils.atomic.shutil.move", side_effect=OSError("still busy")
        ):
            with pytest.raises(OSError):
                atomic_write_text(target, "new")

        assert target.read_text(encoding="utf-8") == "old"
        assert list(tmp_path.glob("*.tmp")) == []
        assert list(tmp_path.glob(".*.tmp")) == []

    def test_remove_stale_temp_files(self, tmp_path):
        stale = tmp_path / ".state.json.abc.tmp"
        fresh = tmp_path / ".state.json.def.tmp"
        stale.write_text("x", encoding="utf-8")
        fresh.write_text("y", encoding="utf-8")
        old = time.time() - 4000
        os.utime(stale, (old, old))

        assert remove_stale_temp_files(tmp_path, "state.json") == 1
        assert not stale.exists()
        assert fresh.exists()
