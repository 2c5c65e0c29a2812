"""Tests for naming and parsing helpers."""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from sprint_agents.io_utils import _append_event, _load_data_with_error, _save_data
from sprint_agents.utils import _slugify, _split_list


class TestSlugify:
    def test_lowercases_and_hyphenates(self):
        assert _slugify("Add Login Page") == "add-login-page"

    def test_drops_punctuation(self):
        assert _slugify("Fix: crash in /api/v1 (urgent!)") == "fix-crash-in-apiv1-urgent"

    def test_collapses_whitespace(self):
        assert _slugify("  many   spaces\there ") == "many-spaces-here"

    def test_caps_length_without_trailing_hyphen(self):
        slug = _slugify("word " * 20)
        assert len(slug) <= 40
        assert not slug.endswith("-")

    def test_empty_title(self):
        assert _slugify("") == ""
        assert _slugify("!!!") == ""


def test_split_list_accepts_strings_and_sequences():
    assert _split_list("dev, qa,,po ") == ("dev", "qa", "po")
    assert _split_list(["dev", " qa "]) == ("dev", "qa")
    assert _split_list(None) == ()
    assert _split_list("ruff check .; mypy src", separators=";") == ("ruff check .", "mypy src")


def test_load_data_reports_corrupt_files(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text("roles: [dev\n")
    data, err = _load_data_with_error(path, {"default": True})
    assert data == {"default": True}
    assert err is not None and "YAMLError" in err


def test_save_and_load_yaml(tmp_path: Path):
    path = tmp_path / "nested" / "backlog.yaml"
    _save_data(path, {"tasks": [{"id": "T-1", "title": "Ä title"}]})
    data, err = _load_data_with_error(path, {})
    assert err is None
    assert data["tasks"][0]["title"] == "Ä title"


def test_append_event_adds_timestamp(tmp_path: Path):
    events = tmp_path / "events.jsonl"
    _append_event(events, {"event_type": "x"})
    _append_event(events, {"event_type": "y", "timestamp": "fixed"})
    lines = events.read_text().splitlines()
    assert len(lines) == 2
    assert '"timestamp"' in lines[0]
    assert '"fixed"' in lines[1]

