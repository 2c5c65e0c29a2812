"""Atomic JSON/YAML persistence and append-only event logs."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Callable, TextIO

import yaml

from .utils import _now_iso

_YAML_SUFFIXES = {".yaml", ".yml"}


def _is_yaml(path: Path) -> bool:
    return path.suffix in _YAML_SUFFIXES


def _dump_yaml(data: dict[str, Any], handle: TextIO) -> None:
    yaml.safe_dump(data, handle, sort_keys=False, default_flow_style=False, allow_unicode=True)


def _dump_json(data: dict[str, Any], handle: TextIO) -> None:
    json.dump(data, handle, indent=2)


def _atomic_write(path: Path, writer: Callable[[TextIO], None]) -> None:
    """Write through a sibling temp file and rename it over `path`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as handle:
            writer(handle)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def _save_data(path: Path, data: dict[str, Any]) -> None:
    dump = _dump_yaml if _is_yaml(path) else _dump_json
    _atomic_write(path, lambda handle: dump(data, handle))


def _load_data(path: Path, default: dict[str, Any]) -> dict[str, Any]:
    data, _ = _load_data_with_error(path, default)
    return data


def _load_data_with_error(path: Path, default: dict[str, Any]) -> tuple[dict[str, Any], str | None]:
    """Load a JSON or YAML mapping and return ``(data, error_message)``.

    A missing or empty file yields `default` without an error. Parse
    failures and non-mapping documents are reported so callers can refuse
    to act on a corrupted registry, config or backlog file.
    """
    if not path.exists():
        return default, None
    try:
        text = path.read_text(encoding="utf-8")
        data = yaml.safe_load(text) if _is_yaml(path) else json.loads(text) if text.strip() else None
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except json.JSONDecodeError as exc:
        return default, f"{path.name}: JSONDecodeError: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"
    if data is None:
        return default, None
    if not isinstance(data, dict):
        return default, f"{path.name}: expected a mapping, got {type(data).__name__}"
    return data, None


def _append_event(events_path: Path, event: dict[str, Any]) -> None:
    """Append one JSON line, stamping a timestamp when the event has none."""
    events_path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"timestamp": _now_iso(), **event}
    with open(events_path, "a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, default=str) + "\n")
        handle.flush()
        os.fsync(handle.fileno())


def _tail_text(text: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    return text[-max_chars:]
