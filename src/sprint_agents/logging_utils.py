"""Configure loguru sinks and summarize verification logs."""

from __future__ import annotations

import json
import re
import sys
from pathlib import Path
from typing import Any, Iterable, Optional

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)
ROLE_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[role]} | {module}:{line} | {message}"

_FAILED_NODEID_RE = re.compile(r"^(?P<nodeid>\S+)\s+FAILED\b", re.M)
_FAILED_SUMMARY_RE = re.compile(r"^FAILED\s+(?P<nodeid>\S+)\b", re.M)
_ASSERT_RE = re.compile(r"^(E\s+.+)$", re.M)
_FAILURE_HEADER_RE = re.compile(r"^_{5,}\s*(.+?)\s*_{5,}$", re.M)


def configure_logging(
    level: str = "INFO",
    *,
    log_dir: Optional[Path] = None,
    roles: Iterable[str] = (),
) -> None:
    """Configure loguru with a stderr sink and optional per-role log files.

    Role files only receive records emitted inside
    ``logger.contextualize(role=...)`` for that role.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    if log_dir is None:
        return
    log_dir.mkdir(parents=True, exist_ok=True)
    for role in roles:
        logger.add(
            log_dir / f"{role}-agent.log",
            level=level.upper(),
            format=ROLE_FILE_FORMAT,
            filter=lambda record, role=role: record["extra"].get("role") == role,
            enqueue=True,
        )


def summarize_pytest_failures(log_text: str, max_failed: int = 5) -> dict[str, object]:
    """Summarize pytest failures from a raw log.

    Args:
        log_text: Full pytest output text.
        max_failed: Maximum number of `FAILED ...` entries to capture.

    Returns:
        A dictionary with keys `failed`, `headline`, and `first_error`.
    """
    if not log_text:
        return {"failed": [], "headline": None, "first_error": None}

    failed: list[str] = []
    seen: set[str] = set()
    for regex in (_FAILED_NODEID_RE, _FAILED_SUMMARY_RE):
        for match in regex.finditer(log_text):
            nodeid = (match.group("nodeid") or "").strip()
            if not nodeid or nodeid in seen:
                continue
            seen.add(nodeid)
            failed.append(nodeid)
            if len(failed) >= max_failed:
                break
        if len(failed) >= max_failed:
            break

    m_err = _ASSERT_RE.search(log_text)
    first_error = m_err.group(1).strip() if m_err else None

    m_head = _FAILURE_HEADER_RE.search(log_text)
    headline = m_head.group(1).strip() if m_head else None

    return {"failed": failed, "headline": headline, "first_error": first_error}


def failure_digest(log_text: str) -> str:
    """Render a short human-readable prefix for a failing test log."""
    summary = summarize_pytest_failures(log_text)
    lines: list[str] = []
    failed = summary.get("failed") or []
    if failed:
        lines.append("Failing tests: " + ", ".join(str(item) for item in failed))
    if summary.get("first_error"):
        lines.append(f"First error: {summary['first_error']}")
    return "\n".join(lines)


def pretty(obj: Any) -> str:
    try:
        return json.dumps(obj, indent=2, sort_keys=True, default=str)
    except TypeError:
        return str(obj)
