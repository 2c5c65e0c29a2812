"""Provide the git helpers used by sandboxes and the publisher."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterable, Optional

from loguru import logger

from .cancellation import CancelToken
from .constants import (
    CONFLICT_MARKER_PREFIXES,
    DEFAULT_GIT_TIMEOUT_SECONDS,
    PUSH_REJECTED_MARKERS,
    STATE_DIR_NAME,
    UNMERGED_STATUS_CODES,
)
from .errors import CommandError, PushRejected
from .process import CommandResult, run_command

_IGNORED_PREFIXES = (f"{STATE_DIR_NAME}/",)


def _git(
    cwd: Path,
    *args: str,
    timeout: Optional[float] = DEFAULT_GIT_TIMEOUT_SECONDS,
    cancel: Optional[CancelToken] = None,
) -> CommandResult:
    return run_command(["git", *args], cwd=cwd, timeout=timeout, cancel=cancel)


def _git_is_repo(project_dir: Path) -> bool:
    result = _git(project_dir, "rev-parse", "--is-inside-work-tree")
    return result.ok and result.stdout.strip().lower() == "true"


def _git_current_branch(project_dir: Path) -> Optional[str]:
    result = _git(project_dir, "rev-parse", "--abbrev-ref", "HEAD")
    if not result.ok:
        return None
    return result.stdout.strip() or None


def _git_head_sha(project_dir: Path) -> Optional[str]:
    result = _git(project_dir, "rev-parse", "HEAD")
    if not result.ok:
        return None
    return result.stdout.strip() or None


def _git_branch_exists(project_dir: Path, branch: str) -> bool:
    return _git(project_dir, "show-ref", "--verify", "--quiet", f"refs/heads/{branch}").ok


def _git_remote_ref_exists(project_dir: Path, remote: str, branch: str) -> bool:
    return _git(project_dir, "show-ref", "--verify", "--quiet", f"refs/remotes/{remote}/{branch}").ok


def _git_has_remote(project_dir: Path, remote: str) -> bool:
    return _git(project_dir, "remote", "get-url", remote).ok


def _git_dir(project_dir: Path) -> Optional[str]:
    result = _git(project_dir, "rev-parse", "--git-dir")
    return result.stdout.strip() if result.ok else None


def _git_is_linked_worktree(project_dir: Path) -> bool:
    """True when `project_dir` is a linked worktree rather than the main checkout."""
    git_dir = _git_dir(project_dir) or ""
    return "/worktrees/" in git_dir.replace("\\", "/")


def _ensure_excluded(project_dir: Path, entry: str = f"{STATE_DIR_NAME}/") -> None:
    """Add `entry` to the repository's info/exclude so state files never show as changes."""
    result = _git(project_dir, "rev-parse", "--git-path", "info/exclude")
    if not result.ok:
        return
    exclude_path = Path(result.stdout.strip())
    if not exclude_path.is_absolute():
        exclude_path = project_dir / exclude_path
    try:
        contents = exclude_path.read_text() if exclude_path.exists() else ""
        lines = {line.strip().rstrip("/") for line in contents.splitlines()}
        if entry.strip().rstrip("/") in lines:
            return
        if contents and not contents.endswith("\n"):
            contents += "\n"
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        exclude_path.write_text(contents + entry + "\n")
    except OSError as exc:
        logger.warning("Unable to update {}: {}", exclude_path, exc)


def _git_status_entries(project_dir: Path) -> list[tuple[str, str]]:
    """Return `(status_code, path)` pairs from `git status --porcelain -z`."""
    result = _git(project_dir, "status", "--porcelain=v1", "-z", "--untracked-files=all")
    if not result.ok:
        raise CommandError(f"git status failed in {project_dir}: {result.tail(400)}", result)
    entries: list[tuple[str, str]] = []
    fields = result.stdout.split("\0")
    index = 0
    while index < len(fields):
        item = fields[index]
        index += 1
        if len(item) < 4:
            continue
        code, path = item[:2], item[3:]
        if code[0] in ("R", "C"):
            # Renames carry the source path as the next field.
            index += 1
        if path.startswith(_IGNORED_PREFIXES):
            continue
        entries.append((code, path))
    return entries


def _git_changed_files(project_dir: Path) -> list[str]:
    return sorted({path for _, path in _git_status_entries(project_dir)})


def _git_has_changes(project_dir: Path) -> bool:
    return bool(_git_status_entries(project_dir))


def _file_digest(path: Path) -> str:
    if not path.exists():
        return "<deleted>"
    if path.is_dir():
        return "<dir>"
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _git_state_fingerprint(project_dir: Path) -> dict[str, str]:
    """Capture HEAD plus a content hash of every uncommitted path."""
    state = {path: _file_digest(project_dir / path) for path in _git_changed_files(project_dir)}
    state[":HEAD"] = _git_head_sha(project_dir) or ""
    return state


def _diff_fingerprints(project_dir: Path, before: dict[str, str], after: dict[str, str]) -> list[str]:
    """List paths whose content differs between two fingerprints, including new commits."""
    changed = {
        path
        for path in set(before) | set(after)
        if not path.startswith(":") and before.get(path) != after.get(path)
    }
    head_before, head_after = before.get(":HEAD", ""), after.get(":HEAD", "")
    if head_before != head_after and head_after:
        args = ["diff", "--name-only", head_before, head_after] if head_before else ["ls-files"]
        result = _git(project_dir, *args)
        if result.ok:
            changed.update(line.strip() for line in result.stdout.splitlines() if line.strip())
        else:
            changed.add(":HEAD")
    return sorted(changed)


def _git_diff_text(project_dir: Path, max_chars: int = 20000) -> str:
    result = _git(project_dir, "diff", "HEAD")
    text = result.stdout if result.ok else ""
    return text if len(text) <= max_chars else text[:max_chars] + "\n... (truncated)\n"


def _git_files_changed_since(project_dir: Path, base_ref: str) -> list[str]:
    result = _git(project_dir, "diff", "--name-only", f"{base_ref}...HEAD")
    if not result.ok:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def _git_fetch(project_dir: Path, remote: str, branch: str, cancel: Optional[CancelToken] = None) -> bool:
    result = _git(project_dir, "fetch", remote, branch, cancel=cancel)
    if not result.ok:
        logger.warning("git fetch {} {} failed: {}", remote, branch, result.tail(400).strip())
    return result.ok


def _git_checkout(project_dir: Path, branch: str) -> None:
    _git(project_dir, "checkout", branch).check()


def _git_checkout_new(project_dir: Path, branch: str, start_point: str) -> None:
    _git(project_dir, "checkout", "-b", branch, start_point).check()


def _git_pull(
    project_dir: Path,
    remote: str,
    branch: str,
    cancel: Optional[CancelToken] = None,
) -> CommandResult:
    return _git(project_dir, "pull", "--no-rebase", "--no-edit", remote, branch, cancel=cancel)


def _git_commit_all(project_dir: Path, message: str) -> bool:
    """Stage everything and commit; return False when there was nothing to commit."""
    _git(project_dir, "add", "-A").check()
    if _git(project_dir, "diff", "--cached", "--quiet").ok:
        return False
    run_command(["git", "commit", "-F", "-"], cwd=project_dir, input_text=message).check()
    return True


def _git_push(
    project_dir: Path,
    remote: str,
    branch: str,
    cancel: Optional[CancelToken] = None,
) -> None:
    """Push `branch` with upstream tracking.

    Raises:
        PushRejected: The remote has commits the local branch lacks.
        CommandError: Any other push failure.
    """
    result = _git(project_dir, "push", "-u", remote, branch, cancel=cancel)
    if result.ok:
        return
    output = result.output
    if any(marker in output for marker in PUSH_REJECTED_MARKERS):
        raise PushRejected(f"Push of {branch} rejected: remote has advanced", result)
    result.check()


def _git_conflicted_files(project_dir: Path) -> list[str]:
    result = _git(project_dir, "diff", "--name-only", "--diff-filter=U")
    if not result.ok:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def _git_has_unmerged_paths(project_dir: Path) -> bool:
    return any(code in UNMERGED_STATUS_CODES for code, _ in _git_status_entries(project_dir))


def _git_merge_in_progress(project_dir: Path) -> bool:
    return _git(project_dir, "rev-parse", "-q", "--verify", "MERGE_HEAD").ok


def _git_merge_abort(project_dir: Path) -> None:
    result = _git(project_dir, "merge", "--abort")
    if not result.ok:
        logger.warning("git merge --abort failed: {}", result.tail(400).strip())


def _files_with_conflict_markers(root: Path, paths: Iterable[str]) -> list[str]:
    flagged: list[str] = []
    for rel in paths:
        path = root / rel
        if not path.is_file():
            continue
        try:
            text = path.read_text(errors="replace")
        except OSError:
            continue
        for line in text.splitlines():
            if line.startswith(CONFLICT_MARKER_PREFIXES) or line == "=======":
                flagged.append(rel)
                break
    return flagged


def _git_stash_push(project_dir: Path, message: str) -> bool:
    result = _git(project_dir, "stash", "push", "--include-untracked", "-m", message)
    result.check()
    return "No local changes" not in result.output


def _git_delete_branch(project_dir: Path, branch: str) -> bool:
    result = _git(project_dir, "branch", "-D", branch)
    if not result.ok:
        logger.warning("Could not delete branch {}: {}", branch, result.tail(400).strip())
    return result.ok


def _git_commits_ahead(project_dir: Path, base_ref: str, branch: str) -> Optional[int]:
    result = _git(project_dir, "rev-list", "--count", f"{base_ref}..{branch}")
    if not result.ok:
        return None
    try:
        return int(result.stdout.strip())
    except ValueError:
        return None


def _git_worktree_add(
    repo_dir: Path,
    path: Path,
    branch: str,
    start_point: Optional[str] = None,
) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if start_point is None:
        _git(repo_dir, "worktree", "add", str(path), branch).check()
    else:
        _git(repo_dir, "worktree", "add", "-b", branch, str(path), start_point).check()


def _git_worktree_remove(repo_dir: Path, path: Path) -> bool:
    result = _git(repo_dir, "worktree", "remove", "--force", str(path))
    if not result.ok:
        logger.warning("git worktree remove {} failed: {}", path, result.tail(400).strip())
    return result.ok


def _git_worktree_prune(repo_dir: Path) -> None:
    _git(repo_dir, "worktree", "prune")


def _git_worktree_paths(repo_dir: Path) -> list[Path]:
    result = _git(repo_dir, "worktree", "list", "--porcelain")
    if not result.ok:
        return []
    return [
        Path(line[len("worktree "):].strip())
        for line in result.stdout.splitlines()
        if line.startswith("worktree ")
    ]


def _git_add_all(project_dir: Path) -> None:
    _git(project_dir, "add", "-A").check()


def _git_commit_merge(project_dir: Path) -> None:
    _git(project_dir, "commit", "--no-edit").check()
