"""Build the text prompts passed to the code-generation backend."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from .models import AcceptanceCriterion, Story, Task, VerificationResult

ROLE_GUIDANCE = {
    "dev": (
        "You are a development agent. Implement the feature or fix, follow the existing "
        "architecture and conventions, and add or update tests for the new behaviour."
    ),
    "qa": (
        "You are a QA agent. Write or extend automated tests (unit, integration, end-to-end) "
        "that prove the acceptance criteria. Fix production code only when a test exposes a bug."
    ),
    "devops": (
        "You are a DevOps agent. Work on build, CI, deployment and infrastructure configuration. "
        "Keep changes reproducible and documented."
    ),
    "documenter": (
        "You are a documentation agent. Update READMEs, guides and API documentation so they "
        "match the current behaviour. Do not change runtime code."
    ),
}
_DEFAULT_GUIDANCE = "You are a software engineering agent working in this repository."


def _format_criteria(criteria: list[AcceptanceCriterion]) -> str:
    if not criteria:
        return "(none recorded; infer from the task and story description)"
    return "\n".join(
        f"- {ac.id}: Given {ac.given}, When {ac.when}, Then {ac.then}" for ac in criteria
    )


def build_task_prompt(
    task: Task,
    story: Optional[Story],
    criteria: list[AcceptanceCriterion],
    *,
    branch: str,
    role: str,
    workdir: Path,
) -> str:
    story_block = ""
    if story is not None:
        story_block = f"""
Story {story.id}: {story.title}
{story.description}
"""
    return f"""{ROLE_GUIDANCE.get(role, _DEFAULT_GUIDANCE)}

Task {task.id}: {task.title}

{task.description or "(no description)"}
{story_block}
Acceptance criteria:
{_format_criteria(criteria)}

Working directory: {workdir}
Branch: {branch} (already checked out)

Rules:
- Make the changes directly in the working directory.
- Do NOT commit, push, open pull requests or switch branches; the orchestrator does that.
- Keep the change focused on this task.
- Run the relevant tests if you can and fix what you break.
"""


def build_fix_prompt(
    task: Task,
    failure: VerificationResult,
    *,
    attempt: int,
    max_attempts: int,
) -> str:
    what = "tests" if failure.kind.value == "test" else "quality checks (formatting/lint)"
    command_line = f"Command: {failure.command}\n" if failure.command else ""
    return f"""The {what} for task {task.id} ({task.title}) are failing.

Attempt {attempt}/{max_attempts}.
{command_line}
Failure output:
```
{failure.error_detail.strip()}
```

Fix the underlying problem so the {what} pass. Do not disable, skip or delete checks.
Do NOT commit or push.
"""


def build_conflict_prompt(branch: str, files: list[str]) -> str:
    listing = "\n".join(f"- {path}" for path in files)
    return f"""Merging the remote version of branch {branch} produced conflicts in:

{listing}

Resolve every conflict so both sides' intent is preserved, remove all conflict
markers (<<<<<<<, =======, >>>>>>>) and stage nothing; the orchestrator commits the merge.
"""


def build_cleanup_prompt(status_lines: list[str], diff_text: str) -> str:
    status = "\n".join(status_lines) or "(empty)"
    return f"""The working directory has uncommitted changes left over from earlier work.

git status:
{status}

Diff:
```
{diff_text}
```

Decide for each change whether it is worth keeping. Commit work worth keeping with a
descriptive message, and stash the rest with `git stash push -u`. Leave the working
tree clean.
"""
