from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from autopilot.state.artifacts import INITIAL_DESCRIPTION

if TYPE_CHECKING:
    from autopilot.config import AutopilotConfig

ARTIFACT_ROOT = ".auto-pr"
BRANCH_PREFIX = "auto-pr/"


class ContextError(RuntimeError):
    """Raised when a task context cannot be built or reconstructed."""


class SourceKind(StrEnum):
    ISSUE = "github-issue"
    FREE_FORM = "markdown"


def sanitize_task_id(raw: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "-", raw.strip()).strip("-")
    return cleaned or "task"


def repo_short_name(repo: str) -> str:
    return repo.rsplit("/", 1)[-1]


@dataclass(slots=True, frozen=True)
class TaskContext:
    """One unit of work. Everything path- or branch-shaped derives from ``id``."""

    id: str
    source_kind: SourceKind
    title: str
    body: str
    repo: str
    scope_path: str
    repo_root: Path
    artifact_dir_relative: str
    issue_number: int | None = None

    @property
    def repo_short(self) -> str:
        return repo_short_name(self.repo)

    @property
    def artifact_dir(self) -> Path:
        return self.repo_root / self.artifact_dir_relative

    @property
    def branch(self) -> str:
        return f"{BRANCH_PREFIX}{self.id}"

    @property
    def ref(self) -> str:
        if self.issue_number is not None:
            return f"{self.repo}#{self.issue_number}"
        return f"{self.repo}:{self.id}"

    @property
    def is_issue(self) -> bool:
        return self.source_kind is SourceKind.ISSUE and self.issue_number is not None

    def with_repo_root(self, repo_root: Path) -> TaskContext:
        return replace(self, repo_root=repo_root)


def default_artifact_dir(repo: str, task_id: str) -> str:
    return f"{ARTIFACT_ROOT}/{repo_short_name(repo)}/{task_id}"


def build_issue_context(
    number: int, title: str, body: str, repo: str, scope_path: str, repo_root: Path
) -> TaskContext:
    task_id = f"issue-{number}"
    return TaskContext(
        id=task_id,
        source_kind=SourceKind.ISSUE,
        title=title,
        body=body,
        repo=repo,
        scope_path=scope_path,
        repo_root=repo_root,
        artifact_dir_relative=default_artifact_dir(repo, task_id),
        issue_number=number,
    )


def build_free_form_context(
    task_id: str,
    title: str,
    body: str,
    repo: str,
    scope_path: str,
    repo_root: Path,
    issue_number: int | None = None,
) -> TaskContext:
    safe_id = sanitize_task_id(task_id)
    return TaskContext(
        id=safe_id,
        source_kind=SourceKind.FREE_FORM,
        title=title,
        body=body,
        repo=repo,
        scope_path=scope_path,
        repo_root=repo_root,
        artifact_dir_relative=default_artifact_dir(repo, safe_id),
        issue_number=issue_number,
    )


def render_initial_description(ctx: TaskContext) -> str:
    return f"# {ctx.title}\n\n> {ctx.ref}\n\n{ctx.body}\n"


def parse_initial_description(content: str, fallback_title: str) -> tuple[str, str]:
    """Return ``(title, body)``: title from the first heading, body after the second blank line."""
    title_match = re.search(r"^# (.+)$", content, re.MULTILINE)
    title = title_match.group(1) if title_match else fallback_title
    lines = content.split("\n")
    blank_count = 0
    body_start = 0
    for index, line in enumerate(lines):
        if not line.strip():
            blank_count += 1
            if blank_count == 2:
                body_start = index + 1
                break
    return title, "\n".join(lines[body_start:]).strip()


def context_from_artifacts(
    task_id: str, repo_short: str, config: AutopilotConfig, repo_root: Path | None = None
) -> TaskContext:
    """Rebuild a task context from the description written on its first run."""
    root = repo_root or config.repo_root
    entry = next(
        (repo for repo in config.repos if repo_short_name(repo.repo) == repo_short), None
    )
    if entry is None:
        raise ContextError(f"Unknown repo: {repo_short}")

    candidates = [f"{ARTIFACT_ROOT}/{task_id}", f"{ARTIFACT_ROOT}/{repo_short}/{task_id}"]
    found = next(
        (rel for rel in candidates if (root / rel / INITIAL_DESCRIPTION).exists()), None
    )
    if found is None:
        raise ContextError(
            f"No artifacts found at {' or '.join(candidates)}. Run the pipeline first."
        )

    content = (root / found / INITIAL_DESCRIPTION).read_text(encoding="utf-8")
    title, body = parse_initial_description(content, task_id)
    issue_match = re.fullmatch(r"issue-(\d+)", task_id)
    if issue_match:
        ctx = build_issue_context(
            int(issue_match.group(1)), title, body, entry.repo, entry.path, root
        )
    else:
        ctx = build_free_form_context(task_id, title, body, entry.repo, entry.path, root)
    return replace(ctx, artifact_dir_relative=found)
