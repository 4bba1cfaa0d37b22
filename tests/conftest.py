import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from autopilot.backends.base import AgentResult
from autopilot.config import AgentStep, AutopilotConfig
from autopilot.hosting import ReviewFeedback
from autopilot.prompts import PromptResolver
from autopilot.state.artifacts import ArtifactDir
from autopilot.state.branches import GitClient
from autopilot.steps.base import TaskRuntime


def run_git(args: list[str], cwd: Path) -> str:
    proc = subprocess.run(["git", *args], cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: str) -> str:
    (repo / name).parent.mkdir(parents=True, exist_ok=True)
    (repo / name).write_text(content, encoding="utf-8")
    run_git(["add", name], cwd=repo)
    run_git(["commit", "-m", message], cwd=repo)
    return run_git(["rev-parse", "HEAD"], cwd=repo)


def init_git_repo(repo_path: Path) -> None:
    repo_path.mkdir(parents=True, exist_ok=True)
    run_git(["init", "-b", "main"], cwd=repo_path)
    run_git(["config", "user.email", "test@example.com"], cwd=repo_path)
    run_git(["config", "user.name", "Test User"], cwd=repo_path)
    commit_file(repo_path, "README.md", "seed\n", "seed")


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A repository on ``main`` whose ``origin`` is a local bare repository."""
    remote = tmp_path / "remote.git"
    remote.mkdir()
    run_git(["init", "--bare", "-b", "main"], cwd=remote)

    repo = tmp_path / "repo"
    init_git_repo(repo)
    run_git(["remote", "add", "origin", str(remote)], cwd=repo)
    run_git(["push", "-u", "origin", "main"], cwd=repo)
    return repo


WriteAction = Callable[[ArtifactDir, int], None]


class FakeAgent:
    """Stands in for ``ResilientBackend``; writes artifacts the way an agent would."""

    def __init__(
        self,
        artifact_dir: Path,
        writes: dict[AgentStep, WriteAction] | None = None,
        *,
        failing: frozenset[AgentStep] = frozenset(),
    ) -> None:
        self.files = ArtifactDir(artifact_dir)
        self.writes = writes or {}
        self.failing = failing
        self.calls: list[tuple[AgentStep, str]] = []

    def steps(self) -> list[AgentStep]:
        return [step for step, _ in self.calls]

    async def invoke(self, prompt: str, step: AgentStep, **kwargs: Any) -> AgentResult:
        self.calls.append((step, prompt))
        count = self.steps().count(step)
        action = self.writes.get(step)
        if action is not None and step not in self.failing:
            action(self.files, count)
        return AgentResult(
            result=f"{step.value} output",
            is_error=step in self.failing,
            total_cost_usd=0.01,
            num_turns=1,
        )


class FakeHosting:
    def __init__(
        self, pr_number: int | None = None, feedback: ReviewFeedback | None = None
    ) -> None:
        self.pr_number = pr_number
        self.feedback = feedback
        self.removed_labels: list[tuple[int, str, str]] = []
        self.created: list[dict[str, str]] = []

    async def pull_request_number(self, branch: str, repo: str) -> int | None:
        return self.pr_number

    async def fetch_review_feedback(self, branch: str, repo: str, pr_number: int) -> ReviewFeedback:
        return self.feedback or ReviewFeedback(pr_number, repo)

    async def remove_label(self, number: int, repo: str, label: str) -> None:
        self.removed_labels.append((number, repo, label))

    async def create_pull_request(self, **kwargs: str) -> str:
        self.created.append(kwargs)
        return f"https://github.com/{kwargs['repo']}/pull/1"


def make_runtime(
    repo_root: Path,
    agent: FakeAgent,
    hosting: FakeHosting | None = None,
    *,
    confirm: Callable[[str], bool] | None = None,
    **settings: Any,
) -> TaskRuntime:
    config = AutopilotConfig.from_dict(
        {"repos": [{"repo": "acme/api"}], **settings},
        home=repo_root,
        repo_root=repo_root,
        host_repo="acme/api",
    )
    return TaskRuntime(
        config=config,
        repo_root=repo_root,
        git=GitClient(repo_root),
        hosting=hosting or FakeHosting(),  # type: ignore[arg-type]
        agent=agent,  # type: ignore[arg-type]
        prompts=PromptResolver(),
        confirm=confirm or (lambda question: False),
    )


def write_text(name: str, content: str) -> WriteAction:
    def _write(files: ArtifactDir, count: int) -> None:
        files.write(name, content)

    return _write
