from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from loguru import logger

from autopilot.backends.base import AgentResult
from autopilot.backends.resilient import ResilientBackend
from autopilot.config import AgentStep, AutopilotConfig, PipelineStepName
from autopilot.hooks import run_hook
from autopilot.hosting import GitHubClient
from autopilot.prompts import PromptResolver
from autopilot.state.artifacts import ArtifactDir
from autopilot.state.branches import GitClient
from autopilot.state.context import TaskContext

Confirm = Callable[[str], bool]


def decline(question: str) -> bool:
    logger.info(f"Non-interactive shell: cannot ask '{question}'")
    return False


@dataclass(slots=True, frozen=True)
class StepResult:
    status: Literal["success", "skipped", "failed"]
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status != "failed"

    @classmethod
    def success(cls, reason: str = "") -> StepResult:
        return cls("success", reason)

    @classmethod
    def skipped(cls, reason: str = "") -> StepResult:
        return cls("skipped", reason)

    @classmethod
    def failed(cls, reason: str) -> StepResult:
        logger.error(reason)
        return cls("failed", reason)


@dataclass(slots=True)
class TaskRuntime:
    """Collaborators bound to one repository root for the duration of one task."""

    config: AutopilotConfig
    repo_root: Path
    git: GitClient
    hosting: GitHubClient
    agent: ResilientBackend
    prompts: PromptResolver
    confirm: Confirm = decline

    @classmethod
    def create(
        cls,
        config: AutopilotConfig,
        repo_root: Path,
        agent: ResilientBackend,
        *,
        confirm: Confirm = decline,
    ) -> TaskRuntime:
        return cls(
            config=config,
            repo_root=repo_root,
            git=GitClient(repo_root, main_branch=config.main_branch, remote=config.remote),
            hosting=GitHubClient(repo_root),
            agent=agent,
            prompts=PromptResolver(config.home, config.prompt_dir),
            confirm=confirm,
        )

    def tokens(self, ctx: TaskContext) -> dict[str, str]:
        return {
            "SCOPE_PATH": ctx.scope_path,
            "ISSUE_DIR": ctx.artifact_dir_relative,
            "MAIN_BRANCH": self.config.main_branch,
        }

    async def invoke(
        self,
        ctx: TaskContext,
        step: AgentStep,
        *,
        prompt: str | None = None,
        suffix: str = "",
    ) -> AgentResult:
        text = prompt if prompt is not None else self.prompts.render(step, self.tokens(ctx))
        return await self.agent.invoke(
            f"{text}{suffix}",
            step,
            permission_mode="acceptEdits",
            working_directory=self.repo_root,
            max_turns=self.config.max_turns,
        )

    def commit_artifacts(self, ctx: TaskContext, message: str) -> bool:
        return self.git.commit_paths([ctx.artifact_dir_relative], message)

    async def hook(
        self, command: str | None, ctx: TaskContext, step: PipelineStepName | None = None
    ) -> None:
        await run_hook(
            command,
            cwd=self.repo_root,
            step=step.value if step is not None else None,
            issue=ctx.ref,
        )


def log_step(title: str, ctx: TaskContext, *, skipped: bool = False) -> None:
    meta = f"task {ctx.id} · {ctx.ref} · {ctx.title}"
    if skipped:
        logger.info(f"◌ {title} · {meta} [skip]")
    else:
        logger.info(f"● {title} · {meta}")


class PipelineStep(ABC):
    name: PipelineStepName
    title: str = "Step"

    @abstractmethod
    async def run(self, ctx: TaskContext, runtime: TaskRuntime) -> StepResult:
        """Run the step; semantic failures are returned, never raised."""


class ArtifactStep(PipelineStep):
    """One agent call whose success is proven by a single artifact file.

    The artifact doubles as the resume marker: when it is already present and
    valid the step is skipped without touching the agent or git.
    """

    agent_step: AgentStep
    artifact: str
    min_length: int = 0
    skip_when_present: bool = True
    commit_message: str = "chore(auto-pr): {step} for {id}"

    def is_done(self, artifacts: ArtifactDir) -> bool:
        return artifacts.is_valid(self.artifact, self.min_length)

    async def prepare(self, ctx: TaskContext, runtime: TaskRuntime) -> None:
        """Hook for work that must happen before the agent call."""

    async def run(self, ctx: TaskContext, runtime: TaskRuntime) -> StepResult:
        artifacts = ArtifactDir(ctx.artifact_dir)
        if self.skip_when_present and self.is_done(artifacts):
            log_step(self.title, ctx, skipped=True)
            return StepResult.skipped(f"{self.artifact} already present")

        log_step(self.title, ctx)
        await self.prepare(ctx, runtime)

        result = await runtime.invoke(ctx, self.agent_step)
        if result.is_error:
            return StepResult.failed(f"{self.title} step failed: {result.result}")
        if not self.is_done(artifacts):
            return StepResult.failed(f"{self.title} step did not produce a valid {self.artifact}")

        runtime.commit_artifacts(
            ctx, self.commit_message.format(step=self.name.value, id=ctx.id)
        )
        return StepResult.success()
