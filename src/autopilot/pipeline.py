from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from enum import StrEnum

from loguru import logger

from autopilot.backends.resilient import ResilientBackend
from autopilot.config import AutopilotConfig, ConfigError, PipelineStepName
from autopilot.state import artifacts
from autopilot.state.artifacts import ArtifactDir
from autopilot.state.branches import GitClient, worktree_path
from autopilot.state.context import TaskContext, render_initial_description
from autopilot.steps import (
    CreatePrStep,
    ImplementStep,
    PipelineStep,
    PlanAnnotationsStep,
    PlanImplementationStep,
    PlanReviewLoopStep,
    PlanStep,
    PrDescriptionStep,
    RemoveLabelStep,
    ResearchStep,
    ReviewStep,
    TaskRuntime,
)
from autopilot.steps.base import Confirm, decline
from autopilot.usage import UsageAccountant, UsageStats, format_usage, usage_delta

PIPELINE: tuple[PipelineStep, ...] = (
    ResearchStep(),
    PlanStep(),
    PlanAnnotationsStep(),
    PlanReviewLoopStep(),
    PlanImplementationStep(),
    ImplementStep(),
    ReviewStep(),
    PrDescriptionStep(),
    CreatePrStep(),
    RemoveLabelStep(),
)

STEP_NAMES: tuple[PipelineStepName, ...] = tuple(step.name for step in PIPELINE)


def parse_step_name(value: str) -> PipelineStepName:
    try:
        return PipelineStepName(value)
    except ValueError as exc:
        valid = ", ".join(STEP_NAMES)
        raise ConfigError(f"Invalid step '{value}'. Valid steps: {valid}") from exc


class PipelineStatus(StrEnum):
    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class PipelineOutcome:
    status: PipelineStatus
    step: PipelineStepName | None = None
    reason: str = ""


class Pipeline:
    """Runs the fixed step sequence for one task, always ending on the main branch."""

    def __init__(
        self, runtime: TaskRuntime, steps: Sequence[PipelineStep] = PIPELINE
    ) -> None:
        self.runtime = runtime
        self.steps = tuple(steps)

    def _prepare(self, ctx: TaskContext) -> None:
        git = self.runtime.git
        if git.local_branch_exists(ctx.branch):
            git.run(["checkout", ctx.branch])
        files = ArtifactDir(ctx.artifact_dir)
        if files.write_if_absent(artifacts.INITIAL_DESCRIPTION, render_initial_description(ctx)):
            logger.info(f"Saved {artifacts.INITIAL_DESCRIPTION}")

    async def run(
        self, ctx: TaskContext, stop_after: PipelineStepName | None = None
    ) -> PipelineOutcome:
        logger.info(f"Pipeline starting for {ctx.ref}: {ctx.title}")
        logger.info(f"Task ID: {ctx.id}")
        hooks = self.runtime.config.hooks

        with self.runtime.git.returning_to_main():
            self._prepare(ctx)
            for step in self.steps:
                await self.runtime.hook(hooks.before_step.get(step.name), ctx, step.name)
                result = await step.run(ctx, self.runtime)
                if not result.ok:
                    logger.error(f'Pipeline stopped at "{step.name}" for {ctx.ref}')
                    return PipelineOutcome(PipelineStatus.FAILED, step.name, result.reason)
                await self.runtime.hook(hooks.after_step.get(step.name), ctx, step.name)
                if stop_after is not None and step.name == stop_after:
                    logger.info(f'Pipeline paused after "{step.name}" (--until {stop_after})')
                    return PipelineOutcome(PipelineStatus.PAUSED, step.name)

        logger.info(f"Pipeline complete for {ctx.ref}")
        return PipelineOutcome(PipelineStatus.COMPLETED)


def reset_artifacts(ctx: TaskContext) -> bool:
    """Delete a task's local artifact directory so the next run starts fresh."""
    removed = ArtifactDir(ctx.artifact_dir).clear()
    if removed:
        logger.info(f"Reset state at {ctx.artifact_dir_relative} (use --resume to keep it)")
    return removed


@dataclass(slots=True)
class TaskReport:
    ctx: TaskContext
    outcome: PipelineOutcome | None
    usage: UsageStats
    error: str | None = None


@dataclass(slots=True)
class RunReport:
    tasks: list[TaskReport] = field(default_factory=list)
    total: UsageStats = field(default_factory=UsageStats)

    @property
    def failed(self) -> list[TaskReport]:
        return [
            task
            for task in self.tasks
            if task.error is not None
            or (task.outcome is not None and task.outcome.status is PipelineStatus.FAILED)
        ]


class TaskRunner:
    """Processes tasks one at a time; a failing task never aborts the others."""

    def __init__(
        self,
        config: AutopilotConfig,
        agent: ResilientBackend,
        accountant: UsageAccountant,
        *,
        confirm: Confirm = decline,
        use_worktree: bool = False,
    ) -> None:
        self.config = config
        self.agent = agent
        self.accountant = accountant
        self.confirm = confirm
        self.use_worktree = use_worktree

    def sync_with_remote(self) -> None:
        git = GitClient(
            self.config.repo_root, main_branch=self.config.main_branch, remote=self.config.remote
        )
        base_branch = git.sync_with_remote()
        if base_branch != self.config.main_branch:
            self.config = replace(self.config, main_branch=base_branch)

    def _task_root(self, ctx: TaskContext) -> TaskContext:
        if not self.use_worktree:
            return ctx
        git = GitClient(
            self.config.repo_root, main_branch=self.config.main_branch, remote=self.config.remote
        )
        target = worktree_path(
            self.config.worktree_base_dir, self.config.host_repo, ctx.repo_short, ctx.id
        )
        path = git.provision_worktree(target)
        logger.info(f"Using worktree for {ctx.ref}: {path}")
        return ctx.with_repo_root(path)

    async def run_one(
        self, ctx: TaskContext, stop_after: PipelineStepName | None = None
    ) -> PipelineOutcome:
        run_ctx = self._task_root(ctx)
        runtime = TaskRuntime.create(
            self.config, run_ctx.repo_root, self.agent, confirm=self.confirm
        )
        return await Pipeline(runtime).run(run_ctx, stop_after)

    async def run_all(
        self, contexts: Sequence[TaskContext], stop_after: PipelineStepName | None = None
    ) -> RunReport:
        report = RunReport()
        logger.info(f"Processing {len(contexts)} source(s)...")
        for ctx in contexts:
            before = self.accountant.snapshot()
            outcome: PipelineOutcome | None = None
            error: str | None = None
            try:
                outcome = await self.run_one(ctx, stop_after)
            except Exception as exc:
                error = str(exc)
                logger.error(f"Pipeline error for {ctx.ref}: {exc}")
            delta = usage_delta(before, self.accountant.snapshot())
            if error is None:
                logger.info(f"Summary for {ctx.ref} - {format_usage(delta)}")
            report.tasks.append(TaskReport(ctx, outcome, delta, error))

        report.total = self.accountant.snapshot()
        logger.info(f"Done. Total cost: {format_usage(report.total)}")
        return report
