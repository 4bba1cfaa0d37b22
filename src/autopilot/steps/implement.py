from __future__ import annotations

from loguru import logger

from autopilot.config import AgentStep, PipelineStepName
from autopilot.state import artifacts
from autopilot.state.artifacts import ArtifactDir
from autopilot.state.context import TaskContext
from autopilot.steps.base import PipelineStep, StepResult, TaskRuntime, log_step


class ImplementStep(PipelineStep):
    """Loops the agent until it writes ``completed-summary.md``."""

    name = PipelineStepName.IMPLEMENT
    title = "Implement"

    async def run(self, ctx: TaskContext, runtime: TaskRuntime) -> StepResult:
        files = ArtifactDir(ctx.artifact_dir)
        config = runtime.config
        if files.exists(artifacts.COMPLETED_SUMMARY):
            log_step(self.title, ctx, skipped=True)
            return StepResult.skipped(f"{artifacts.COMPLETED_SUMMARY} already present")

        log_step(self.title, ctx)
        if config.ask_before_implement:
            await runtime.hook(config.hooks.on_need_input, ctx)
            logger.info(
                f"Review {ctx.artifact_dir_relative}/{artifacts.PLAN_ANNOTATIONS} before answering"
            )
            if not runtime.confirm(f"Start implementation for {ctx.ref}?"):
                return StepResult.failed("Implementation cancelled by user")

        runtime.git.run(["checkout", ctx.branch])

        max_iterations = config.max_implement_iterations
        for iteration in range(1, max_iterations + 1):
            logger.info(f"Implementation iteration {iteration}/{max_iterations}")
            result = await runtime.invoke(ctx, AgentStep.IMPLEMENT)
            if result.is_error:
                return StepResult.failed(f"Implement iteration {iteration} failed: {result.result}")
            if files.exists(artifacts.COMPLETED_SUMMARY):
                logger.info(f"Implementation complete after {iteration} iteration(s)")
                runtime.commit_artifacts(
                    ctx, f"chore(auto-pr): implementation complete for {ctx.id}"
                )
                return StepResult.success()
            logger.info(
                f"Iteration {iteration} finished but {artifacts.COMPLETED_SUMMARY} "
                "not yet created; tasks remain"
            )

        return StepResult.failed(
            f"Implementation did not complete after {max_iterations} iterations"
        )
