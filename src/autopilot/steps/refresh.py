from __future__ import annotations

from loguru import logger

from autopilot.config import AgentStep
from autopilot.state import artifacts
from autopilot.state.artifacts import ArtifactDir
from autopilot.state.context import TaskContext
from autopilot.steps.base import StepResult, TaskRuntime, log_step


async def run_refresh(ctx: TaskContext, runtime: TaskRuntime) -> StepResult:
    """Bring an existing task branch up to date with main and let the agent fix fallout."""
    log_step("Refresh", ctx)
    git = runtime.git
    with git.returning_to_main():
        if not git.checkout_existing(ctx.branch):
            return StepResult.failed(f"Branch {ctx.branch} does not exist locally or remotely.")

        git.run(["checkout", git.main_branch])
        git.run(["pull", git.remote, git.main_branch], check=False)
        git.run(["checkout", ctx.branch])

        strategy = git.integrate_main()
        if strategy == "up-to-date":
            logger.info(f"Branch is already up-to-date with {git.main_branch}.")
        else:
            logger.info(f"Integrated {git.main_branch} via {strategy}")

        result = await runtime.invoke(ctx, AgentStep.REFRESH)
        if result.is_error:
            return StepResult.failed(f"Refresh step failed: {result.result}")
        runtime.commit_artifacts(ctx, f"chore(auto-pr): refresh for {ctx.id}")

        removed = ArtifactDir(ctx.artifact_dir).delete(
            artifacts.REVIEW, artifacts.COMPLETED_SUMMARY
        )
        if removed:
            logger.info(f"Invalidated stale {' and '.join(removed)}")
            runtime.commit_artifacts(
                ctx, "chore(auto-pr): invalidate stale artifacts after refresh"
            )

        git.push(ctx.branch, force_with_lease=True)
        logger.info(f"Pushed refreshed branch {ctx.branch}")
    return StepResult.success(strategy)
