from __future__ import annotations

from loguru import logger

from autopilot.config import AgentStep
from autopilot.state import artifacts
from autopilot.state.artifacts import ArtifactDir
from autopilot.state.context import TaskContext
from autopilot.steps.base import StepResult, TaskRuntime, log_step


async def run_review_round(ctx: TaskContext, runtime: TaskRuntime) -> StepResult:
    """Address PR review feedback once, then force-push the branch.

    The rendered feedback is committed before the agent runs so it survives an
    agent failure.
    """
    log_step("Review Round", ctx)
    git = runtime.git
    files = ArtifactDir(ctx.artifact_dir)
    with git.returning_to_main():
        if not git.checkout_existing(ctx.branch):
            return StepResult.failed(f"Branch {ctx.branch} does not exist locally or remotely.")

        pr_number = await runtime.hosting.pull_request_number(ctx.branch, ctx.repo)
        if pr_number is None:
            return StepResult.failed(f"No open PR found for branch {ctx.branch} in {ctx.repo}")
        logger.info(f"Found PR #{pr_number}")

        feedback = await runtime.hosting.fetch_review_feedback(ctx.branch, ctx.repo, pr_number)
        if feedback.total == 0:
            logger.info("No review comments found; nothing to address")
            return StepResult.skipped("no review feedback")
        logger.info(
            f"Found {len(feedback.reviews)} review(s), {len(feedback.line_comments)} line "
            f"comment(s), {len(feedback.comments)} general comment(s)"
        )

        files.write(artifacts.PR_REVIEW_COMMENTS, feedback.to_markdown())
        runtime.commit_artifacts(ctx, f"chore(auto-pr): capture PR review comments for {ctx.id}")

        result = await runtime.invoke(ctx, AgentStep.REVIEW_ROUND)
        if result.is_error:
            return StepResult.failed(f"Review round failed: {result.result}")
        if not files.exists(artifacts.REVIEW_ROUND_SUMMARY):
            return StepResult.failed(
                f"Review round did not produce {artifacts.REVIEW_ROUND_SUMMARY}"
            )

        removed = files.delete(artifacts.REVIEW, artifacts.PR_DESCRIPTION)
        if removed:
            logger.info(f"Invalidated stale {' and '.join(removed)}")
        runtime.commit_artifacts(ctx, f"chore(auto-pr): review round complete for {ctx.id}")

        git.push(ctx.branch, force_with_lease=True)
        logger.info(f"Pushed updated branch {ctx.branch}")
    return StepResult.success()
