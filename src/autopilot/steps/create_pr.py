from __future__ import annotations

from loguru import logger

from autopilot.config import PipelineStepName
from autopilot.hosting import HostingError
from autopilot.state import artifacts
from autopilot.state.artifacts import ArtifactDir
from autopilot.state.branches import GitError
from autopilot.state.context import TaskContext
from autopilot.steps.base import PipelineStep, StepResult, TaskRuntime, log_step


def split_description(description: str, fallback_title: str) -> tuple[str, str]:
    """Use a leading ``# heading`` as the PR title; the rest is the body."""
    lines = description.strip().splitlines()
    if lines and lines[0].startswith("# "):
        return lines[0][2:].strip() or fallback_title, "\n".join(lines[1:]).strip()
    return fallback_title, description.strip()


class CreatePrStep(PipelineStep):
    name = PipelineStepName.CREATE_PR
    title = "Create PR"

    async def run(self, ctx: TaskContext, runtime: TaskRuntime) -> StepResult:
        config = runtime.config
        if config.pr_mode == "never":
            log_step(self.title, ctx, skipped=True)
            return StepResult.skipped("PR creation disabled")

        files = ArtifactDir(ctx.artifact_dir)
        if not files.exists(artifacts.PR_DESCRIPTION):
            return StepResult.failed(f"Create PR requires {artifacts.PR_DESCRIPTION}")

        existing = await runtime.hosting.pull_request_number(ctx.branch, ctx.repo)
        if existing is not None:
            log_step(self.title, ctx, skipped=True)
            return StepResult.skipped(f"PR #{existing} already open")

        if config.pr_mode == "ask" and not runtime.confirm(f"Create a pull request for {ctx.ref}?"):
            logger.info("PR creation declined")
            return StepResult.skipped("PR creation declined")

        log_step(self.title, ctx)
        title, body = split_description(files.read(artifacts.PR_DESCRIPTION), ctx.title)
        try:
            runtime.git.push(ctx.branch)
            url = await runtime.hosting.create_pull_request(
                repo=ctx.repo,
                branch=ctx.branch,
                base=config.main_branch,
                title=title,
                body=body,
            )
        except (GitError, HostingError) as exc:
            return StepResult.failed(f"Create PR failed: {exc}")
        logger.info(f"Created PR: {url}")
        return StepResult.success(url)
