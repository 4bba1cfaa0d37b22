from __future__ import annotations

from loguru import logger

from autopilot.config import AgentStep, PipelineStepName
from autopilot.state import artifacts
from autopilot.state.artifacts import ArtifactDir
from autopilot.state.context import TaskContext
from autopilot.steps.base import ArtifactStep, StepResult, TaskRuntime


class PrDescriptionStep(ArtifactStep):
    """Always re-runs so the description matches the current HEAD."""

    name = PipelineStepName.PR_DESCRIPTION
    title = "PR Description"
    agent_step = AgentStep.PR_DESCRIPTION
    artifact = artifacts.PR_DESCRIPTION
    skip_when_present = False
    commit_message = "chore(auto-pr): pr description for {id}"

    async def run(self, ctx: TaskContext, runtime: TaskRuntime) -> StepResult:
        result = await super().run(ctx, runtime)
        if result.ok:
            body = ArtifactDir(ctx.artifact_dir).read(self.artifact)
            logger.info(f"pr description\n```\n{body.strip()}\n```")
        return result
