from __future__ import annotations

from autopilot.config import AgentStep, PipelineStepName
from autopilot.state import artifacts
from autopilot.state.context import TaskContext
from autopilot.steps.base import ArtifactStep, TaskRuntime


class ResearchStep(ArtifactStep):
    """Creates the task branch and produces ``research.md``."""

    name = PipelineStepName.RESEARCH
    title = "Research"
    agent_step = AgentStep.RESEARCH
    artifact = artifacts.RESEARCH
    min_length = artifacts.MIN_RESEARCH_LENGTH

    async def prepare(self, ctx: TaskContext, runtime: TaskRuntime) -> None:
        runtime.git.ensure_branch(ctx.branch)
