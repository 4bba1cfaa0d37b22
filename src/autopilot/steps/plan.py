from __future__ import annotations

from autopilot.config import AgentStep, PipelineStepName
from autopilot.state import artifacts
from autopilot.steps.base import ArtifactStep


class PlanStep(ArtifactStep):
    name = PipelineStepName.PLAN
    title = "Plan"
    agent_step = AgentStep.PLAN
    artifact = artifacts.PLAN
