from __future__ import annotations

from autopilot.config import AgentStep, PipelineStepName
from autopilot.state import artifacts
from autopilot.steps.base import ArtifactStep


class PlanImplementationStep(ArtifactStep):
    name = PipelineStepName.PLAN_IMPLEMENTATION
    title = "Plan-Implementation"
    agent_step = AgentStep.PLAN_IMPLEMENTATION
    artifact = artifacts.PLAN_IMPLEMENTATION
    commit_message = "chore(auto-pr): implementation plan for {id}"
