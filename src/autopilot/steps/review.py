from __future__ import annotations

from autopilot.config import AgentStep, PipelineStepName
from autopilot.state import artifacts
from autopilot.steps.base import ArtifactStep


class ReviewStep(ArtifactStep):
    """Self-review of the branch diff."""

    name = PipelineStepName.REVIEW
    title = "Review"
    agent_step = AgentStep.REVIEW
    artifact = artifacts.REVIEW
