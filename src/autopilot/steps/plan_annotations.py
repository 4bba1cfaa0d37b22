from __future__ import annotations

from loguru import logger

from autopilot.config import AgentStep, PipelineStepName
from autopilot.state import artifacts
from autopilot.state.artifacts import ArtifactDir
from autopilot.state.context import TaskContext
from autopilot.steps.base import PipelineStep, StepResult, TaskRuntime, log_step


class PlanAnnotationsStep(PipelineStep):
    """Addresses a human's ``plan-annotations.md`` when one has been dropped in."""

    name = PipelineStepName.PLAN_ANNOTATIONS
    title = "Plan-Annotations"

    async def run(self, ctx: TaskContext, runtime: TaskRuntime) -> StepResult:
        files = ArtifactDir(ctx.artifact_dir)
        if not files.exists(artifacts.PLAN_ANNOTATIONS):
            return StepResult.skipped("no annotations")
        if files.exists(artifacts.PLAN_ANNOTATIONS_ADDRESSED):
            log_step(self.title, ctx, skipped=True)
            return StepResult.skipped("annotations already addressed")

        log_step(self.title, ctx)
        logger.info(f"Found {artifacts.PLAN_ANNOTATIONS}; addressing reviewer notes")
        result = await runtime.invoke(ctx, AgentStep.PLAN_ANNOTATIONS)
        if result.is_error:
            return StepResult.failed(f"Plan-Annotations step failed: {result.result}")

        files.rename(artifacts.PLAN_ANNOTATIONS, artifacts.PLAN_ANNOTATIONS_ADDRESSED)
        logger.info(f"Annotations addressed; renamed to {artifacts.PLAN_ANNOTATIONS_ADDRESSED}")
        runtime.commit_artifacts(ctx, f"chore(auto-pr): plan annotations for {ctx.id}")
        return StepResult.success()
