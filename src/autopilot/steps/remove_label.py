from __future__ import annotations

from autopilot.config import PipelineStepName
from autopilot.state.context import TaskContext
from autopilot.steps.base import PipelineStep, StepResult, TaskRuntime, log_step


class RemoveLabelStep(PipelineStep):
    """Drops the trigger label so the issue is not picked up again. Best-effort."""

    name = PipelineStepName.REMOVE_LABEL
    title = "Remove Label"

    async def run(self, ctx: TaskContext, runtime: TaskRuntime) -> StepResult:
        if not ctx.is_issue or ctx.issue_number is None:
            log_step(self.title, ctx, skipped=True)
            return StepResult.skipped("not an issue-backed task")
        log_step(self.title, ctx)
        await runtime.hosting.remove_label(
            ctx.issue_number, ctx.repo, runtime.config.trigger_label
        )
        return StepResult.success()
