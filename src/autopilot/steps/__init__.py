from autopilot.steps.base import ArtifactStep, PipelineStep, StepResult, TaskRuntime
from autopilot.steps.create_pr import CreatePrStep
from autopilot.steps.implement import ImplementStep
from autopilot.steps.plan import PlanStep
from autopilot.steps.plan_annotations import PlanAnnotationsStep
from autopilot.steps.plan_implementation import PlanImplementationStep
from autopilot.steps.plan_review_loop import PlanReviewLoopStep
from autopilot.steps.pr_description import PrDescriptionStep
from autopilot.steps.refresh import run_refresh
from autopilot.steps.remove_label import RemoveLabelStep
from autopilot.steps.research import ResearchStep
from autopilot.steps.review import ReviewStep
from autopilot.steps.review_round import run_review_round

__all__ = [
    "ArtifactStep",
    "CreatePrStep",
    "ImplementStep",
    "PipelineStep",
    "PlanAnnotationsStep",
    "PlanImplementationStep",
    "PlanReviewLoopStep",
    "PlanStep",
    "PrDescriptionStep",
    "RemoveLabelStep",
    "ResearchStep",
    "ReviewStep",
    "StepResult",
    "TaskRuntime",
    "run_refresh",
    "run_review_round",
]
