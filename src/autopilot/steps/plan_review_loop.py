from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from loguru import logger

from autopilot.config import AgentStep, PipelineStepName
from autopilot.state import artifacts
from autopilot.state.artifacts import ArtifactDir
from autopilot.state.context import TaskContext
from autopilot.steps.base import PipelineStep, StepResult, TaskRuntime, log_step

VERDICT_PATTERN = re.compile(r"^VERDICT:\s*(APPROVED|REVISE)\b", re.IGNORECASE | re.MULTILINE)
APPROVED_SUMMARY_PATTERN = re.compile(r"Final verdict:\s*APPROVED", re.IGNORECASE)


class Verdict(StrEnum):
    APPROVED = "APPROVED"
    REVISE = "REVISE"


@dataclass(slots=True, frozen=True)
class ReviewRound:
    number: int
    verdict: Verdict | None
    text: str


def parse_verdict(review: str) -> Verdict | None:
    match = VERDICT_PATTERN.search(review)
    if match is None:
        return None
    return Verdict(match.group(1).upper())


def build_revision_prompt(ctx: TaskContext, round_number: int) -> str:
    issue_dir = ctx.artifact_dir_relative
    return "\n".join(
        [
            "You are a senior developer revising a plan based on reviewer feedback.",
            "",
            f"Read the current plan in @{issue_dir}/{artifacts.PLAN} and the latest review "
            f"in @{issue_dir}/{artifacts.PLAN_REVIEW}.",
            f"Also read @{issue_dir}/{artifacts.INITIAL_DESCRIPTION} and "
            f"@{issue_dir}/{artifacts.RESEARCH}.",
            "",
            "CRITICAL RULES:",
            "- Do NOT implement the issue. Do not modify any project source files.",
            f"- Your ONLY deliverable is updating @{issue_dir}/{artifacts.PLAN}.",
            "- Address all actionable review feedback while keeping the plan concise.",
            "- Keep the plan structure intact unless the review requires structural changes.",
            "- Do not ask follow-up questions. Apply best judgment and update the plan directly.",
            "",
            f"This is revision round {round_number}.",
        ]
    )


def render_summary(
    ctx: TaskContext, rounds: list[ReviewRound], approved: bool, max_rounds: int
) -> str:
    issue_dir = ctx.artifact_dir_relative
    lines = [
        "# Plan review summary",
        "",
        f"- Rounds run: {len(rounds)}",
        f"- Final verdict: {Verdict.APPROVED if approved else Verdict.REVISE}",
        f"- Max rounds: {max_rounds}",
        "",
        "Artifacts:",
        f"- Latest review: {issue_dir}/{artifacts.PLAN_REVIEW}",
    ]
    lines.extend(
        f"- Round {item.number}: {issue_dir}/{artifacts.plan_review_round(item.number)}"
        for item in rounds
    )
    return "\n".join(lines) + "\n"


class PlanReviewLoopStep(PipelineStep):
    """Reviewer/reviser rounds over ``plan.md`` until approval or the round limit.

    Each round's review is copied to its own file and never rewritten. A review
    without a ``VERDICT:`` line fails the step outright.
    """

    name = PipelineStepName.PLAN_REVIEW_LOOP
    title = "Plan-Review-Loop"

    async def run(self, ctx: TaskContext, runtime: TaskRuntime) -> StepResult:
        config = runtime.config
        files = ArtifactDir(ctx.artifact_dir)
        if not config.plan_review_loop_enabled:
            log_step(self.title, ctx, skipped=True)
            return StepResult.skipped("plan review loop disabled")
        if files.exists(artifacts.PLAN_REVIEW_SUMMARY) and APPROVED_SUMMARY_PATTERN.search(
            files.read(artifacts.PLAN_REVIEW_SUMMARY)
        ):
            log_step(self.title, ctx, skipped=True)
            return StepResult.skipped("plan already approved")
        if not files.exists(artifacts.PLAN):
            return StepResult.failed(f"Plan-Review-Loop requires {artifacts.PLAN}")

        log_step(self.title, ctx)
        max_rounds = config.plan_review_max_rounds
        rounds: list[ReviewRound] = []
        approved = False

        for round_number in range(1, max_rounds + 1):
            logger.info(f"Plan review round {round_number}/{max_rounds}")
            review = await runtime.invoke(
                ctx, AgentStep.PLAN_REVIEW, suffix=f"\n\nRound: {round_number}."
            )
            if review.is_error:
                return StepResult.failed(f"Plan-Review-Loop reviewer failed: {review.result}")
            if not files.exists(artifacts.PLAN_REVIEW):
                return StepResult.failed(
                    f"Plan-Review-Loop reviewer did not produce {artifacts.PLAN_REVIEW}"
                )

            text = files.read(artifacts.PLAN_REVIEW)
            files.write(artifacts.plan_review_round(round_number), text)
            verdict = parse_verdict(text)
            rounds.append(ReviewRound(round_number, verdict, text))
            if verdict is None:
                return StepResult.failed(
                    f"Plan-Review-Loop round {round_number} missing verdict. "
                    "Expected 'VERDICT: APPROVED' or 'VERDICT: REVISE'."
                )
            if verdict is Verdict.APPROVED:
                approved = True
                break
            if round_number == max_rounds:
                break

            revision = await runtime.invoke(
                ctx, AgentStep.PLAN, prompt=build_revision_prompt(ctx, round_number)
            )
            if revision.is_error:
                return StepResult.failed(f"Plan-Review-Loop revision failed: {revision.result}")
            if not files.exists(artifacts.PLAN):
                return StepResult.failed(
                    f"Plan-Review-Loop revision did not preserve {artifacts.PLAN}"
                )

        files.write(
            artifacts.PLAN_REVIEW_SUMMARY, render_summary(ctx, rounds, approved, max_rounds)
        )
        if not approved:
            return StepResult.failed(
                f"Plan-Review-Loop reached max rounds ({max_rounds}) without approval"
            )

        runtime.commit_artifacts(ctx, f"chore(auto-pr): plan review loop for {ctx.id}")
        return StepResult.success()
