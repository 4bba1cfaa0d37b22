from __future__ import annotations

from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path

from autopilot.config import AgentStep

TEMPLATE_FILES: dict[AgentStep, str] = {
    AgentStep.RESEARCH: "001-research.md",
    AgentStep.PLAN: "002-plan.md",
    AgentStep.PLAN_ANNOTATIONS: "003-plan-annotations.md",
    AgentStep.PLAN_REVIEW: "004-plan-review.md",
    AgentStep.PLAN_IMPLEMENTATION: "005-plan-implementation.md",
    AgentStep.IMPLEMENT: "006-implement.md",
    AgentStep.REVIEW: "007-review.md",
    AgentStep.PR_DESCRIPTION: "008-pr-description.md",
    AgentStep.REFRESH: "900-refresh.md",
    AgentStep.REVIEW_ROUND: "910-review-round.md",
}

TEMPLATES_DIR_NAME = "prompt-templates"


class TemplateNotFoundError(FileNotFoundError):
    """Raised when no directory provides a template."""


class PromptResolver:
    """Loads step templates and substitutes ``{{TOKEN}}`` placeholders.

    Lookup order: the profile prompt directory, ``<home>/prompt-templates``, then
    the templates shipped in ``autopilot.templates``.
    """

    def __init__(self, home: Path | None = None, prompt_dir: Path | None = None) -> None:
        self.search_dirs = [
            path
            for path in (prompt_dir, home / TEMPLATES_DIR_NAME if home else None)
            if path is not None
        ]

    def locate(self, step: AgentStep) -> Traversable:
        name = TEMPLATE_FILES[step]
        for directory in self.search_dirs:
            candidate = directory / name
            if candidate.is_file():
                return candidate
        packaged = resources.files("autopilot.templates").joinpath(name)
        if not packaged.is_file():
            raise TemplateNotFoundError(f"No prompt template found for step '{step}' ({name})")
        return packaged

    def load(self, step: AgentStep) -> str:
        return self.locate(step).read_text(encoding="utf-8")

    def render(self, step: AgentStep, tokens: dict[str, str]) -> str:
        template = self.load(step)
        for key, value in tokens.items():
            template = template.replace(f"{{{{{key}}}}}", value)
        return template
