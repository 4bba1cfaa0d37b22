from __future__ import annotations

import shutil
from pathlib import Path

INITIAL_DESCRIPTION = "initial-ramblings.md"
RESEARCH = "research.md"
PLAN = "plan.md"
PLAN_ANNOTATIONS = "plan-annotations.md"
PLAN_ANNOTATIONS_ADDRESSED = "plan-annotations-addressed.md"
PLAN_REVIEW = "plan-review.md"
PLAN_REVIEW_SUMMARY = "plan-review-summary.md"
PLAN_IMPLEMENTATION = "plan-implementation.md"
COMPLETED_SUMMARY = "completed-summary.md"
REVIEW = "review.md"
PR_DESCRIPTION = "pr-description.md"
PR_REVIEW_COMMENTS = "pr-review-comments.md"
REVIEW_ROUND_SUMMARY = "review-round-summary.md"

MIN_RESEARCH_LENGTH = 200


def plan_review_round(round_number: int) -> str:
    return f"plan-review-round-{round_number}.md"


class ArtifactDir:
    """File operations scoped to one task's artifact directory."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def file(self, name: str) -> Path:
        return self.path / name

    def exists(self, name: str) -> bool:
        return self.file(name).is_file()

    def is_valid(self, name: str, min_length: int = 0) -> bool:
        if not self.exists(name):
            return False
        if min_length <= 0:
            return True
        return len(self.read(name)) > min_length

    def read(self, name: str) -> str:
        return self.file(name).read_text(encoding="utf-8")

    def write(self, name: str, content: str) -> Path:
        target = self.file(name)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return target

    def write_if_absent(self, name: str, content: str) -> bool:
        if self.exists(name):
            return False
        self.write(name, content)
        return True

    def delete(self, *names: str) -> list[str]:
        removed: list[str] = []
        for name in names:
            target = self.file(name)
            if target.exists():
                target.unlink()
                removed.append(name)
        return removed

    def rename(self, source: str, destination: str) -> None:
        self.file(source).rename(self.file(destination))

    def clear(self) -> bool:
        if not self.path.exists():
            return False
        shutil.rmtree(self.path)
        return True
