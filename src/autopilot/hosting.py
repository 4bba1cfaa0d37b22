from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger


class HostingError(RuntimeError):
    """Raised when a required ``gh`` call fails."""


@dataclass(slots=True, frozen=True)
class Issue:
    number: int
    title: str
    body: str
    labels: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class Review:
    author: str
    state: str
    body: str
    submitted_at: str


@dataclass(slots=True, frozen=True)
class Comment:
    author: str
    body: str
    created_at: str


@dataclass(slots=True, frozen=True)
class LineComment:
    author: str
    path: str
    line: int | None
    body: str
    diff_hunk: str
    created_at: str

    @property
    def location(self) -> str:
        return f"{self.path}:{self.line}" if self.line else self.path


@dataclass(slots=True)
class ReviewFeedback:
    pr_number: int
    repo: str
    reviews: list[Review] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)
    line_comments: list[LineComment] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.reviews) + len(self.comments) + len(self.line_comments)

    def to_markdown(self) -> str:
        """Reviews first, then line comments with diff context, then general comments."""
        sections = [f"# PR Review Comments\n\n> PR #{self.pr_number} in {self.repo}\n"]

        with_body = [review for review in self.reviews if review.body.strip()]
        if with_body:
            sections.append("## Reviews\n")
            for review in with_body:
                sections.append(f"### {review.state} by @{review.author} ({review.submitted_at})\n")
                sections.append(review.body.strip())
                sections.append("")

        if self.line_comments:
            sections.append("## Line Comments\n")
            for comment in self.line_comments:
                sections.append(f"### {comment.location} - @{comment.author}\n")
                if comment.diff_hunk:
                    sections.extend(["```diff", comment.diff_hunk, "```\n"])
                sections.append(comment.body.strip())
                sections.append("")

        if self.comments:
            sections.append("## General Comments\n")
            for comment in self.comments:
                sections.append(f"### @{comment.author} ({comment.created_at})\n")
                sections.append(comment.body.strip())
                sections.append("")

        return "\n".join(sections)


def _login(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("login") or "unknown")
    return "unknown"


class GitHubClient:
    """Thin async wrapper over the ``gh`` CLI."""

    def __init__(self, working_directory: Path, binary: str = "gh") -> None:
        self.working_directory = working_directory
        self.binary = binary

    async def _run(self, args: list[str]) -> tuple[int, str, str]:
        logger.debug(f"gh {' '.join(args)}")
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                cwd=str(self.working_directory),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise HostingError(f"gh binary not found: {self.binary}") from exc
        stdout, stderr = await process.communicate()
        return (
            process.returncode or 0,
            stdout.decode("utf-8", errors="replace").strip(),
            stderr.decode("utf-8", errors="replace").strip(),
        )

    async def run_checked(self, args: list[str]) -> str:
        code, stdout, stderr = await self._run(args)
        if code != 0:
            raise HostingError(f"gh {' '.join(args)} failed: {stderr or stdout}")
        return stdout

    async def run_safe(self, args: list[str]) -> str:
        """Run and return stdout, or an empty string on failure."""
        try:
            code, stdout, _ = await self._run(args)
        except HostingError as exc:
            logger.warning(str(exc))
            return ""
        return stdout if code == 0 else ""

    async def view_issue(self, number: int, repo: str) -> Issue:
        raw = await self.run_checked(
            ["issue", "view", str(number), "--repo", repo, "--json", "number,title,body,labels"]
        )
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise HostingError(f"Unexpected gh output for {repo}#{number}") from exc
        if not isinstance(data, dict):
            raise HostingError(f"Unexpected gh output for {repo}#{number}")
        return Issue(
            number=int(data.get("number", number)),
            title=str(data.get("title") or ""),
            body=str(data.get("body") or ""),
            labels=tuple(
                str(label["name"])
                for label in data.get("labels") or []
                if isinstance(label, dict) and label.get("name")
            ),
        )

    async def pull_request_number(self, branch: str, repo: str) -> int | None:
        raw = await self.run_safe(["pr", "view", branch, "--repo", repo, "--json", "number"])
        try:
            return int(json.loads(raw)["number"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None

    async def fetch_review_feedback(
        self, branch: str, repo: str, pr_number: int
    ) -> ReviewFeedback:
        reviews_raw, comments_raw, line_raw = await asyncio.gather(
            self.run_safe(["pr", "view", branch, "--repo", repo, "--json", "reviews"]),
            self.run_safe(["pr", "view", branch, "--repo", repo, "--json", "comments"]),
            self.run_safe(["api", f"repos/{repo}/pulls/{pr_number}/comments"]),
        )
        feedback = ReviewFeedback(pr_number=pr_number, repo=repo)

        try:
            reviews = json.loads(reviews_raw).get("reviews") or []
            feedback.reviews = [
                Review(
                    author=_login(item.get("author")),
                    state=str(item.get("state") or "COMMENTED"),
                    body=str(item.get("body") or ""),
                    submitted_at=str(item.get("submittedAt") or ""),
                )
                for item in reviews
            ]
        except (json.JSONDecodeError, AttributeError):
            logger.warning("Could not parse PR reviews")

        try:
            comments = json.loads(comments_raw).get("comments") or []
            feedback.comments = [
                Comment(
                    author=_login(item.get("author")),
                    body=str(item.get("body") or ""),
                    created_at=str(item.get("createdAt") or ""),
                )
                for item in comments
            ]
        except (json.JSONDecodeError, AttributeError):
            logger.warning("Could not parse PR comments")

        try:
            line_comments = json.loads(line_raw) or []
            feedback.line_comments = [
                LineComment(
                    author=_login(item.get("user")),
                    path=str(item.get("path") or ""),
                    line=item.get("line"),
                    body=str(item.get("body") or ""),
                    diff_hunk=str(item.get("diff_hunk") or ""),
                    created_at=str(item.get("created_at") or ""),
                )
                for item in line_comments
            ]
        except (json.JSONDecodeError, AttributeError):
            logger.warning("Could not parse line-level review comments")

        return feedback

    async def remove_label(self, number: int, repo: str, label: str) -> bool:
        try:
            code, _, stderr = await self._run(
                ["issue", "edit", str(number), "--repo", repo, "--remove-label", label]
            )
        except HostingError as exc:
            code, stderr = 1, str(exc)
        if code != 0:
            logger.warning(f'Could not remove "{label}" label from {repo}#{number}: {stderr}')
            return False
        return True

    async def create_pull_request(
        self, *, repo: str, branch: str, base: str, title: str, body: str
    ) -> str:
        return await self.run_checked(
            [
                "pr",
                "create",
                "--repo",
                repo,
                "--head",
                branch,
                "--base",
                base,
                "--title",
                title,
                "--body",
                body,
            ]
        )
