from __future__ import annotations

import asyncio
import json
import re
import sys
import uuid
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from loguru import logger

from autopilot.config import AutopilotConfig, RepoEntry
from autopilot.hosting import GitHubClient, HostingError
from autopilot.state.context import (
    TaskContext,
    build_free_form_context,
    build_issue_context,
    repo_short_name,
)

GITHUB_ISSUE_URL = re.compile(
    r"^https?://github\.com/([^/]+/[^/]+)/issues/(\d+)(?:\?.*)?$", re.IGNORECASE
)
SLACK_THREAD_URL = re.compile(r"^https?://.+\.slack\.com/archives/[A-Z0-9]+/p\d+", re.IGNORECASE)
TRELLO_CARD_URL = re.compile(r"^https?://(www\.)?trello\.com/c/", re.IGNORECASE)
FRONTMATTER = re.compile(r"^---\n(.*?)\n---\n?", re.DOTALL)


class SourceError(RuntimeError):
    """Raised when a source input cannot be turned into a task."""


def short_uuid() -> str:
    return str(uuid.uuid4()).split("-")[0]


def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-") or "task"


def parse_frontmatter(markdown: str) -> dict[str, str]:
    match = FRONTMATTER.match(markdown)
    if match is None:
        return {}
    values: dict[str, str] = {}
    for line in match.group(1).split("\n"):
        key, sep, raw = line.partition(":")
        if not sep or not key.strip():
            continue
        value = raw.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        values[key.strip().lower()] = value
    return values


def parse_markdown_title(markdown: str, fallback: str) -> str:
    for line in markdown.split("\n"):
        match = re.match(r"^#\s+(.+)$", line)
        if match:
            return match.group(1).strip()
    return fallback


def prompt_title(prompt: str) -> str:
    seed = next((line.strip() for line in prompt.split("\n") if line.strip()), "prompt task")
    return f"{seed[:77]}..." if len(seed) > 80 else seed


class SourceResolver:
    """Turns CLI source inputs into task contexts.

    Accepts ``md:``/``prompt:`` prefixes, markdown files, issue numbers, GitHub
    issue URLs, and Trello/Slack URLs through configured external commands.
    Anything else that is not a URL becomes a prompt task.
    """

    def __init__(self, config: AutopilotConfig, hosting: GitHubClient | None = None) -> None:
        self.config = config
        self.hosting = hosting or GitHubClient(config.repo_root)

    def _repos_matching(self, repo_hint: str | None) -> list[RepoEntry]:
        if not repo_hint:
            return list(self.config.repos)
        return [
            entry
            for entry in self.config.repos
            if entry.repo == repo_hint or repo_short_name(entry.repo) == repo_hint
        ]

    def _repo_and_scope(
        self,
        repo_hint: str | None,
        override_repo: str | None = None,
        override_scope: str | None = None,
    ) -> tuple[str, str]:
        repo = override_repo
        if repo is None:
            entry = self.config.repo_for(repo_hint)
            repo = entry.repo if entry else None
        if not repo:
            raise SourceError("Could not resolve target repo")
        scope = override_scope or next(
            (entry.path for entry in self.config.repos if entry.repo == repo), "."
        )
        return repo, scope

    def _context(
        self,
        task_id: str,
        title: str,
        body: str,
        repo: str,
        scope: str,
        issue_number: int | None = None,
    ) -> TaskContext:
        return build_free_form_context(
            task_id, title, body, repo, scope, self.config.repo_root, issue_number
        )

    async def fetch_issue(self, number: int, repo_hint: str | None) -> TaskContext:
        repos = self._repos_matching(repo_hint)
        for entry in repos:
            try:
                issue = await self.hosting.view_issue(number, entry.repo)
            except HostingError:
                continue
            return build_issue_context(
                issue.number, issue.title, issue.body, entry.repo, entry.path, self.config.repo_root
            )
        if not repos and repo_hint and "/" in repo_hint:
            try:
                issue = await self.hosting.view_issue(number, repo_hint)
            except HostingError:
                pass
            else:
                return build_issue_context(
                    issue.number, issue.title, issue.body, repo_hint, ".", self.config.repo_root
                )
        raise SourceError(f"GitHub issue #{number} not found")

    def markdown_task(
        self, path: Path, repo_hint: str | None, *, with_uuid: bool = False
    ) -> TaskContext:
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise SourceError(f"Cannot read markdown task {path}: {exc}") from exc
        meta = parse_frontmatter(raw)
        repo, scope = self._repo_and_scope(
            repo_hint, meta.get("repo") or None, meta.get("scope") or meta.get("path") or None
        )
        stem = re.sub(r"\.md$", "", path.name, flags=re.IGNORECASE)
        base_id = meta.get("id") or f"md-{stem}"
        task_id = f"{base_id}-{short_uuid()}" if with_uuid and not meta.get("id") else base_id
        title = meta.get("title") or parse_markdown_title(raw, stem)
        number_raw = meta.get("issue") or meta.get("issuenumber") or meta.get("number")
        issue_number = int(number_raw) if number_raw and number_raw.isdigit() else None
        return self._context(task_id, title, raw, repo, scope, issue_number)

    def prompt_task(
        self, prompt: str, repo_hint: str | None, *, with_uuid: bool = False
    ) -> TaskContext:
        repo, scope = self._repo_and_scope(repo_hint)
        title = prompt_title(prompt)
        base_id = f"prompt-{slugify(title)}"
        task_id = f"{base_id}-{short_uuid()}" if with_uuid else base_id
        return self._context(task_id, title, prompt, repo, scope)

    def _command_path(self, command: str) -> str:
        if command.startswith("~/"):
            return str(Path(command).expanduser())
        if not Path(command).is_absolute() and "/" in command:
            return str((self.config.home / command).resolve())
        return command

    async def _run_command(self, command: str, source: str) -> str:
        argv = [command, source]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError as exc:
            raise SourceError(f"Source command not found: {command}") from exc
        except PermissionError:
            if not command.endswith(".py"):
                raise
            process = await asyncio.create_subprocess_exec(
                sys.executable,
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise SourceError(f"Source command {command} failed: {detail}")
        return stdout.decode("utf-8", errors="replace")

    async def via_command(
        self, kind: str, source: str, repo_hint: str | None, *, with_uuid: bool = False
    ) -> TaskContext | None:
        command = self.config.source_commands.get(kind)
        if not command:
            return None
        output = await self._run_command(self._command_path(command), source)
        try:
            payload: dict[str, Any] = json.loads(output)
        except json.JSONDecodeError as exc:
            raise SourceError(f"Source command for {kind} did not print JSON") from exc
        if not payload.get("title"):
            raise SourceError(f"Source command for {kind} returned no title")
        repo, scope = self._repo_and_scope(
            repo_hint, payload.get("repo"), payload.get("scopePath") or payload.get("scope_path")
        )
        base_id = payload.get("id") or f"{kind}-{slugify(payload['title'])}"
        task_id = f"{base_id}-{short_uuid()}" if with_uuid else base_id
        number = payload.get("number")
        return self._context(
            task_id,
            payload["title"],
            str(payload.get("body") or ""),
            repo,
            scope,
            int(number) if isinstance(number, int) else None,
        )

    async def resolve_one(
        self, source: str, repo_hint: str | None = None, *, with_uuid: bool = False
    ) -> TaskContext:
        text = source.strip()
        if not text:
            raise SourceError("Empty source input")

        if text.startswith("md:"):
            return self.markdown_task(Path(text[3:].strip()), repo_hint, with_uuid=with_uuid)
        if text.startswith("prompt:"):
            return self.prompt_task(text[7:].strip(), repo_hint, with_uuid=with_uuid)
        if text.lower().endswith(".md") and Path(text).is_file():
            return self.markdown_task(Path(text), repo_hint, with_uuid=with_uuid)
        if text.isdigit():
            return await self.fetch_issue(int(text), repo_hint)

        issue_url = GITHUB_ISSUE_URL.match(text)
        if issue_url:
            scripted = await self.via_command("github", text, repo_hint, with_uuid=with_uuid)
            if scripted is not None:
                return scripted
            repo = issue_url.group(1)
            try:
                issue = await self.hosting.view_issue(int(issue_url.group(2)), repo)
            except HostingError as exc:
                raise SourceError(str(exc)) from exc
            _, scope = self._repo_and_scope(repo_hint, repo)
            return build_issue_context(
                issue.number, issue.title, issue.body, repo, scope, self.config.repo_root
            )

        for kind, pattern in (("trello", TRELLO_CARD_URL), ("slack", SLACK_THREAD_URL)):
            if pattern.match(text):
                scripted = await self.via_command(kind, text, repo_hint, with_uuid=with_uuid)
                if scripted is None:
                    raise SourceError(
                        f"{kind.capitalize()} source not configured. "
                        f"Set source_commands.{kind} in config.toml."
                    )
                return scripted

        if re.match(r"^https?://", text, re.IGNORECASE):
            raise SourceError(
                f'Unrecognized URL: "{text}". '
                "Supported: GitHub issue URLs, Trello card URLs, Slack thread URLs."
            )

        preview = f"{text[:60]}..." if len(text) > 60 else text
        logger.warning(f'No source type matched; treating as prompt: "{preview}"')
        return self.prompt_task(text, repo_hint, with_uuid=with_uuid)

    async def resolve(
        self, sources: Sequence[str], repo_hint: str | None = None, *, with_uuid: bool = False
    ) -> list[TaskContext]:
        return [
            await self.resolve_one(source, repo_hint, with_uuid=with_uuid) for source in sources
        ]
