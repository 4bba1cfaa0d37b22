import asyncio
import json
from pathlib import Path

import pytest

from autopilot.config import AutopilotConfig
from autopilot.hosting import GitHubClient, HostingError, Issue
from autopilot.sources import (
    SourceError,
    SourceResolver,
    parse_frontmatter,
    prompt_title,
    slugify,
)
from autopilot.state.context import SourceKind


class FakeIssues:
    def __init__(self, issues: dict[tuple[str, int], Issue]) -> None:
        self.issues = issues
        self.requests: list[tuple[int, str]] = []

    async def view_issue(self, number: int, repo: str) -> Issue:
        self.requests.append((number, repo))
        issue = self.issues.get((repo, number))
        if issue is None:
            raise HostingError(f"issue {number} not found in {repo}")
        return issue


def _resolver(
    tmp_path: Path, issues: dict[tuple[str, int], Issue] | None = None, **settings
) -> SourceResolver:
    config = AutopilotConfig.from_dict(
        {
            "repos": [{"repo": "acme/api", "path": "services/api"}, {"repo": "acme/web"}],
            **settings,
        },
        home=tmp_path,
        repo_root=tmp_path,
        host_repo="acme/api",
    )
    return SourceResolver(config, FakeIssues(issues or {}))  # type: ignore[arg-type]


def test_helpers() -> None:
    assert slugify("Add CSV export!") == "add-csv-export"
    assert slugify("!!!") == "task"
    assert prompt_title("\n\nFirst line\nsecond") == "First line"
    assert prompt_title("x" * 100) == "x" * 77 + "..."
    assert parse_frontmatter('---\nrepo: acme/web\ntitle: "Quoted"\n---\n# Body') == {
        "repo": "acme/web",
        "title": "Quoted",
    }


def test_issue_number_searches_configured_repos(tmp_path: Path) -> None:
    issue = Issue(12, "Broken button", "Click does nothing")
    resolver = _resolver(tmp_path, {("acme/web", 12): issue})

    ctx = asyncio.run(resolver.resolve_one("12"))

    assert ctx.id == "issue-12"
    assert ctx.repo == "acme/web"
    assert ctx.source_kind is SourceKind.ISSUE
    assert resolver.hosting.requests == [(12, "acme/api"), (12, "acme/web")]


def test_missing_issue_is_reported(tmp_path: Path) -> None:
    with pytest.raises(SourceError, match="#99 not found"):
        asyncio.run(_resolver(tmp_path).resolve_one("99"))


def test_issue_url_uses_repo_from_url(tmp_path: Path) -> None:
    issue = Issue(5, "Docs", "Update docs")
    resolver = _resolver(tmp_path, {("acme/api", 5): issue})

    ctx = asyncio.run(resolver.resolve_one("https://github.com/acme/api/issues/5"))

    assert ctx.issue_number == 5
    assert ctx.scope_path == "services/api"


def test_markdown_task_reads_frontmatter(tmp_path: Path) -> None:
    task = tmp_path / "Export.md"
    task.write_text(
        "---\nrepo: acme/web\nissue: 31\n---\n# Add export\n\nExport as CSV.\n", encoding="utf-8"
    )

    ctx = asyncio.run(_resolver(tmp_path).resolve_one(str(task)))

    assert ctx.id == "md-Export"
    assert ctx.title == "Add export"
    assert ctx.repo == "acme/web"
    assert ctx.issue_number == 31
    assert ctx.source_kind is SourceKind.FREE_FORM
    assert ctx.artifact_dir_relative == ".auto-pr/web/md-Export"


def test_prompt_task_with_uuid(tmp_path: Path) -> None:
    ctx = asyncio.run(
        _resolver(tmp_path).resolve_one("prompt: Add a --json flag", with_uuid=True)
    )

    assert ctx.id.startswith("prompt-add-a-json-flag-")
    assert len(ctx.id.rsplit("-", 1)[-1]) == 8
    assert ctx.repo == "acme/api"


def test_plain_text_becomes_prompt(tmp_path: Path) -> None:
    ctx = asyncio.run(_resolver(tmp_path).resolve_one("Tidy the logging setup"))

    assert ctx.id == "prompt-tidy-the-logging-setup"


def test_unknown_urls_are_rejected(tmp_path: Path) -> None:
    resolver = _resolver(tmp_path)

    with pytest.raises(SourceError, match="Unrecognized URL"):
        asyncio.run(resolver.resolve_one("https://example.com/ticket/1"))
    with pytest.raises(SourceError, match="source_commands.slack"):
        asyncio.run(resolver.resolve_one("https://acme.slack.com/archives/C123/p456"))


def test_trello_card_through_source_command(tmp_path: Path) -> None:
    script = tmp_path / "trello.sh"
    payload = {"id": "trello-abc", "title": "Card title", "body": "Card body", "repo": "acme/web"}
    script.write_text(f"#!/bin/sh\necho '{json.dumps(payload)}'\n", encoding="utf-8")
    script.chmod(0o755)
    resolver = _resolver(tmp_path, source_commands={"trello": str(script)})

    ctx = asyncio.run(resolver.resolve_one("https://trello.com/c/abc123/card"))

    assert ctx.id == "trello-abc"
    assert ctx.title == "Card title"
    assert ctx.body == "Card body"
    assert ctx.repo == "acme/web"


def test_failing_source_command(tmp_path: Path) -> None:
    script = tmp_path / "slack.sh"
    script.write_text("#!/bin/sh\necho nope >&2\nexit 3\n", encoding="utf-8")
    script.chmod(0o755)
    resolver = _resolver(tmp_path, source_commands={"slack": str(script)})

    with pytest.raises(SourceError, match="nope"):
        asyncio.run(resolver.resolve_one("https://acme.slack.com/archives/C123/p456"))


def _fake_gh(tmp_path: Path, output: str) -> GitHubClient:
    script = tmp_path / "gh.sh"
    script.write_text(f"#!/bin/sh\ncat <<'JSON'\n{output}\nJSON\n", encoding="utf-8")
    script.chmod(0o755)
    return GitHubClient(tmp_path, binary=str(script))


def test_view_issue_skips_malformed_labels(tmp_path: Path) -> None:
    payload = {
        "number": 7,
        "title": "Flaky test",
        "body": "Fails on CI",
        "labels": ["bare-string", {"name": "ai-autopilot"}, {"color": "red"}, None],
    }
    gh = _fake_gh(tmp_path, json.dumps(payload))

    issue = asyncio.run(gh.view_issue(7, "acme/api"))

    assert issue == Issue(7, "Flaky test", "Fails on CI", ("ai-autopilot",))


def test_view_issue_rejects_non_object_output(tmp_path: Path) -> None:
    gh = _fake_gh(tmp_path, "[1, 2, 3]")

    with pytest.raises(HostingError, match="Unexpected gh output"):
        asyncio.run(gh.view_issue(7, "acme/api"))
