import asyncio
from pathlib import Path

import pytest

from autopilot.config import AgentStep
from autopilot.hooks import render_hook, run_hook
from autopilot.prompts import TEMPLATE_FILES, PromptResolver, TemplateNotFoundError


def test_every_agent_step_has_packaged_template() -> None:
    resolver = PromptResolver()

    assert set(TEMPLATE_FILES) == set(AgentStep)
    for step in AgentStep:
        assert resolver.load(step).strip()


def test_plan_review_template_demands_verdict() -> None:
    assert "VERDICT: APPROVED" in PromptResolver().load(AgentStep.PLAN_REVIEW)


def test_render_substitutes_tokens() -> None:
    rendered = PromptResolver().render(
        AgentStep.RESEARCH, {"ISSUE_DIR": ".auto-pr/api/issue-1", "SCOPE_PATH": "services/api"}
    )

    assert ".auto-pr/api/issue-1" in rendered
    assert "{{ISSUE_DIR}}" not in rendered


def test_home_and_profile_templates_shadow_packaged(tmp_path: Path) -> None:
    home = tmp_path / "home"
    (home / "prompt-templates").mkdir(parents=True)
    (home / "prompt-templates" / "002-plan.md").write_text("home plan", encoding="utf-8")
    profile_dir = tmp_path / "profile"
    profile_dir.mkdir()
    (profile_dir / "001-research.md").write_text("profile {{ISSUE_DIR}}", encoding="utf-8")

    resolver = PromptResolver(home, profile_dir)

    assert resolver.load(AgentStep.PLAN) == "home plan"
    assert resolver.render(AgentStep.RESEARCH, {"ISSUE_DIR": "x"}) == "profile x"
    assert "home plan" not in resolver.load(AgentStep.REVIEW)


def test_missing_template_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(TEMPLATE_FILES, AgentStep.REVIEW, "999-missing.md")

    with pytest.raises(TemplateNotFoundError):
        PromptResolver().locate(AgentStep.REVIEW)


def test_render_hook_placeholders() -> None:
    assert render_hook("notify {{step}} {{issue}}", step="plan", issue="acme/api#1") == (
        "notify plan acme/api#1"
    )


def test_run_hook_runs_in_cwd(tmp_path: Path) -> None:
    ok = asyncio.run(run_hook("echo {{step}} > hook.txt", cwd=tmp_path, step="review"))

    assert ok is True
    assert (tmp_path / "hook.txt").read_text(encoding="utf-8").strip() == "review"


def test_run_hook_failures_are_swallowed(tmp_path: Path) -> None:
    assert asyncio.run(run_hook("exit 2", cwd=tmp_path)) is False
    assert asyncio.run(run_hook("sleep 5", cwd=tmp_path, timeout=0.1)) is False
    assert asyncio.run(run_hook(None, cwd=tmp_path)) is True
