from pathlib import Path

import pytest

from autopilot.config import AutopilotConfig
from autopilot.state import artifacts
from autopilot.state.artifacts import ArtifactDir
from autopilot.state.branches import GitClient, worktree_path
from autopilot.state.context import (
    ContextError,
    SourceKind,
    build_free_form_context,
    build_issue_context,
    context_from_artifacts,
    parse_initial_description,
    render_initial_description,
)
from conftest import commit_file, run_git


def _config(repo_root: Path) -> AutopilotConfig:
    return AutopilotConfig.from_dict(
        {"repos": [{"repo": "acme/api", "path": "services/api"}]},
        home=repo_root,
        repo_root=repo_root,
        host_repo="acme/api",
    )


def test_artifact_validity_requires_minimum_length(tmp_path: Path) -> None:
    files = ArtifactDir(tmp_path / "task")

    assert files.is_valid(artifacts.RESEARCH, artifacts.MIN_RESEARCH_LENGTH) is False
    files.write(artifacts.RESEARCH, "x" * 200)
    assert files.is_valid(artifacts.RESEARCH, artifacts.MIN_RESEARCH_LENGTH) is False
    files.write(artifacts.RESEARCH, "x" * 201)
    assert files.is_valid(artifacts.RESEARCH, artifacts.MIN_RESEARCH_LENGTH) is True


def test_artifact_write_if_absent_and_delete(tmp_path: Path) -> None:
    files = ArtifactDir(tmp_path / "task")

    assert files.write_if_absent(artifacts.PLAN, "first") is True
    assert files.write_if_absent(artifacts.PLAN, "second") is False
    assert files.read(artifacts.PLAN) == "first"
    assert files.delete(artifacts.PLAN, artifacts.REVIEW) == [artifacts.PLAN]
    assert files.clear() is True
    assert files.clear() is False


def test_issue_context_derives_paths_from_id(tmp_path: Path) -> None:
    ctx = build_issue_context(42, "Fix login", "body", "acme/api", ".", tmp_path)

    assert ctx.id == "issue-42"
    assert ctx.branch == "auto-pr/issue-42"
    assert ctx.artifact_dir_relative == ".auto-pr/api/issue-42"
    assert ctx.artifact_dir == tmp_path / ".auto-pr/api/issue-42"
    assert ctx.ref == "acme/api#42"
    assert ctx.is_issue is True


def test_free_form_context_sanitizes_id(tmp_path: Path) -> None:
    ctx = build_free_form_context("md-my task!", "Task", "", "acme/api", ".", tmp_path)

    assert ctx.id == "md-my-task"
    assert ctx.source_kind is SourceKind.FREE_FORM
    assert ctx.ref == "acme/api:md-my-task"
    assert ctx.is_issue is False


def test_initial_description_roundtrip(tmp_path: Path) -> None:
    ctx = build_issue_context(7, "Add export", "Line one\n\nLine two", "acme/api", ".", tmp_path)

    title, body = parse_initial_description(render_initial_description(ctx), "fallback")

    assert title == "Add export"
    assert body == "Line one\n\nLine two"


def test_context_from_artifacts_prefers_legacy_layout(tmp_path: Path) -> None:
    config = _config(tmp_path)
    legacy = ArtifactDir(tmp_path / ".auto-pr" / "issue-9")
    legacy.write(artifacts.INITIAL_DESCRIPTION, "# Old layout\n\n> acme/api#9\n\nbody\n")

    ctx = context_from_artifacts("issue-9", "api", config)

    assert ctx.issue_number == 9
    assert ctx.title == "Old layout"
    assert ctx.scope_path == "services/api"
    assert ctx.artifact_dir_relative == ".auto-pr/issue-9"


def test_context_from_artifacts_requires_prior_run(tmp_path: Path) -> None:
    with pytest.raises(ContextError, match="Run the pipeline first"):
        context_from_artifacts("md-nothing", "api", _config(tmp_path))
    with pytest.raises(ContextError, match="Unknown repo"):
        context_from_artifacts("md-nothing", "web", _config(tmp_path))


def test_ensure_branch_creates_from_main(git_repo: Path) -> None:
    main_tip = run_git(["rev-parse", "main"], cwd=git_repo)
    git = GitClient(git_repo)

    git.ensure_branch("auto-pr/issue-1")

    assert git.current_branch() == "auto-pr/issue-1"
    assert run_git(["rev-parse", "HEAD"], cwd=git_repo) == main_tip


def test_ensure_branch_checks_out_remote_branch(git_repo: Path) -> None:
    git = GitClient(git_repo)
    run_git(["checkout", "-b", "auto-pr/issue-2"], cwd=git_repo)
    pushed = commit_file(git_repo, "feature.txt", "work\n", "work")
    run_git(["push", "origin", "auto-pr/issue-2"], cwd=git_repo)
    run_git(["checkout", "main"], cwd=git_repo)
    run_git(["branch", "-D", "auto-pr/issue-2"], cwd=git_repo)

    assert git.local_branch_exists("auto-pr/issue-2") is False
    assert git.remote_branch_exists("auto-pr/issue-2") is True
    git.ensure_branch("auto-pr/issue-2")

    assert git.current_branch() == "auto-pr/issue-2"
    assert run_git(["rev-parse", "HEAD"], cwd=git_repo) == pushed


def test_ensure_branch_falls_back_to_head_without_main(git_repo: Path) -> None:
    run_git(["checkout", "-b", "side"], cwd=git_repo)
    side_tip = commit_file(git_repo, "side.txt", "side\n", "side work")
    git = GitClient(git_repo, main_branch="trunk")

    git.ensure_branch("auto-pr/issue-4")

    assert git.current_branch() == "auto-pr/issue-4"
    assert run_git(["rev-parse", "HEAD"], cwd=git_repo) == side_tip


def test_returning_to_main_after_error(git_repo: Path) -> None:
    git = GitClient(git_repo)

    with pytest.raises(RuntimeError):
        with git.returning_to_main():
            git.ensure_branch("auto-pr/issue-3")
            raise RuntimeError("step blew up")

    assert git.current_branch() == "main"


def test_commit_paths_reports_nothing_staged(git_repo: Path) -> None:
    git = GitClient(git_repo)
    ArtifactDir(git_repo / ".auto-pr/api/t").write(artifacts.PLAN, "plan")

    assert git.commit_paths([".auto-pr/api/t"], "add plan") is True
    assert git.commit_paths([".auto-pr/api/t"], "again") is False
    assert run_git(["log", "-1", "--format=%s"], cwd=git_repo) == "add plan"


def test_integrate_main_rebases_clean_branch(git_repo: Path) -> None:
    git = GitClient(git_repo)
    git.ensure_branch("auto-pr/t")
    assert git.integrate_main() == "up-to-date"

    commit_file(git_repo, "feature.txt", "feature\n", "feature")
    run_git(["checkout", "main"], cwd=git_repo)
    commit_file(git_repo, "other.txt", "other\n", "other")
    run_git(["checkout", "auto-pr/t"], cwd=git_repo)

    assert git.integrate_main() == "rebase"
    assert git.is_ancestor("main") is True


def test_integrate_main_commits_conflicts(git_repo: Path) -> None:
    git = GitClient(git_repo)
    git.ensure_branch("auto-pr/t")
    commit_file(git_repo, "README.md", "branch side\n", "branch edit")
    run_git(["checkout", "main"], cwd=git_repo)
    commit_file(git_repo, "README.md", "main side\n", "main edit")
    run_git(["checkout", "auto-pr/t"], cwd=git_repo)

    assert git.integrate_main() == "conflict-commit"
    assert "<<<<<<<" in (git_repo / "README.md").read_text(encoding="utf-8")
    assert run_git(["status", "--porcelain"], cwd=git_repo) == ""


def test_sync_with_remote_pulls_main(git_repo: Path, tmp_path: Path) -> None:
    other = tmp_path / "other"
    run_git(["clone", str(tmp_path / "remote.git"), str(other)], cwd=tmp_path)
    run_git(["config", "user.email", "test@example.com"], cwd=other)
    run_git(["config", "user.name", "Test User"], cwd=other)
    upstream = commit_file(other, "upstream.txt", "new\n", "upstream")
    run_git(["push", "origin", "main"], cwd=other)

    git = GitClient(git_repo)
    git.ensure_branch("auto-pr/t")

    assert git.sync_with_remote() == "main"
    assert git.current_branch() == "main"
    assert run_git(["rev-parse", "HEAD"], cwd=git_repo) == upstream


def test_provision_worktree_replaces_stale_directory(git_repo: Path, tmp_path: Path) -> None:
    git = GitClient(git_repo)
    target = worktree_path(tmp_path / "worktrees", "acme/api", "api", "issue-5")
    target.mkdir(parents=True)
    (target / "stale.txt").write_text("old", encoding="utf-8")

    path = git.provision_worktree(target)

    assert path == tmp_path / "worktrees" / "acme-api" / "api-issue-5"
    assert (path / "README.md").exists()
    assert not (path / "stale.txt").exists()
