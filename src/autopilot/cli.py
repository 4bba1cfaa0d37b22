from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import click
from loguru import logger

from autopilot import __version__
from autopilot.backends import ResilientBackend, create_backend
from autopilot.backends.base import BackendExecutionError
from autopilot.config import (
    CONFIG_FILE_NAME,
    PR_MODES,
    RUNNERS,
    STARTER_CONFIG,
    AgentStep,
    AutopilotConfig,
    CliOverrides,
    ConfigError,
    resolve_config,
    resolve_home,
    save_config,
)
from autopilot.hosting import GitHubClient, HostingError
from autopilot.log import configure_logging
from autopilot.pipeline import (
    PIPELINE,
    TaskRunner,
    parse_step_name,
    reset_artifacts,
)
from autopilot.prompts import PromptResolver, TemplateNotFoundError
from autopilot.sources import SourceError, SourceResolver
from autopilot.state.branches import GitError
from autopilot.state.context import (
    ContextError,
    TaskContext,
    build_issue_context,
    context_from_artifacts,
    repo_short_name,
)
from autopilot.steps import StepResult, TaskRuntime, run_refresh, run_review_round
from autopilot.steps.base import Confirm, decline
from autopilot.usage import UsageAccountant, format_usage

USER_ERRORS = (ConfigError, SourceError, ContextError)
OPERATION_ERRORS = USER_ERRORS + (GitError, HostingError, BackendExecutionError)


@dataclass(slots=True)
class Session:
    home: str | None
    profile: str | None


def _interactive_confirm() -> Confirm:
    if sys.stdin.isatty() and sys.stdout.isatty():
        return lambda question: click.confirm(question, default=False)
    return decline


def _load_config(session: Session, overrides: CliOverrides | None = None) -> AutopilotConfig:
    config = resolve_config(session.home, session.profile, overrides)
    logger.info(f"Config home: {config.home}")
    logger.info(f"Runner: {config.describe_runner()}")
    return config


def _build_agent(config: AutopilotConfig, accountant: UsageAccountant) -> ResilientBackend:
    return create_backend(config, accountant, event_hook=_log_backend_event)


def _log_backend_event(event: dict[str, Any]) -> None:
    logger.debug(f"backend event: {event}")


def _run_async(
    operation: Awaitable[Any], errors: tuple[type[Exception], ...] = USER_ERRORS
) -> Any:
    try:
        return asyncio.run(operation)
    except errors as exc:
        raise click.ClickException(str(exc)) from exc


def _repo_short(config: AutopilotConfig, repo_hint: str | None) -> str:
    entry = config.repo_for(repo_hint)
    if entry is None:
        raise click.ClickException(f"Unknown repo: {repo_hint}")
    return repo_short_name(entry.repo)


def _task_context(
    config: AutopilotConfig,
    *,
    issue: int | None,
    task_id: str | None,
    repo_hint: str | None,
) -> TaskContext:
    """Find a task that has already been run, by issue number or task id."""
    if task_id is None and issue is None:
        raise click.UsageError("Provide --issue or --id")
    entry = config.repo_for(repo_hint)
    if entry is None:
        raise click.ClickException(f"Unknown repo: {repo_hint}")
    try:
        return context_from_artifacts(
            task_id or f"issue-{issue}", repo_short_name(entry.repo), config
        )
    except ContextError:
        if task_id is not None or issue is None:
            raise
    return build_issue_context(
        issue, f"Issue #{issue}", "", entry.repo, entry.path, config.repo_root
    )


def _run_special(
    session: Session,
    operation: Callable[[TaskContext, TaskRuntime], Awaitable[StepResult]],
    resolve: Callable[[AutopilotConfig], Awaitable[TaskContext]],
) -> None:
    try:
        config = _load_config(session)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    accountant = UsageAccountant()
    agent = _build_agent(config, accountant)

    async def _go() -> StepResult:
        ctx = await resolve(config)
        runtime = TaskRuntime.create(config, ctx.repo_root, agent, confirm=_interactive_confirm())
        return await operation(ctx, runtime)

    result: StepResult = _run_async(_go(), OPERATION_ERRORS)
    click.echo(f"Total cost: {format_usage(accountant.snapshot())}")
    if not result.ok:
        raise click.ClickException(result.reason or "operation failed")


@click.group()
@click.version_option(__version__, prog_name="ai-autopilot")
@click.option("--home", default=None, help="Config home (defaults to $AUTOPILOT_HOME).")
@click.option("--profile", "-p", default=None, help="Named profile from config.toml.")
@click.option("--verbose", is_flag=True, default=False)
@click.pass_context
def cli(ctx: click.Context, home: str | None, profile: str | None, verbose: bool) -> None:
    """Drive coding agents from a task description to a pull request."""
    configure_logging(verbose)
    ctx.obj = Session(home=home, profile=profile)


@cli.command("run")
@click.argument("sources", nargs=-1)
@click.option("--repo", "-r", "repo_hint", default=None, help="Target repo (owner/name).")
@click.option("--id", "task_id", default=None, help="Re-run an existing task by id.")
@click.option("--with-uuid", is_flag=True, default=False, help="Suffix new task ids.")
@click.option("--resume", is_flag=True, default=False, help="Keep existing artifacts.")
@click.option("--until", "-u", default=None, help="Stop after this pipeline step.")
@click.option("--ask-worktree", is_flag=True, default=False)
@click.option("--ask-before-implement", is_flag=True, default=False)
@click.option("--pr-creation", type=click.Choice(PR_MODES), default=None)
@click.option("--runner", type=click.Choice(RUNNERS), default=None)
@click.option("--model", "-m", default=None, help="Force one model for every step.")
@click.pass_obj
def run_command(
    session: Session,
    sources: tuple[str, ...],
    repo_hint: str | None,
    task_id: str | None,
    with_uuid: bool,
    resume: bool,
    until: str | None,
    ask_worktree: bool,
    ask_before_implement: bool,
    pr_creation: str | None,
    runner: str | None,
    model: str | None,
) -> None:
    if not sources and task_id is None:
        raise click.UsageError("Provide at least one source or --id")
    if with_uuid and resume:
        logger.warning("--with-uuid is ignored with --resume so existing task ids are reused")
        with_uuid = False

    overrides = CliOverrides(
        runner=runner,  # type: ignore[arg-type]
        model=model,
        pr_mode=pr_creation,  # type: ignore[arg-type]
        ask_before_implement=ask_before_implement,
    )
    try:
        config = _load_config(session, overrides)
        stop_value = until or config.profile_until
        stop_after = parse_step_name(stop_value) if stop_value else None
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    async def _contexts() -> list[TaskContext]:
        if task_id is not None:
            return [context_from_artifacts(task_id, _repo_short(config, repo_hint), config)]
        resolver = SourceResolver(config, GitHubClient(config.repo_root))
        return await resolver.resolve(sources, repo_hint, with_uuid=with_uuid)

    contexts: list[TaskContext] = _run_async(_contexts())
    if not resume and task_id is None:
        for ctx in contexts:
            reset_artifacts(ctx)

    confirm = _interactive_confirm()
    use_worktree = False
    if ask_worktree or config.ask_worktree_start:
        use_worktree = confirm("Run each task in an isolated worktree?")

    accountant = UsageAccountant()
    task_runner = TaskRunner(
        config,
        _build_agent(config, accountant),
        accountant,
        confirm=confirm,
        use_worktree=use_worktree,
    )
    try:
        task_runner.sync_with_remote()
    except GitError as exc:
        raise click.ClickException(f"Failed to sync with remote: {exc}") from exc
    report = asyncio.run(task_runner.run_all(contexts, stop_after))

    click.echo(f"Total: {format_usage(report.total)}")
    if report.failed:
        refs = ", ".join(task.ctx.ref for task in report.failed)
        click.echo(f"Failed: {refs}", err=True)
        sys.exit(1)


@cli.command("refresh")
@click.option("--issue", type=int, default=None)
@click.option("--id", "task_id", default=None)
@click.option("--repo", "-r", "repo_hint", default=None)
@click.pass_obj
def refresh_command(
    session: Session, issue: int | None, task_id: str | None, repo_hint: str | None
) -> None:
    """Rebase a task branch onto main and let the agent fix the fallout."""

    async def _resolve(config: AutopilotConfig) -> TaskContext:
        return _task_context(config, issue=issue, task_id=task_id, repo_hint=repo_hint)

    _run_special(session, run_refresh, _resolve)


@cli.command("review-round")
@click.option("--issue", type=int, default=None)
@click.option("--id", "task_id", default=None)
@click.option("--source", default=None, help="Resolve the task from a source input.")
@click.option("--repo", "-r", "repo_hint", default=None)
@click.pass_obj
def review_round_command(
    session: Session,
    issue: int | None,
    task_id: str | None,
    source: str | None,
    repo_hint: str | None,
) -> None:
    """Address the open pull request's review feedback once."""

    async def _resolve(config: AutopilotConfig) -> TaskContext:
        if source is not None:
            resolver = SourceResolver(config, GitHubClient(config.repo_root))
            return await resolver.resolve_one(source, repo_hint)
        return _task_context(config, issue=issue, task_id=task_id, repo_hint=repo_hint)

    _run_special(session, run_review_round, _resolve)


@cli.command("reset")
@click.argument("task_id")
@click.option("--repo", "-r", "repo_hint", default=None)
@click.pass_obj
def reset_command(session: Session, task_id: str, repo_hint: str | None) -> None:
    """Delete a task's artifacts so the next run starts from scratch."""
    try:
        config = _load_config(session)
        ctx = context_from_artifacts(task_id, _repo_short(config, repo_hint), config)
    except USER_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if reset_artifacts(ctx):
        click.echo(f"Removed {ctx.artifact_dir_relative}")
    else:
        click.echo(f"Nothing to reset for {task_id}")


@cli.command("steps")
def steps_command() -> None:
    """List the pipeline steps in execution order."""
    for index, step in enumerate(PIPELINE, start=1):
        click.echo(f"{index:2d}. {step.name.value:<20} {step.title}")


@cli.command("init")
@click.pass_obj
def init_command(session: Session) -> None:
    home = resolve_home(session.home)
    config_path = home / CONFIG_FILE_NAME
    if config_path.exists():
        click.echo(f"Config already exists: {config_path}")
        return
    save_config(config_path, STARTER_CONFIG)
    (home / "prompt-templates").mkdir(parents=True, exist_ok=True)
    click.echo(f"Initialized ai-autopilot in {home}")
    click.echo(f"Config: {config_path}")


@cli.command("check")
@click.pass_obj
def check_command(session: Session) -> None:
    """Verify the config parses and every agent step has a prompt template."""
    try:
        config = _load_config(session)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    resolver = PromptResolver(config.home, config.prompt_dir)
    missing: list[str] = []
    for step in AgentStep:
        try:
            location = resolver.locate(step)
        except TemplateNotFoundError:
            missing.append(step.value)
            continue
        click.echo(f"ok   {step.value:<20} {location}")
    for step in missing:
        click.echo(f"FAIL {step:<20} template not found", err=True)
    if missing:
        raise click.ClickException(f"{len(missing)} prompt template(s) missing")
    click.echo(f"Runner: {config.describe_runner()}")
    click.echo(f"Repos: {', '.join(entry.repo for entry in config.repos)}")

