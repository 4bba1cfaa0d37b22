from __future__ import annotations

import json
import os
import re
import subprocess
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal

from loguru import logger

RunnerName = Literal["claude", "opencode"]
PrMode = Literal["always", "ask", "never"]

RUNNERS: tuple[RunnerName, ...] = ("claude", "opencode")
PR_MODES: tuple[PrMode, ...] = ("always", "ask", "never")
SOURCE_COMMAND_KINDS = ("github", "trello", "slack")

CONFIG_FILE_NAME = "config.toml"
DEFAULT_HOME = Path("~/.config/ai-autopilot")
DEFAULT_WORKTREE_BASE = Path("~/.cache/ai-autopilot/worktrees")
HOST_REPO_PLACEHOLDER = "local/unknown"

DEFAULT_MODELS: dict[RunnerName, str] = {
    "claude": "sonnet",
    "opencode": "opencode/kimi-k2.5",
}


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or validated."""


class AgentStep(StrEnum):
    """Identity of one agent invocation; keys model overrides and prompt templates."""

    RESEARCH = "research"
    PLAN = "plan"
    PLAN_ANNOTATIONS = "plan-annotations"
    PLAN_REVIEW = "plan-review"
    PLAN_IMPLEMENTATION = "plan-implementation"
    IMPLEMENT = "implement"
    REVIEW = "review"
    PR_DESCRIPTION = "pr-description"
    REFRESH = "refresh"
    REVIEW_ROUND = "review-round"


class PipelineStepName(StrEnum):
    """Identity of one pipeline step; keys hooks and the stop point."""

    RESEARCH = "research"
    PLAN = "plan"
    PLAN_ANNOTATIONS = "plan-annotations"
    PLAN_REVIEW_LOOP = "plan-review-loop"
    PLAN_IMPLEMENTATION = "plan-implementation"
    IMPLEMENT = "implement"
    REVIEW = "review"
    PR_DESCRIPTION = "pr-description"
    CREATE_PR = "create-pr"
    REMOVE_LABEL = "remove-label"


@dataclass(slots=True, frozen=True)
class RepoEntry:
    repo: str
    path: str = "."


@dataclass(slots=True)
class RunnerModels:
    default: str | None = None
    steps: dict[AgentStep, str] = field(default_factory=dict)


@dataclass(slots=True)
class HooksConfig:
    before_step: dict[PipelineStepName, str] = field(default_factory=dict)
    after_step: dict[PipelineStepName, str] = field(default_factory=dict)
    on_need_input: str | None = None


@dataclass(slots=True, frozen=True)
class RetryConfig:
    enabled: bool = False
    delay_seconds: float = 30.0
    max_delay_seconds: float = 300.0
    max_attempts: int | None = None


@dataclass(slots=True, frozen=True)
class ModelSelection:
    model: str | None
    source: Literal["step", "default"]

    @property
    def label(self) -> str:
        return self.model or "default"


@dataclass(slots=True, frozen=True)
class CliOverrides:
    runner: str | None = None
    model: str | None = None
    pr_mode: str | None = None
    ask_before_implement: bool = False


@dataclass(slots=True, frozen=True)
class AutopilotConfig:
    home: Path
    repo_root: Path
    host_repo: str
    agent_runner: RunnerName = "claude"
    pr_mode: PrMode = "always"
    ask_before_implement: bool = False
    models: dict[RunnerName, RunnerModels] = field(default_factory=dict)
    ask_worktree_start: bool = False
    worktree_base_dir: Path = DEFAULT_WORKTREE_BASE
    plan_review_loop_enabled: bool = True
    plan_review_max_rounds: int = 3
    trigger_label: str = "ai-autopilot"
    source_commands: dict[str, str] = field(default_factory=dict)
    repos: tuple[RepoEntry, ...] = ()
    main_branch: str = "main"
    remote: str = "origin"
    max_implement_iterations: int = 100
    max_turns: int | None = None
    heartbeat_seconds: float = 30.0
    retry: RetryConfig = field(default_factory=RetryConfig)
    hooks: HooksConfig = field(default_factory=HooksConfig)
    profile: str | None = None
    profile_until: PipelineStepName | None = None
    prompt_dir: Path | None = None

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        *,
        home: Path,
        repo_root: Path,
        host_repo: str,
        profile: str | None = None,
        profile_until: str | None = None,
        prompt_dir: str | None = None,
    ) -> AutopilotConfig:
        """Apply defaults to a merged raw mapping and validate enumerated values."""
        runner = _choice(data.get("agent_runner", "claude"), RUNNERS, "agent_runner")
        pr_mode = _choice(data.get("pr_mode", "always"), PR_MODES, "pr_mode")
        retry_data = _table(data.get("retry"), "retry")
        max_attempts = retry_data.get("max_attempts")
        max_turns = data.get("max_turns")
        heartbeat = retry_data.get("heartbeat_seconds", data.get("heartbeat_seconds", 30.0))
        return cls(
            home=home,
            repo_root=repo_root,
            host_repo=host_repo,
            agent_runner=runner,
            pr_mode=pr_mode,
            ask_before_implement=bool(data.get("ask_before_implement", False)),
            models=_resolve_models(data.get("models")),
            ask_worktree_start=bool(data.get("ask_worktree_start", False)),
            worktree_base_dir=_resolve_worktree_base(data.get("worktree_base_dir"), home),
            plan_review_loop_enabled=bool(data.get("plan_review_loop_enabled", True)),
            plan_review_max_rounds=max(
                1, _number(data.get("plan_review_max_rounds", 3), "plan_review_max_rounds", int)
            ),
            trigger_label=str(data.get("trigger_label", "ai-autopilot")),
            source_commands=_resolve_source_commands(data.get("source_commands")),
            repos=_resolve_repos(data, host_repo),
            main_branch=str(data.get("main_branch", "main")),
            remote=str(data.get("remote", "origin")),
            max_implement_iterations=max(
                1,
                _number(
                    data.get("max_implement_iterations", 100), "max_implement_iterations", int
                ),
            ),
            max_turns=_number(max_turns, "max_turns", int) if max_turns else None,
            heartbeat_seconds=max(1.0, _number(heartbeat, "retry.heartbeat_seconds", float)),
            retry=RetryConfig(
                enabled=bool(retry_data.get("enabled", False)),
                delay_seconds=max(
                    0.0,
                    _number(retry_data.get("delay_seconds", 30.0), "retry.delay_seconds", float),
                ),
                max_delay_seconds=max(
                    0.0,
                    _number(
                        retry_data.get("max_delay_seconds", 300.0), "retry.max_delay_seconds", float
                    ),
                ),
                max_attempts=(
                    _number(max_attempts, "retry.max_attempts", int)
                    if max_attempts is not None
                    else None
                ),
            ),
            hooks=_resolve_hooks(data.get("hooks")),
            profile=profile,
            profile_until=(
                _step_name(profile_until, "profiles.until") if profile_until else None
            ),
            prompt_dir=(home / Path(prompt_dir).expanduser()).resolve() if prompt_dir else None,
        )

    def runner_models(self, runner: RunnerName | None = None) -> RunnerModels:
        return self.models.get(runner or self.agent_runner) or RunnerModels()

    def select_model(self, step: AgentStep | None) -> ModelSelection:
        models = self.runner_models()
        if step is not None:
            step_model = models.steps.get(step)
            if step_model:
                return ModelSelection(step_model, "step")
        return ModelSelection(models.default, "default")

    def describe_runner(self) -> str:
        models = self.runner_models()
        suffix = f" | Step overrides: {len(models.steps)}" if models.steps else ""
        return f"Runner: {self.agent_runner} | Model: {models.default or 'default'}{suffix}"

    def repo_for(self, repo_hint: str | None) -> RepoEntry | None:
        """Find a configured repo by full ``owner/name`` or by short name."""
        if not repo_hint:
            return self.repos[0] if self.repos else None
        for entry in self.repos:
            if entry.repo == repo_hint or entry.repo.rsplit("/", 1)[-1] == repo_hint:
                return entry
        return None


def _choice(value: Any, allowed: tuple[str, ...], key: str) -> Any:
    text = str(value).strip()
    if text not in allowed:
        raise ConfigError(f"Invalid {key} '{text}'. Valid values: {', '.join(allowed)}")
    return text


def _number(value: Any, key: str, kind: Callable[[Any], Any]) -> Any:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid {key} '{value}'. Expected a number.")
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {key} '{value}'. Expected a number.") from exc


def _table(value: Any, key: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected '{key}' to be a table.")
    return dict(value)


def _agent_step(key: str, where: str) -> AgentStep:
    try:
        return AgentStep(key)
    except ValueError as exc:
        valid = ", ".join(step.value for step in AgentStep)
        raise ConfigError(f"Unknown step '{key}' in {where}. Valid steps: {valid}") from exc


def _step_name(key: str, where: str) -> PipelineStepName:
    try:
        return PipelineStepName(key)
    except ValueError as exc:
        valid = ", ".join(step.value for step in PipelineStepName)
        raise ConfigError(f"Unknown step '{key}' in {where}. Valid steps: {valid}") from exc


def _resolve_models(raw: Any) -> dict[RunnerName, RunnerModels]:
    table = _table(raw, "models")
    unknown = sorted(set(table) - set(RUNNERS))
    if unknown:
        raise ConfigError(f"Unknown runner(s) in models: {', '.join(unknown)}")
    resolved: dict[RunnerName, RunnerModels] = {}
    for runner in RUNNERS:
        runner_table = _table(table.get(runner), f"models.{runner}")
        steps_table = _table(runner_table.get("steps"), f"models.{runner}.steps")
        resolved[runner] = RunnerModels(
            default=runner_table.get("default") or DEFAULT_MODELS[runner],
            steps={
                _agent_step(key, f"models.{runner}.steps"): str(value)
                for key, value in steps_table.items()
                if value
            },
        )
    return resolved


def _resolve_hooks(raw: Any) -> HooksConfig:
    table = _table(raw, "hooks")
    before = _table(table.get("before_step"), "hooks.before_step")
    after = _table(table.get("after_step"), "hooks.after_step")
    return HooksConfig(
        before_step={_step_name(k, "hooks.before_step"): str(v) for k, v in before.items()},
        after_step={_step_name(k, "hooks.after_step"): str(v) for k, v in after.items()},
        on_need_input=table.get("on_need_input") or None,
    )


def _resolve_source_commands(raw: Any) -> dict[str, str]:
    table = _table(raw, "source_commands")
    unknown = sorted(set(table) - set(SOURCE_COMMAND_KINDS))
    if unknown:
        raise ConfigError(f"Unknown source command(s): {', '.join(unknown)}")
    return {kind: str(command) for kind, command in table.items() if command}


def _resolve_repos(data: Mapping[str, Any], host_repo: str) -> tuple[RepoEntry, ...]:
    raw_repos = data.get("repos") or []
    if not isinstance(raw_repos, list):
        raise ConfigError("Expected 'repos' to be an array of tables.")
    if raw_repos:
        entries: list[RepoEntry] = []
        for item in raw_repos:
            if not isinstance(item, Mapping) or not item.get("repo"):
                raise ConfigError("Each [[repos]] entry needs a 'repo' key.")
            entries.append(RepoEntry(repo=str(item["repo"]), path=str(item.get("path", "."))))
        return tuple(entries)
    target_repo = data.get("target_repo")
    if target_repo:
        return (RepoEntry(repo=str(target_repo), path=str(data.get("target_path") or ".")),)
    return (RepoEntry(repo=host_repo, path="."),)


def _resolve_worktree_base(raw: Any, home: Path) -> Path:
    if not raw:
        return DEFAULT_WORKTREE_BASE.expanduser()
    text = str(raw)
    if text == "~" or text.startswith("~/"):
        return Path(text).expanduser()
    return (home / text).resolve()


def merge_models(
    base: Mapping[str, Any] | None, override: Mapping[str, Any] | None
) -> dict[str, Any] | None:
    """Merge per runner, per step: an override key replaces only that key."""
    if not override:
        return dict(base) if base else None
    if not base:
        return dict(override)
    result: dict[str, Any] = {runner: dict(cfg) for runner, cfg in base.items()}
    for runner, cfg in override.items():
        previous = result.get(runner, {})
        merged: dict[str, Any] = {
            "steps": {**(previous.get("steps") or {}), **(cfg.get("steps") or {})},
        }
        default = cfg.get("default", previous.get("default"))
        if default is not None:
            merged["default"] = default
        result[runner] = merged
    return result


def merge_hooks(
    base: Mapping[str, Any] | None, override: Mapping[str, Any] | None
) -> dict[str, Any] | None:
    """Merge per event, per step."""
    if not override:
        return dict(base) if base else None
    if not base:
        return dict(override)
    merged: dict[str, Any] = {
        "before_step": {**(base.get("before_step") or {}), **(override.get("before_step") or {})},
        "after_step": {**(base.get("after_step") or {}), **(override.get("after_step") or {})},
    }
    on_need_input = override.get("on_need_input", base.get("on_need_input"))
    if on_need_input is not None:
        merged["on_need_input"] = on_need_input
    return merged


def apply_profile(
    base: Mapping[str, Any], profile: Mapping[str, Any]
) -> tuple[dict[str, Any], str | None, str | None]:
    """Layer a profile over the base mapping.

    Scalars replace, ``models`` and ``hooks`` merge key by key. Returns the merged
    mapping plus the profile's stop point and prompt directory, which are not part
    of the persisted schema.
    """
    rest = {
        key: value
        for key, value in profile.items()
        if key not in {"models", "hooks", "until", "prompt_dir", "profiles"}
    }
    merged: dict[str, Any] = {**base, **rest}
    models = merge_models(base.get("models"), profile.get("models"))
    hooks = merge_hooks(base.get("hooks"), profile.get("hooks"))
    if models is not None:
        merged["models"] = models
    if hooks is not None:
        merged["hooks"] = hooks
    merged.pop("profiles", None)
    return merged, profile.get("until"), profile.get("prompt_dir")


def apply_overrides(config: AutopilotConfig, overrides: CliOverrides) -> AutopilotConfig:
    """Apply the command-line layer; highest precedence, validated strictly."""
    changes: dict[str, Any] = {}
    if overrides.ask_before_implement:
        changes["ask_before_implement"] = True
    if overrides.pr_mode and overrides.pr_mode.strip():
        changes["pr_mode"] = _choice(overrides.pr_mode, PR_MODES, "--pr-creation")
    runner = config.agent_runner
    if overrides.runner and overrides.runner.strip():
        runner = _choice(overrides.runner, RUNNERS, "--runner")
        changes["agent_runner"] = runner
    if overrides.model and overrides.model.strip():
        models = dict(config.models)
        models[runner] = RunnerModels(default=overrides.model.strip(), steps={})
        changes["models"] = models
    return replace(config, **changes) if changes else config


def resolve_home(preferred: str | Path | None = None) -> Path:
    if preferred:
        return Path(preferred).expanduser().resolve()
    from_env = os.environ.get("AUTOPILOT_HOME")
    if from_env:
        return Path(from_env).expanduser().resolve()
    return DEFAULT_HOME.expanduser()


def load_raw_config(home: Path) -> dict[str, Any]:
    path = home / CONFIG_FILE_NAME
    if not path.exists():
        raise ConfigError(
            f"Missing config file: {path}. Run `ai-autopilot init` to create one."
        )
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}") from exc


def select_profile(raw: Mapping[str, Any], name: str) -> dict[str, Any]:
    profiles = _table(raw.get("profiles"), "profiles")
    selected = profiles.get(name)
    if selected is None:
        available = ", ".join(sorted(profiles))
        hint = f" Available: {available}" if available else " No profiles defined in config."
        raise ConfigError(f"Unknown profile '{name}'.{hint}")
    return _table(selected, f"profiles.{name}")


def parse_github_remote(remote_url: str) -> str | None:
    trimmed = remote_url.strip()
    ssh_match = re.match(r"^git@github\.com:(.+?)\.git$", trimmed)
    if ssh_match:
        return ssh_match.group(1)
    https_match = re.match(r"^https://github\.com/(.+?)(?:\.git)?$", trimmed)
    if https_match:
        return https_match.group(1)
    return None


def _run_quiet(args: list[str], cwd: Path) -> str | None:
    try:
        proc = subprocess.run(args, cwd=cwd, text=True, capture_output=True)
    except FileNotFoundError:
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout.strip() or None


def detect_repo_root(cwd: Path | None = None) -> Path:
    root = _run_quiet(["git", "rev-parse", "--show-toplevel"], cwd or Path.cwd())
    if not root:
        raise ConfigError("ai-autopilot must be run inside a git repository")
    return Path(root).resolve()


def detect_host_repo(repo_root: Path, fallback: str | None = None) -> str:
    """Identify ``owner/name``: hosting CLI, then remote URL, then placeholder."""
    from_gh = _run_quiet(
        ["gh", "repo", "view", "--json", "nameWithOwner", "-q", ".nameWithOwner"], repo_root
    )
    if from_gh:
        return from_gh
    remote_url = _run_quiet(["git", "config", "--get", "remote.origin.url"], repo_root)
    if remote_url:
        parsed = parse_github_remote(remote_url)
        if parsed:
            return parsed
    return fallback or HOST_REPO_PLACEHOLDER


HostRepoDetector = Callable[[Path, str | None], str]


def resolve_config(
    home: str | Path | None = None,
    profile: str | None = None,
    overrides: CliOverrides | None = None,
    *,
    repo_root: Path | None = None,
    host_repo_detector: HostRepoDetector = detect_host_repo,
) -> AutopilotConfig:
    """Build the one resolved configuration for this process: base, profile, CLI."""
    home_path = resolve_home(home)
    raw = load_raw_config(home_path)
    merged: dict[str, Any] = {key: value for key, value in raw.items() if key != "profiles"}
    until: str | None = None
    prompt_dir: str | None = None
    if profile:
        merged, until, prompt_dir = apply_profile(merged, select_profile(raw, profile))
        logger.info(f"Profile: {profile}")

    root = (repo_root or detect_repo_root()).resolve()
    host_repo = host_repo_detector(root, merged.get("target_repo"))
    logger.info(f"Detected repo: {host_repo}")

    config = AutopilotConfig.from_dict(
        merged,
        home=home_path,
        repo_root=root,
        host_repo=host_repo,
        profile=profile,
        profile_until=until,
        prompt_dir=prompt_dir,
    )
    if overrides is not None:
        config = apply_overrides(config, overrides)
    return config


STARTER_CONFIG: dict[str, Any] = {
    "agent_runner": "claude",
    "pr_mode": "always",
    "main_branch": "main",
    "remote": "origin",
    "plan_review_loop_enabled": True,
    "plan_review_max_rounds": 3,
    "max_implement_iterations": 100,
    "trigger_label": "ai-autopilot",
    "retry": {"enabled": False, "delay_seconds": 30, "max_delay_seconds": 300},
    "models": {
        "claude": {"default": DEFAULT_MODELS["claude"], "steps": {}},
        "opencode": {"default": DEFAULT_MODELS["opencode"], "steps": {}},
    },
    "hooks": {"before_step": {}, "after_step": {}},
    "profiles": {
        "research": {"until": "plan", "plan_review_loop_enabled": False},
    },
}


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_key(key: str) -> str:
    return key if re.fullmatch(r"[A-Za-z0-9_-]+", key) else json.dumps(key)


def _is_table_array(value: object) -> bool:
    return (
        isinstance(value, list)
        and bool(value)
        and all(isinstance(item, Mapping) for item in value)
    )


def dumps_toml(data: Mapping[str, Any], prefix: str = "") -> str:
    lines: list[str] = []
    tables: list[tuple[str, Mapping[str, Any]]] = []
    table_arrays: list[tuple[str, list[Mapping[str, Any]]]] = []
    for key, value in data.items():
        if isinstance(value, Mapping):
            tables.append((key, value))
        elif _is_table_array(value):
            table_arrays.append((key, value))
        elif value is not None:
            lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
    for key, table in tables:
        name = f"{prefix}.{_toml_key(key)}" if prefix else _toml_key(key)
        lines.append("")
        lines.append(f"[{name}]")
        lines.append(dumps_toml(table, name).strip("\n"))
    for key, items in table_arrays:
        name = f"{prefix}.{_toml_key(key)}" if prefix else _toml_key(key)
        for item in items:
            lines.append("")
            lines.append(f"[[{name}]]")
            lines.append(dumps_toml(item, name).strip("\n"))
    return "\n".join(line for line in lines).strip() + "\n"


def save_config(path: Path, data: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(data), encoding="utf-8")
