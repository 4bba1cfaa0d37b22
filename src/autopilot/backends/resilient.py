from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

from autopilot.backends.base import (
    AgentBackend,
    AgentRequest,
    AgentResult,
    BackendExecutionError,
    PermissionMode,
)
from autopilot.backends.claude import ClaudeCodeBackend
from autopilot.backends.opencode import OpenCodeBackend
from autopilot.config import AgentStep, ModelSelection
from autopilot.usage import UsageAccountant

if TYPE_CHECKING:
    from autopilot.config import AutopilotConfig

BackendEventHook = Callable[[dict[str, Any]], None]
ModelSelector = Callable[[AgentStep | None], ModelSelection]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    enabled: bool = False
    delay_seconds: float = 30.0
    max_delay_seconds: float = 300.0
    max_attempts: int | None = None

    def delay_for(self, retry_number: int) -> float:
        """Delay before the n-th retry (1-based): ``min(d * 2**(n-1), c)``."""
        return min(self.delay_seconds * (2 ** (retry_number - 1)), self.max_delay_seconds)


class ResilientBackend:
    """Selects the model, runs the agent with a heartbeat, retries and records usage."""

    def __init__(
        self,
        backend: AgentBackend,
        *,
        select_model: ModelSelector,
        retry_policy: RetryPolicy,
        accountant: UsageAccountant,
        heartbeat_seconds: float = 30.0,
        default_max_turns: int | None = None,
        sleep: Sleep = asyncio.sleep,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.backend = backend
        self.select_model = select_model
        self.retry_policy = retry_policy
        self.accountant = accountant
        self.heartbeat_seconds = heartbeat_seconds
        self.default_max_turns = default_max_turns
        self.sleep = sleep
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _heartbeat(self, label: str) -> None:
        started = time.monotonic()
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            elapsed = int(time.monotonic() - started)
            logger.info(f"{label} still running... {elapsed}s elapsed")

    async def _run_with_heartbeat(self, request: AgentRequest, label: str) -> AgentResult:
        heartbeat = asyncio.create_task(self._heartbeat(label))
        try:
            return await self.backend.run(request)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

    async def invoke(
        self,
        prompt: str,
        step: AgentStep | None,
        *,
        permission_mode: PermissionMode,
        working_directory: Path,
        max_turns: int | None = None,
        retry: bool | None = None,
    ) -> AgentResult:
        selection = self.select_model(step)
        step_label = step.value if step is not None else "unknown"
        logger.info(f"Step {step_label} - model: {selection.label} ({selection.source})")
        request = AgentRequest(
            prompt=prompt,
            model=selection.model,
            permission_mode=permission_mode,
            max_turns=max_turns or self.default_max_turns,
            working_directory=working_directory,
        )
        should_retry = self.retry_policy.enabled if retry is None else retry

        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._run_with_heartbeat(request, f"Step {step_label}")
            except BackendExecutionError as exc:
                self._emit(
                    {
                        "event": "agent_attempt_failed",
                        "runner": self.backend.name,
                        "step": step_label,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": exc.retriable,
                    }
                )
                max_attempts = self.retry_policy.max_attempts
                if not should_retry or not exc.retriable:
                    raise
                if max_attempts is not None and attempt >= max_attempts:
                    logger.error(f"Giving up on step {step_label} after {attempt} attempt(s)")
                    raise
                delay = self.retry_policy.delay_for(attempt)
                logger.warning(f"{self.backend.name} process error: {exc}")
                logger.info(f"Retrying in {delay:g}s...")
                self._emit(
                    {
                        "event": "agent_retry",
                        "runner": self.backend.name,
                        "step": step_label,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await self.sleep(delay)
                continue

            if result.parsed:
                logger.info(f"Done - ${result.total_cost_usd:.4f} | {result.num_turns} turns")
            else:
                logger.warning(f"Done - failed to parse {self.backend.name} output")
            if result.result:
                logger.info(f"agent output\n```\n{result.result}\n```")
            self.accountant.record(selection.label, result.total_cost_usd, result.num_turns)
            self._emit(
                {
                    "event": "agent_completed",
                    "runner": self.backend.name,
                    "step": step_label,
                    "attempt": attempt,
                    "model": selection.label,
                }
            )
            return result


def create_backend(
    config: AutopilotConfig,
    accountant: UsageAccountant,
    *,
    event_hook: BackendEventHook | None = None,
) -> ResilientBackend:
    backend: AgentBackend
    if config.agent_runner == "opencode":
        backend = OpenCodeBackend()
    else:
        backend = ClaudeCodeBackend()
    return ResilientBackend(
        backend,
        select_model=config.select_model,
        retry_policy=RetryPolicy(
            enabled=config.retry.enabled,
            delay_seconds=config.retry.delay_seconds,
            max_delay_seconds=config.retry.max_delay_seconds,
            max_attempts=config.retry.max_attempts,
        ),
        accountant=accountant,
        heartbeat_seconds=config.heartbeat_seconds,
        default_max_turns=config.max_turns,
        event_hook=event_hook,
    )
