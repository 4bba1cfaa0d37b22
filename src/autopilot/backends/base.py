from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

PermissionMode = Literal["acceptEdits", "bypassPermissions", "default", "plan"]


class BackendExecutionError(RuntimeError):
    """Raised when an agent process fails at the process level."""

    def __init__(
        self,
        message: str,
        *,
        runner: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.runner = runner
        self.exit_code = exit_code
        self.retriable = retriable


class BackendProcessError(BackendExecutionError):
    """Raised when the agent process cannot be spawned."""


@dataclass(slots=True, frozen=True)
class AgentRequest:
    prompt: str
    model: str | None
    permission_mode: PermissionMode
    max_turns: int | None
    working_directory: Path


@dataclass(slots=True, frozen=True)
class AgentResult:
    result: str
    is_error: bool
    total_cost_usd: float
    num_turns: int
    parsed: bool = True

    @classmethod
    def fallback(cls, raw_output: str) -> AgentResult:
        return cls(
            result=raw_output.strip(),
            is_error=False,
            total_cost_usd=0.0,
            num_turns=0,
            parsed=False,
        )


class AgentBackend(ABC):
    name: str = "agent"

    def __init__(self, binary: str | None = None) -> None:
        self.binary = binary or self.name

    @abstractmethod
    def build_command(self, request: AgentRequest) -> list[str]:
        """Return the argv for one non-interactive agent run."""

    @abstractmethod
    def parse_output(self, raw_output: str) -> AgentResult:
        """Parse the agent's structured output; never raises."""

    async def run(self, request: AgentRequest) -> AgentResult:
        command = self.build_command(request)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(request.working_directory),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}", runner=self.name
            ) from exc

        stdout, stderr = await process.communicate()
        output = stdout.decode("utf-8", errors="replace")
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip() or output.strip()
            raise BackendExecutionError(
                f"{self.name} exited with code {process.returncode}: {detail}",
                runner=self.name,
                exit_code=process.returncode,
            )
        return self.parse_output(output)
