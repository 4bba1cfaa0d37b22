from __future__ import annotations

import json

from autopilot.backends.base import AgentBackend, AgentRequest, AgentResult


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def build_command(self, request: AgentRequest) -> list[str]:
        command = [self.binary, "-p", "--output-format", "json"]
        if request.model:
            command.extend(["--model", request.model])
        command.extend(["--permission-mode", request.permission_mode])
        if request.max_turns:
            command.extend(["--max-turns", str(request.max_turns)])
        command.append(request.prompt)
        return command

    def parse_output(self, raw_output: str) -> AgentResult:
        try:
            payload = json.loads(raw_output)
        except json.JSONDecodeError:
            return AgentResult.fallback(raw_output)
        if not isinstance(payload, dict):
            return AgentResult.fallback(raw_output)
        try:
            total_cost_usd = float(payload.get("total_cost_usd") or 0.0)
            num_turns = int(payload.get("num_turns") or 0)
        except (TypeError, ValueError):
            return AgentResult.fallback(raw_output)
        return AgentResult(
            result=str(payload.get("result") or "").strip(),
            is_error=bool(payload.get("is_error", False)),
            total_cost_usd=total_cost_usd,
            num_turns=num_turns,
        )
