from __future__ import annotations

import json

from autopilot.backends.base import AgentBackend, AgentRequest, AgentResult


class OpenCodeBackend(AgentBackend):
    """Runs ``opencode run``; output is one JSON event per line."""

    name = "opencode"

    def build_command(self, request: AgentRequest) -> list[str]:
        command = [self.binary, "run", "--format", "json"]
        if request.model:
            command.extend(["--model", request.model])
        command.append(request.prompt)
        return command

    def parse_output(self, raw_output: str) -> AgentResult:
        text_parts: list[str] = []
        cost = 0.0
        turns = 0
        is_error = False
        parsed_any = False
        for line in raw_output.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(event, dict):
                continue
            parsed_any = True
            part = event.get("part") if isinstance(event.get("part"), dict) else {}
            event_type = event.get("type")
            if event_type == "text" and isinstance(part.get("text"), str):
                text_parts.append(part["text"])
            elif event_type == "step_finish":
                turns += 1
                try:
                    cost += float(part.get("cost") or 0.0)
                except (TypeError, ValueError):
                    pass
            elif event_type == "error":
                is_error = True
        if not parsed_any:
            return AgentResult.fallback(raw_output)
        return AgentResult(
            result="".join(text_parts).strip(),
            is_error=is_error,
            total_cost_usd=cost,
            num_turns=turns,
        )
