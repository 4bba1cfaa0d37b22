from __future__ import annotations

import threading
from dataclasses import dataclass, field


@dataclass(slots=True)
class ModelUsage:
    invocations: int = 0
    total_cost_usd: float = 0.0
    total_turns: int = 0


@dataclass(slots=True)
class UsageStats:
    total_cost_usd: float = 0.0
    total_turns: int = 0
    total_invocations: int = 0
    by_model: dict[str, ModelUsage] = field(default_factory=dict)

    def copy(self) -> UsageStats:
        return UsageStats(
            total_cost_usd=self.total_cost_usd,
            total_turns=self.total_turns,
            total_invocations=self.total_invocations,
            by_model={
                model: ModelUsage(usage.invocations, usage.total_cost_usd, usage.total_turns)
                for model, usage in self.by_model.items()
            },
        )


class UsageAccountant:
    """Accumulates agent cost and turns for the whole process.

    Reads go through :meth:`snapshot`, which returns a deep copy, so callers can
    diff before/after values without aliasing the live counters.
    """

    def __init__(self) -> None:
        self._stats = UsageStats()
        self._lock = threading.Lock()

    def record(self, model: str, cost_usd: float, turns: int) -> None:
        with self._lock:
            stats = self._stats
            stats.total_cost_usd += cost_usd
            stats.total_turns += turns
            stats.total_invocations += 1
            entry = stats.by_model.setdefault(model, ModelUsage())
            entry.invocations += 1
            entry.total_cost_usd += cost_usd
            entry.total_turns += turns

    def snapshot(self) -> UsageStats:
        with self._lock:
            return self._stats.copy()


def usage_delta(before: UsageStats, after: UsageStats) -> UsageStats:
    delta = UsageStats(
        total_cost_usd=after.total_cost_usd - before.total_cost_usd,
        total_turns=after.total_turns - before.total_turns,
        total_invocations=after.total_invocations - before.total_invocations,
    )
    for model, usage in after.by_model.items():
        previous = before.by_model.get(model, ModelUsage())
        invocations = usage.invocations - previous.invocations
        if invocations > 0:
            delta.by_model[model] = ModelUsage(
                invocations=invocations,
                total_cost_usd=usage.total_cost_usd - previous.total_cost_usd,
                total_turns=usage.total_turns - previous.total_turns,
            )
    return delta


def format_model_usage(by_model: dict[str, ModelUsage]) -> str:
    rows = sorted(
        (item for item in by_model.items() if item[1].invocations > 0),
        key=lambda item: (-item[1].invocations, -item[1].total_cost_usd),
    )
    return ", ".join(
        f"{model} x{usage.invocations} (${usage.total_cost_usd:.4f})" for model, usage in rows
    )


def format_usage(stats: UsageStats) -> str:
    text = (
        f"${stats.total_cost_usd:.4f} | {stats.total_turns} turns | "
        f"{stats.total_invocations} agent run(s)"
    )
    models = format_model_usage(stats.by_model)
    return f"{text} | models: {models}" if models else text
