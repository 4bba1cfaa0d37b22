from __future__ import annotations

import asyncio
from pathlib import Path

from loguru import logger

HOOK_TIMEOUT_SECONDS = 30.0


def render_hook(command: str, *, step: str | None = None, issue: str | None = None) -> str:
    if step:
        command = command.replace("{{step}}", step)
    if issue:
        command = command.replace("{{issue}}", issue)
    return command


async def run_hook(
    command: str | None,
    *,
    cwd: Path,
    step: str | None = None,
    issue: str | None = None,
    timeout: float = HOOK_TIMEOUT_SECONDS,
) -> bool:
    """Run a lifecycle hook through ``sh -c``. Failures are logged, never raised."""
    if not command:
        return True
    rendered = render_hook(command, step=step, issue=issue)
    try:
        process = await asyncio.create_subprocess_exec(
            "sh",
            "-c",
            rendered,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        logger.warning(f"Hook failed: {command} - {exc}")
        return False
    try:
        return_code = await asyncio.wait_for(process.wait(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        logger.warning(f"Hook failed: {command} - timed out after {timeout:g}s")
        return False
    if return_code != 0:
        logger.warning(f"Hook failed: {command} - exit code {return_code}")
        return False
    return True
