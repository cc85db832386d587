"""Helpers for running external quality tools off the event loop."""

import asyncio
import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)


async def run_tool(args: list[str], cwd: Path, timeout: float) -> subprocess.CompletedProcess:
    """
    Run a tool in a worker thread.

    Raises:
        subprocess.TimeoutExpired: If the tool runs past the timeout
        FileNotFoundError: If the executable does not exist
    """
    return await asyncio.to_thread(
        subprocess.run,
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        cwd=str(cwd),
    )


async def tool_available(args: list[str], cwd: Path) -> bool:
    """Check a tool answers `--version`; log and return False otherwise."""
    try:
        result = await run_tool(args + ["--version"], cwd, timeout=10)
    except (subprocess.TimeoutExpired, FileNotFoundError):
        logger.warning(f"{args[-1]} not available, skipping")
        return False
    if result.returncode != 0:
        logger.warning(f"{args[-1]} not found, skipping")
        return False
    return True
