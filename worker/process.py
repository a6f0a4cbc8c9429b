"""
Subprocess helpers shared by every backend invocation.

Each command runs in its own session so the whole process group (the
backend plus anything it forks) can be signalled on cancellation.
"""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from config import ERROR_LOG_MAX_LENGTH, PROCESS_KILL_GRACE_SECONDS
from engine.errors import ERROR_MESSAGES, BackendExecutionError, BackendUnavailableError

logger = logging.getLogger(__name__)

# Shell conventions for "not executable" / "command not found"
UNAVAILABLE_EXIT_CODES = frozenset([126, 127])

SpawnCallback = Callable[[asyncio.subprocess.Process], None]


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def stderr_tail(self, limit: int = 500) -> str:
        """Last ``limit`` characters of stderr, where encoders put the actual error."""
        return self.stderr[-limit:] if self.stderr else ""


def _decode(data: Optional[bytes]) -> str:
    return data.decode("utf-8", errors="replace") if data else ""


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        # start_new_session=True makes the child a group leader, so pgid == pid
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.warning(f"Could not signal process group {process.pid}: {e}")


async def terminate_process_group(
    process: asyncio.subprocess.Process,
    grace: float = PROCESS_KILL_GRACE_SECONDS,
    context: str = "Backend",
) -> None:
    """
    Stop a subprocess and its group: SIGTERM, then SIGKILL after ``grace`` seconds.

    Safe to call on a process that has already exited.
    """
    if process.returncode is not None:
        return

    _signal_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
        return
    except asyncio.TimeoutError:
        logger.warning(f"{context} process {process.pid} ignored SIGTERM, sending SIGKILL")

    _signal_group(process, signal.SIGKILL)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
    except asyncio.TimeoutError:
        logger.error(f"{context} process {process.pid} did not terminate after SIGKILL")


async def run_command(
    argv: Sequence[str],
    timeout: Optional[float] = None,
    on_spawn: Optional[SpawnCallback] = None,
    context: str = "Backend",
) -> CommandResult:
    """
    Run ``argv`` to completion and capture its output.

    Args:
        argv: Executable and arguments
        timeout: Optional wall-clock limit in seconds; None or 0 waits forever
        on_spawn: Called with the live process right after it starts
        context: Description for logging

    Raises:
        BackendUnavailableError: The executable is missing or cannot be run
        BackendExecutionError: The timeout expired
    """
    cmd: List[str] = [str(arg) for arg in argv]
    logger.debug(f"{context} command: {' '.join(cmd)}")

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except (FileNotFoundError, PermissionError) as e:
        raise BackendUnavailableError(f"{context} executable unavailable: {cmd[0]} ({e})") from e

    if on_spawn is not None:
        on_spawn(process)

    try:
        if timeout:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        else:
            stdout, stderr = await process.communicate()
    except asyncio.TimeoutError:
        await terminate_process_group(process, context=context)
        raise BackendExecutionError(
            f"{context} timed out after {timeout}s",
            returncode=process.returncode,
            user_message=ERROR_MESSAGES["timeout"],
        )
    except asyncio.CancelledError:
        await terminate_process_group(process, context=context)
        raise

    result = CommandResult(process.returncode, _decode(stdout), _decode(stderr))

    if result.returncode in UNAVAILABLE_EXIT_CODES:
        raise BackendUnavailableError(
            f"{context} exited with {result.returncode}: {result.stderr_tail()[-ERROR_LOG_MAX_LENGTH:]}"
        )

    if not result.ok:
        logger.debug(f"{context} exited with {result.returncode}: {result.stderr_tail()}")

    return result
