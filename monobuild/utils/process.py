"""
Async subprocess execution for docker commands.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence


logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of a finished command"""
    args: Sequence[str]
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def describe_failure(self, limit: int = 2000) -> str:
        """Short failure description, preferring the tail of stderr"""
        if self.timed_out:
            return "timed out"
        output = (self.stderr or self.stdout or "").strip()
        if len(output) > limit:
            output = "..." + output[-limit:]
        return f"exit code {self.returncode}: {output}" if output else f"exit code {self.returncode}"


async def run_command(
    args: Sequence[str],
    timeout: Optional[float] = None,
    input_text: Optional[str] = None,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    """
    Run a command, killing it on timeout or cancellation.

    Args:
        args: Program and arguments
        timeout: Seconds before the process is killed
        input_text: Text written to stdin
        cwd: Working directory
        env: Full environment for the child process

    Returns:
        CommandResult; a timeout is reported with ``timed_out`` set

    Raises:
        asyncio.CancelledError: After the child has been killed
    """
    logger.debug(f"Running: {' '.join(args)}")
    process = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=env,
    )
    payload = input_text.encode() if input_text is not None else None

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(payload), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(process)
        return CommandResult(args=list(args), returncode=-1, stdout="", stderr="", timed_out=True)
    except asyncio.CancelledError:
        await _kill(process)
        raise

    return CommandResult(
        args=list(args),
        returncode=process.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


async def _kill(process):
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
