"""Execution context handed to action handlers on the target."""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

OutputSink = Callable[[str], Awaitable[None]]


class ActionContext:
    """What a handler may use besides its parameters.

    Attributes:
        host: Host name the plan was compiled for
        index: Index of the running action
    """

    def __init__(self, host: str, index: int, sink: OutputSink | None = None) -> None:
        self.host = host
        self.index = index
        self._sink = sink
        self.lines: list[str] = []

    async def emit_output(self, text: str) -> None:
        """Stream a chunk of output back to the control process."""
        self.lines.append(text)
        if self._sink is not None:
            await self._sink(text)

    @property
    def output(self) -> str:
        return "\n".join(self.lines)


async def run_command(
    ctx: ActionContext,
    program: str,
    args: list[str],
    cwd: str | None = None,
) -> int:
    """Run a program, streaming stdout and stderr lines as output.

    Returns:
        Exit status

    Raises:
        FileNotFoundError: If the program does not exist
    """
    logger.debug(f"run_command: {program} {' '.join(args)}")
    proc = await asyncio.create_subprocess_exec(
        program,
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )

    async def pump(stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        async for raw in stream:
            await ctx.emit_output(raw.decode("utf-8", errors="replace").rstrip("\r\n"))

    try:
        await asyncio.gather(pump(proc.stdout), pump(proc.stderr))
        returncode = await proc.wait()
    except asyncio.CancelledError:
        await _kill(proc)
        raise
    logger.debug(f"run_command complete: rc={returncode}")
    return returncode


async def capture_command(program: str, args: list[str], cwd: str | None = None) -> tuple[int, str]:
    """Run a program quietly and return (exit status, stdout)."""
    proc = await asyncio.create_subprocess_exec(
        program,
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
        cwd=cwd,
    )
    try:
        stdout, _ = await proc.communicate()
    except asyncio.CancelledError:
        await _kill(proc)
        raise
    return proc.returncode or 0, stdout.decode("utf-8", errors="replace")


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """Stop a child whose action was cancelled or timed out."""
    if proc.returncode is None:
        logger.debug(f"Killing pid {proc.pid}")
        try:
            proc.kill()
        except ProcessLookupError:
            logger.debug(f"pid {proc.pid} already exited")
    await proc.wait()
