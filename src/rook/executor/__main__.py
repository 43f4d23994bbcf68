"""Executor process entry point.

Started by the control process as ``python -m rook.executor`` (local
targets) or as the pushed ``rook_executor_<hash>.pyz`` archive (SSH
targets). The protocol runs over stdin/stdout, so all logging goes to
``~/.rook/executor.log``.

Frames can be typed by hand for debugging:
    python -m rook.executor
    0000000d
    ["Hello", {}]
"""

import asyncio
import logging
import os
import sys
import traceback
from pathlib import Path
from typing import Any

from rook.executor import PlanExecutor
from rook.message import MessageProtocol

logger = logging.getLogger("rook.executor")


class StdinReader:
    """Fallback async reader when stdin cannot be attached to the loop."""

    async def read(self, n: int) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, sys.stdin.buffer.read1, n)


class StdoutWriter:
    """Fallback async writer when stdout cannot be attached to the loop."""

    def write(self, data: bytes) -> None:
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()

    async def drain(self) -> None:
        pass


async def connect_stdin_stdout() -> tuple[Any, Any]:
    """Wrap stdin/stdout in asyncio streams."""
    loop = asyncio.get_running_loop()
    try:
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        await loop.connect_read_pipe(lambda: protocol, sys.stdin)

        w_transport, w_protocol = await loop.connect_write_pipe(
            asyncio.streams.FlowControlMixin,
            sys.stdout,
        )
        writer = asyncio.StreamWriter(w_transport, w_protocol, reader, loop)
        logger.debug("Using asyncio pipes for stdin/stdout")
        return reader, writer
    except ValueError as e:
        # Regular files and some ttys can't be attached to the event loop
        logger.debug(f"Falling back to blocking stdin/stdout: {e}")
        return StdinReader(), StdoutWriter()


async def main(args: list[str]) -> int | None:
    """Run the executor until shutdown.

    Returns:
        None on normal shutdown, 1 on error
    """
    log_file = Path(os.environ.get("ROOK_EXECUTOR_LOG", "~/.rook/executor.log")).expanduser()
    log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(message)s",
        filename=str(log_file),
        level=logging.DEBUG if "--debug" in args else logging.INFO,
    )

    logger.info("=" * 60)
    logger.info(f"rook executor starting (pid {os.getpid()})")
    logger.info(f"Python: {sys.executable} {sys.version.split()[0]}")
    logger.info("=" * 60)

    try:
        reader, writer = await connect_stdin_stdout()
    except OSError as e:
        logger.error(f"Failed to attach stdin/stdout: {e}")
        return 1

    executor = PlanExecutor(reader, writer)
    try:
        await executor.serve()
    except (BrokenPipeError, ConnectionResetError):
        logger.info("Control process went away")
        return None
    except Exception as e:
        logger.error(f"Executor system error: {e}\n{traceback.format_exc()}")
        try:
            await MessageProtocol().send_message(
                writer,
                "ExecutorSystemError",
                {"message": str(e), "traceback": traceback.format_exc()},
            )
        except Exception:
            logger.debug("Could not report system error to control process")
        return 1

    logger.info(f"rook executor exiting after {executor.plans_run} plan(s)")
    return None


def run() -> None:
    sys.exit(asyncio.run(main(sys.argv[1:])))


if __name__ == "__main__":
    run()
