"""Channels to executors.

A ``Transport`` opens one ``Channel`` per host: a framed, bidirectional
message stream to an executor that has already answered the ``Hello``
handshake. Retries, if any, belong to the transport; the dispatcher never
retries a failed open.

Available transports:
- ``InProcessTransport``: executors run as tasks in this event loop over
  in-memory pipes (simulated hosts, tests)
- ``LocalTransport``: ``python -m rook.executor`` subprocess on this machine
- ``rook.ssh.SSHTransport``: executor archive pushed and started over SSH
- ``RoutingTransport``: picks local or SSH per host
"""

import asyncio
import logging
import sys
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from rook.actions import ActionRegistry, default_registry
from rook.config import RookConfig
from rook.exceptions import TransportError
from rook.executor import PlanExecutor
from rook.message import MessageProtocol, ProtocolError
from rook.types import HostTarget

logger = logging.getLogger(__name__)

CLOSE_TIMEOUT = 5.0


@dataclass
class Channel:
    """Message stream to one host's executor.

    Attributes:
        host: Host name
        reader: Async byte reader from the executor
        writer: Byte writer to the executor
        closer: Releases the underlying process or connection
        sent: Types of messages sent, in order
    """

    host: str
    reader: Any
    writer: Any
    closer: Callable[[], Awaitable[None]] | None = None
    protocol: MessageProtocol = field(default_factory=MessageProtocol)
    sent: list[str] = field(default_factory=list)
    closed: bool = False

    async def send(self, msg_type: str, data: Any) -> None:
        self.sent.append(msg_type)
        await self.protocol.send_message(self.writer, msg_type, data)

    async def send_quietly(self, msg_type: str, data: Any) -> bool:
        """Send, reporting failure instead of raising. Used while tearing down."""
        try:
            await self.send(msg_type, data)
            return True
        except (BrokenPipeError, ConnectionResetError, ProtocolError, OSError) as e:
            logger.debug(f"{self.host}: could not send {msg_type}: {e}")
            return False

    async def receive(self) -> tuple[str, Any] | None:
        return await self.protocol.read_message(self.reader)

    async def handshake(self) -> dict[str, Any]:
        """Exchange Hello messages.

        Raises:
            TransportError: If the executor does not answer with Hello
        """
        try:
            await self.send("Hello", {})
            response = await self.receive()
        except (ProtocolError, BrokenPipeError, ConnectionResetError) as e:
            raise TransportError(f"Executor handshake failed: {e}", host=self.host) from e
        if response is None or response[0] != "Hello":
            raise TransportError(f"Executor handshake failed: got {response!r}", host=self.host)
        data = response[1]
        return data if isinstance(data, dict) else {}

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.send_quietly("Shutdown", {})
        if self.closer is not None:
            await self.closer()


class Transport(ABC):
    """Opens channels to executors."""

    @abstractmethod
    async def open(self, host: HostTarget) -> Channel:
        """Open a channel to host's executor.

        Raises:
            TransportError: If the executor cannot be reached
        """

    async def close_all(self) -> None:
        """Release cached connections."""


class _PipeWriter:
    """Writer half of an in-memory pipe feeding a StreamReader."""

    def __init__(self, target: asyncio.StreamReader) -> None:
        self._target = target
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("pipe closed")
        self._target.feed_data(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._target.feed_eof()


class InProcessTransport(Transport):
    """Runs an executor per host inside this event loop.

    Attributes:
        registry: Actions available to the simulated executors
        fail_hosts: Host names whose open() fails with a connection error
        channels: Channel opened per host, for inspection
        opened: Number of opens per host
    """

    def __init__(
        self,
        registry: ActionRegistry | None = None,
        fail_hosts: Iterable[str] = (),
    ) -> None:
        self.registry = registry or default_registry()
        self.fail_hosts = set(fail_hosts)
        self.channels: dict[str, Channel] = {}
        self.opened: Counter[str] = Counter()
        self.executors: dict[str, PlanExecutor] = {}

    async def open(self, host: HostTarget) -> Channel:
        self.opened[host.name] += 1
        if host.name in self.fail_hosts:
            raise TransportError(f"Connection refused: {host.address}", host=host.name)

        to_executor = asyncio.StreamReader()
        to_control = asyncio.StreamReader()
        executor_writer = _PipeWriter(to_control)
        control_writer = _PipeWriter(to_executor)

        executor = PlanExecutor(to_executor, executor_writer, self.registry)
        self.executors[host.name] = executor
        task = asyncio.create_task(self._serve(host.name, executor, executor_writer))

        async def closer() -> None:
            control_writer.close()
            try:
                await asyncio.wait_for(task, CLOSE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"{host.name}: in-process executor did not stop, cancelling")
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        channel = Channel(host.name, to_control, control_writer, closer)
        self.channels[host.name] = channel
        await channel.handshake()
        return channel

    async def _serve(self, host: str, executor: PlanExecutor, writer: _PipeWriter) -> None:
        try:
            await executor.serve()
        except (BrokenPipeError, ProtocolError) as e:
            logger.debug(f"{host}: in-process executor stopped: {e}")
        except Exception as e:
            logger.error(f"{host}: in-process executor crashed: {e}", exc_info=e)
        finally:
            writer.close()


class LocalTransport(Transport):
    """Runs ``python -m rook.executor`` as a subprocess per host."""

    def __init__(self, interpreter: str | None = None) -> None:
        self.interpreter = interpreter or sys.executable

    def command(self, host: HostTarget) -> list[str]:
        cmd = [self.interpreter, "-m", "rook.executor"]
        if host.become:
            cmd = ["sudo", "-n", *cmd]
        return cmd

    async def open(self, host: HostTarget) -> Channel:
        cmd = self.command(host)
        logger.debug(f"{host.name}: starting {' '.join(cmd)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TransportError(f"Cannot start local executor: {e}", host=host.name) from e

        async def closer() -> None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            try:
                await asyncio.wait_for(process.wait(), CLOSE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"{host.name}: local executor did not exit, killing")
                process.kill()
                await process.wait()

        channel = Channel(host.name, process.stdout, process.stdin, closer)
        try:
            await channel.handshake()
        except TransportError:
            stderr = b""
            if process.stderr is not None:
                try:
                    stderr = await asyncio.wait_for(process.stderr.read(), 1.0)
                except asyncio.TimeoutError:
                    pass
            await closer()
            raise TransportError(
                f"Local executor failed to start: {stderr.decode(errors='replace').strip()}",
                host=host.name,
            )
        return channel


class RoutingTransport(Transport):
    """Sends local hosts to one transport and everything else to another."""

    def __init__(self, local: Transport, remote: Transport) -> None:
        self.local = local
        self.remote = remote

    async def open(self, host: HostTarget) -> Channel:
        if host.is_local:
            return await self.local.open(host)
        return await self.remote.open(host)

    async def close_all(self) -> None:
        await self.local.close_all()
        await self.remote.close_all()


def create_transport(config: RookConfig | None = None) -> Transport:
    """Default transport: local subprocesses and SSH."""
    from rook.ssh import SSHTransport

    return RoutingTransport(LocalTransport(), SSHTransport(config or RookConfig()))
