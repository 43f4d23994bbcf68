"""SSH transport.

Opens executor channels on remote hosts with asyncssh:

1. Connect (cached per address/port/user), retrying transient failures
   with exponential backoff. Authentication failures are never retried.
2. Make sure the remote directory exists and holds the current executor
   archive, uploading it over SFTP when missing or truncated.
3. Start the archive with the host's interpreter (under ``sudo -n`` when
   the host uses become) and complete the ``Hello`` handshake.
"""

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import asyncssh

from rook.bundle import ExecutorBuildConfig, ExecutorBuilder, archive_name
from rook.config import RookConfig
from rook.exceptions import AuthenticationError, TransportError
from rook.transport import Channel, Transport
from rook.types import HostTarget

logger = logging.getLogger(__name__)

MAX_CONNECT_ATTEMPTS = 3


@dataclass
class SSHConfig:
    """SSH connection options for one host.

    Attributes:
        hostname: Remote hostname or IP
        port: SSH port
        username: SSH username (None = current user)
        client_keys: Private key paths (None = agent and default keys)
        known_hosts: known_hosts file; None uses asyncssh's default and ""
            disables host key checking
        connect_timeout: Seconds per connection attempt
        keepalive_interval: Keepalive interval (0 to disable)
    """

    hostname: str
    port: int = 22
    username: str | None = None
    client_keys: list[str] | None = None
    known_hosts: str | None = None
    connect_timeout: float = 30.0
    keepalive_interval: float = 30.0

    @classmethod
    def for_host(cls, host: HostTarget, config: RookConfig) -> "SSHConfig":
        return cls(
            hostname=host.address,
            port=host.port,
            username=host.user,
            client_keys=[os.path.expanduser(host.key_file)] if host.key_file else None,
            known_hosts=config.known_hosts,
            connect_timeout=config.connect_timeout,
        )

    @property
    def key(self) -> tuple[str, int, str | None]:
        return (self.hostname, self.port, self.username)

    def to_asyncssh_options(self) -> dict[str, Any]:
        """Convert to asyncssh.connect() kwargs."""
        options: dict[str, Any] = {
            "host": self.hostname,
            "port": self.port,
            "connect_timeout": self.connect_timeout,
            "keepalive_interval": self.keepalive_interval,
        }
        if self.username:
            options["username"] = self.username
        if self.client_keys:
            options["client_keys"] = self.client_keys
        if self.known_hosts == "":
            options["known_hosts"] = None  # Disable host key checking
        elif self.known_hosts is not None:
            options["known_hosts"] = os.path.expanduser(self.known_hosts)
        return options


class SSHTransport(Transport):
    """Runs executors on remote hosts over SSH."""

    def __init__(self, config: RookConfig | None = None, builder: ExecutorBuilder | None = None) -> None:
        self.config = config or RookConfig()
        self.builder = builder or ExecutorBuilder(self.config.executor_cache_dir)
        self._connections: dict[tuple[str, int, str | None], asyncssh.SSHClientConnection] = {}
        self._locks: dict[tuple[str, int, str | None], asyncio.Lock] = {}

    async def open(self, host: HostTarget) -> Channel:
        ssh_config = SSHConfig.for_host(host, self.config)
        conn = await self._connection(host, ssh_config)

        try:
            remote_dir = await self._prepare_remote_dir(conn)
            remote_file = await self._send_executor(conn, remote_dir, host)
            process = await self._start_executor(conn, remote_file, host)
        except (asyncssh.Error, OSError) as e:
            raise TransportError(f"Cannot start executor: {e}", host=host.name) from e

        async def closer() -> None:
            process.stdin.write_eof()
            try:
                await asyncio.wait_for(process.wait_closed(), 5.0)
            except asyncio.TimeoutError:
                logger.warning(f"{host.name}: executor did not exit, closing channel")
                process.close()

        channel = Channel(host.name, process.stdout, process.stdin, closer)
        try:
            hello = await channel.handshake()
        except TransportError:
            stderr = await process.stderr.read() if process.exit_status is not None else b""
            process.close()
            raise TransportError(
                f"Executor handshake failed: {stderr.decode(errors='replace').strip()}",
                host=host.name,
            )
        logger.info(f"{host.name}: executor ready (protocol {hello.get('version')})")
        return channel

    async def _connection(self, host: HostTarget, ssh_config: SSHConfig) -> asyncssh.SSHClientConnection:
        key = ssh_config.key
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            conn = self._connections.get(key)
            if conn is None or conn.is_closed():
                conn = await self._connect(host, ssh_config)
                self._connections[key] = conn
            return conn

    async def _connect(
        self,
        host: HostTarget,
        ssh_config: SSHConfig,
        max_retries: int = MAX_CONNECT_ATTEMPTS,
    ) -> asyncssh.SSHClientConnection:
        """Connect with retries.

        Raises:
            AuthenticationError: On authentication failure (not retried)
            TransportError: When every attempt failed
        """
        auth_method = "SSH key" if ssh_config.client_keys else "default keys"
        address = f"{ssh_config.hostname}:{ssh_config.port}"

        for attempt in range(1, max_retries + 1):
            try:
                logger.info(f"Connecting to {address} (attempt {attempt}/{max_retries})")
                conn = await asyncssh.connect(**ssh_config.to_asyncssh_options())
                logger.info(f"Connected to {address}")
                return conn

            except asyncssh.misc.PermissionDenied as e:
                raise AuthenticationError(
                    f"SSH authentication failed using {auth_method}",
                    host=host.name,
                    address=address,
                    user=ssh_config.username,
                ) from e

            except asyncssh.misc.HostKeyNotVerifiable as e:
                raise TransportError(
                    f"Host key verification failed: {e}", host=host.name, address=address
                ) from e

            except (
                ConnectionRefusedError,
                ConnectionResetError,
                asyncssh.misc.ConnectionLost,
                TimeoutError,
                asyncio.TimeoutError,
                OSError,
            ) as e:
                error_type = type(e).__name__
                if attempt < max_retries:
                    delay = 2 ** (attempt - 1)
                    logger.warning(
                        f"Connection to {address} failed ({error_type}), "
                        f"retrying in {delay}s (attempt {attempt}/{max_retries})"
                    )
                    await asyncio.sleep(delay)
                else:
                    raise TransportError(
                        f"Failed to connect after {max_retries} attempts: {error_type}: {e}",
                        host=host.name,
                        address=address,
                        attempt=attempt,
                    ) from e

        raise TransportError(f"Failed to connect after {max_retries} attempts", host=host.name)

    async def _prepare_remote_dir(self, conn: asyncssh.SSHClientConnection) -> str:
        remote_dir = self.config.remote_dir
        await conn.run(f"mkdir -p {remote_dir} && chmod 700 {remote_dir}", check=True)
        result = await conn.run(f"echo {remote_dir}", check=True)
        return str(result.stdout).strip()

    async def _send_executor(self, conn: asyncssh.SSHClientConnection, remote_dir: str, host: HostTarget) -> str:
        local_path, executor_hash = self.builder.build(
            ExecutorBuildConfig(interpreter=f"/usr/bin/env {Path(host.interpreter).name}")
        )
        remote_file = f"{remote_dir}/{archive_name(executor_hash)}"

        async with conn.start_sftp_client() as sftp:
            if not await sftp.exists(remote_file):
                logger.info(f"{host.name}: sending executor to {remote_file}")
                await sftp.put(str(local_path), remote_file)
                await conn.run(f"chmod 700 {shlex.quote(remote_file)}", check=True)
            else:
                stats = await sftp.lstat(remote_file)
                if stats.size == 0:
                    logger.info(f"{host.name}: resending incomplete executor {remote_file}")
                    await sftp.put(str(local_path), remote_file)
                    await conn.run(f"chmod 700 {shlex.quote(remote_file)}", check=True)
                else:
                    logger.debug(f"{host.name}: reusing executor {remote_file}")
        return remote_file

    async def _start_executor(
        self, conn: asyncssh.SSHClientConnection, remote_file: str, host: HostTarget
    ) -> "asyncssh.SSHClientProcess[bytes]":
        command = f"{host.interpreter} {shlex.quote(remote_file)}"
        if host.become:
            command = f"sudo -n {command}"
        logger.debug(f"{host.name}: starting {command}")
        return await conn.create_process(command, encoding=None)

    async def close_all(self) -> None:
        """Close every cached connection."""
        for key in list(self._connections):
            conn = self._connections.pop(key)
            conn.close()
            await conn.wait_closed()
