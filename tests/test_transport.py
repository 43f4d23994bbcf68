"""Tests for transports and SSH connection options."""

import sys

import pytest

from rook.config import RookConfig
from rook.exceptions import TransportError
from rook.ssh import SSHConfig, SSHTransport
from rook.transport import Channel, InProcessTransport, LocalTransport, RoutingTransport, Transport
from rook.types import HostTarget


class RecordingTransport(Transport):
    def __init__(self):
        self.hosts = []
        self.closed = False

    async def open(self, host):
        self.hosts.append(host.name)
        return Channel(host.name, None, None)

    async def close_all(self):
        self.closed = True


class TestInProcessTransport:
    @pytest.mark.asyncio
    async def test_fail_hosts(self, registry):
        transport = InProcessTransport(registry, fail_hosts=["db1"])
        with pytest.raises(TransportError, match="Connection refused: 10.0.0.9") as exc_info:
            await transport.open(HostTarget("db1", "10.0.0.9"))
        assert exc_info.value.host == "db1"
        assert transport.opened["db1"] == 1
        assert "db1" not in transport.channels

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, registry):
        transport = InProcessTransport(registry)
        channel = await transport.open(HostTarget("web1", "web1"))
        await channel.close()
        await channel.close()
        assert channel.closed
        assert channel.sent.count("Shutdown") == 1


class TestLocalTransport:
    def test_command(self):
        transport = LocalTransport("/usr/bin/python3")
        assert transport.command(HostTarget("localhost", "localhost", connection="local")) == [
            "/usr/bin/python3",
            "-m",
            "rook.executor",
        ]

    def test_command_with_become(self):
        transport = LocalTransport("/usr/bin/python3")
        host = HostTarget("localhost", "localhost", become=True, connection="local")
        assert transport.command(host)[:2] == ["sudo", "-n"]

    def test_default_interpreter(self):
        assert LocalTransport().interpreter == sys.executable

    @pytest.mark.asyncio
    async def test_missing_interpreter(self):
        transport = LocalTransport("/nonexistent/python")
        with pytest.raises(TransportError, match="Cannot start local executor"):
            await transport.open(HostTarget("localhost", "localhost", connection="local"))


class TestRoutingTransport:
    @pytest.mark.asyncio
    async def test_routes_by_connection(self):
        local, remote = RecordingTransport(), RecordingTransport()
        transport = RoutingTransport(local, remote)

        await transport.open(HostTarget("localhost", "localhost", connection="local"))
        await transport.open(HostTarget("web1", "10.0.0.1"))

        assert local.hosts == ["localhost"]
        assert remote.hosts == ["web1"]

    @pytest.mark.asyncio
    async def test_close_all(self):
        local, remote = RecordingTransport(), RecordingTransport()
        await RoutingTransport(local, remote).close_all()
        assert local.closed and remote.closed


class TestSSHConfig:
    """Tests for SSHConfig."""

    def test_for_host(self):
        host = HostTarget("web1", "10.0.0.1", port=2222, user="deploy", key_file="/keys/web")
        config = SSHConfig.for_host(host, RookConfig(known_hosts="", connect_timeout=5.0))

        assert config.hostname == "10.0.0.1"
        assert config.port == 2222
        assert config.username == "deploy"
        assert config.client_keys == ["/keys/web"]
        assert config.key == ("10.0.0.1", 2222, "deploy")

    def test_asyncssh_options(self):
        options = SSHConfig("10.0.0.1", username="deploy", known_hosts="").to_asyncssh_options()
        assert options["host"] == "10.0.0.1"
        assert options["port"] == 22
        assert options["username"] == "deploy"
        assert options["known_hosts"] is None
        assert "client_keys" not in options

    def test_default_known_hosts_left_to_asyncssh(self):
        options = SSHConfig("10.0.0.1").to_asyncssh_options()
        assert "known_hosts" not in options
        assert "username" not in options

    def test_known_hosts_path_expanded(self):
        options = SSHConfig("10.0.0.1", known_hosts="~/.ssh/known_hosts").to_asyncssh_options()
        assert not options["known_hosts"].startswith("~")


class TestSSHTransport:
    def test_uses_configured_cache_dir(self, tmp_path):
        transport = SSHTransport(RookConfig(executor_cache_dir=str(tmp_path)))
        assert transport.builder.cache_dir == tmp_path

    @pytest.mark.asyncio
    async def test_close_all_without_connections(self):
        await SSHTransport(RookConfig()).close_all()
