"""Tests for host access implementations."""
import base64
import os

import paramiko
import pytest
from puppet_converge.config import HostConfig
from puppet_converge.host import (
    CommandResult,
    HostError,
    LocalHost,
    SSHHost,
    ShellHost,
    create_host,
)


class RecordingHost(ShellHost):
    """ShellHost whose commands are answered from a table."""

    def __init__(self, responses=None):
        super().__init__("recording")
        self.responses = responses or {}
        self.commands = []

    async def _run(self, command, stdin=None, timeout=None):
        self.commands.append((command, stdin))
        for prefix, result in self.responses.items():
            if command.startswith(prefix):
                return result
        return CommandResult(exit_code=0)


class TestCreateHost:
    """Tests for the host factory."""

    def test_local(self):
        host = create_host("node1", HostConfig())
        assert isinstance(host, LocalHost)
        assert host.host_id == "node1"

    def test_ssh(self):
        host = create_host("node1", HostConfig(type="ssh", host="10.0.0.5"))
        assert isinstance(host, SSHHost)
        assert host.config.host == "10.0.0.5"

    def test_unknown(self):
        with pytest.raises(ValueError):
            create_host("node1", HostConfig(type="telnet"))


class TestShellHost:
    """Tests for command construction and output parsing."""

    @pytest.mark.asyncio
    async def test_apt_query_installed(self):
        host = RecordingHost({
            "dpkg-query": CommandResult(0, "install ok installed|2.7.11-1ubuntu2"),
        })

        status = await host.query_package("puppet", "apt")

        assert status.installed
        assert status.version == "2.7.11-1ubuntu2"

    @pytest.mark.asyncio
    async def test_apt_query_missing(self):
        host = RecordingHost({"dpkg-query": CommandResult(1, "", "no packages found")})

        status = await host.query_package("puppet", "apt")

        assert not status.installed

    @pytest.mark.asyncio
    async def test_gem_query(self):
        host = RecordingHost({"gem list": CommandResult(0, "rack (1.4.1, 1.3.0)\n")})

        status = await host.query_package("rack", "gem")

        assert status.installed
        assert status.version == "1.4.1"

    @pytest.mark.asyncio
    async def test_install_pinned_version(self):
        host = RecordingHost()

        await host.install_package("puppet", "2.7.9", "yum")

        assert host.commands[0][0] == "yum install -y -q puppet-2.7.9"

    @pytest.mark.asyncio
    async def test_unsupported_provider(self):
        with pytest.raises(HostError):
            await RecordingHost().install_package("puppet", None, "pacman")

    @pytest.mark.asyncio
    async def test_failed_install_raises(self):
        host = RecordingHost({"DEBIAN_FRONTEND": CommandResult(100, "", "E: Unable to locate package")})

        with pytest.raises(HostError) as exc:
            await host.install_package("nope", None, "apt")

        assert "Unable to locate" in exc.value.output

    @pytest.mark.asyncio
    async def test_write_file_atomic_renames(self):
        host = RecordingHost()

        await host.write_file_atomic("/etc/puppet/puppet.conf", b"[main]\n", "0644", "root", "puppet")

        command, stdin = host.commands[0]
        assert command.startswith("cat > /etc/puppet/puppet.conf.puppet-converge.tmp")
        assert "chown root:puppet" in command
        assert command.endswith("mv -f /etc/puppet/puppet.conf.puppet-converge.tmp /etc/puppet/puppet.conf")
        assert stdin == b"[main]\n"

    @pytest.mark.asyncio
    async def test_environment_sent_on_stdin(self):
        host = RecordingHost()

        await host.run_command('mysql -e "$SQL"', environment={"SQL": "SELECT 1", "DBPASS": "S3cretPW"})

        command, stdin = host.commands[0]
        assert "S3cretPW" not in command
        assert command == 'IFS= read -r DBPASS; IFS= read -r SQL; export DBPASS SQL; mysql -e "$SQL"'
        assert stdin == b"S3cretPW\nSELECT 1\n"

    @pytest.mark.asyncio
    async def test_environment_rejects_multiline_values(self):
        with pytest.raises(HostError):
            await RecordingHost().run_command("true", environment={"SQL": "a\nb"})

    @pytest.mark.asyncio
    async def test_read_file_is_byte_exact(self):
        content = b"\xe9t\xe9 = latin-1\n\x00\xff"
        host = RecordingHost({"test -f": CommandResult(0, base64.encodebytes(content).decode("ascii"))})

        assert await host.read_file("/etc/puppet/fileserver.conf") == content
        assert "base64" in host.commands[0][0]

    @pytest.mark.asyncio
    async def test_read_missing_file(self):
        host = RecordingHost({"test -f": CommandResult(1)})

        assert await host.read_file("/etc/puppet/missing") is None

    @pytest.mark.asyncio
    async def test_stat_file(self):
        host = RecordingHost({"stat": CommandResult(0, "directory|755|puppet|puppet\n")})

        stat = await host.stat_file("/var/lib/puppet")

        assert stat.exists
        assert stat.is_directory
        assert stat.mode == "0755"

    @pytest.mark.asyncio
    async def test_service_actions(self):
        host = RecordingHost({"systemctl is-enabled": CommandResult(1)})

        status = await host.query_service("puppet")
        await host.control_service("puppet", "restart")

        assert status.running
        assert status.enabled is False
        assert host.commands[-1][0] == "systemctl restart puppet"
        with pytest.raises(HostError):
            await host.control_service("puppet", "reload-or-whatever")


class TestLocalHost:
    """Tests for local file operations and commands."""

    @pytest.mark.asyncio
    async def test_run_command(self):
        result = await LocalHost("local").run_command("echo hello")

        assert result.success
        assert result.stdout == "hello\n"

    @pytest.mark.asyncio
    async def test_run_command_failure(self):
        result = await LocalHost("local").run_command("exit 3")

        assert result.exit_code == 3
        assert not result.success

    @pytest.mark.asyncio
    async def test_run_command_environment(self):
        result = await LocalHost("local").run_command(
            'printf "%s|%s" "$GREETING" "$NAME"',
            environment={"GREETING": "hello world", "NAME": "it's"},
        )

        assert result.stdout == "hello world|it's"

    @pytest.mark.asyncio
    async def test_run_command_timeout(self):
        with pytest.raises(TimeoutError):
            await LocalHost("local").run_command("sleep 5", timeout=0.1)

    @pytest.mark.asyncio
    async def test_write_read_stat(self, tmp_path):
        host = LocalHost("local")
        path = str(tmp_path / "puppet.conf")

        await host.write_file_atomic(path, b"[main]\n", mode="0600")

        assert await host.read_file(path) == b"[main]\n"
        stat = await host.stat_file(path)
        assert stat.exists
        assert not stat.is_directory
        assert stat.mode == "0600"
        assert [name for name in os.listdir(tmp_path)] == ["puppet.conf"]

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        host = LocalHost("local")
        path = str(tmp_path / "missing")

        assert await host.read_file(path) is None
        assert not (await host.stat_file(path)).exists

    @pytest.mark.asyncio
    async def test_directories(self, tmp_path):
        host = LocalHost("local")
        path = str(tmp_path / "rack" / "public")

        await host.make_directory(path, mode="0750")
        stat = await host.stat_file(path)
        assert stat.is_directory
        assert stat.mode == "0750"

        await host.remove_file(str(tmp_path / "rack"))
        assert not (await host.stat_file(path)).exists

    @pytest.mark.asyncio
    async def test_set_file_attributes(self, tmp_path):
        host = LocalHost("local")
        path = tmp_path / "site.pp"
        path.write_text("")

        await host.set_file_attributes(str(path), mode="0640")

        assert (await host.stat_file(str(path))).mode == "0640"


class TestSSHHost:
    """Tests for connection retries."""

    @staticmethod
    def flaky_host(retries, failures):
        host = SSHHost("node1", HostConfig(type="ssh", host="10.0.0.5", retries=retries))
        host.attempts = 0

        async def _connect():
            host.attempts += 1
            if host.attempts <= failures:
                raise paramiko.SSHException("Error reading SSH protocol banner")
            return True

        host._connect = _connect
        return host

    @pytest.mark.asyncio
    async def test_single_attempt(self):
        host = self.flaky_host(retries=1, failures=1)

        with pytest.raises(paramiko.SSHException):
            await host.connect()

        assert host.attempts == 1

    @pytest.mark.asyncio
    async def test_retries_until_connected(self):
        host = self.flaky_host(retries=2, failures=1)

        assert await host.connect()
        assert host.attempts == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_configured_retries(self):
        host = self.flaky_host(retries=2, failures=5)

        with pytest.raises(paramiko.SSHException):
            await host.connect()

        assert host.attempts == 2
