"""Remote host access over SSH.

Commands run through paramiko's exec channel; files are written with SFTP
to a temporary name and renamed into place.
"""
import asyncio
import io
import logging
import posixpath
from typing import Optional

import paramiko

from .base import CommandResult, HostError
from .shell import ShellHost, _q
from ..utils.retry import with_retry

logger = logging.getLogger(__name__)

SSH_RETRYABLE = (
    paramiko.SSHException,
    ConnectionRefusedError,
    ConnectionResetError,
    EOFError,
)


class SSHHost(ShellHost):
    """Converge a remote node through SSH."""

    def __init__(self, host_id, config=None):
        super().__init__(host_id, config)
        self._ssh: Optional[paramiko.SSHClient] = None

    async def connect(self) -> bool:
        """Connect to the node via SSH, retrying up to ``config.retries`` times."""
        attempts = max(1, self.config.retries)
        return await with_retry(
            max_attempts=attempts, min_wait=1, max_wait=10, exceptions=SSH_RETRYABLE,
        )(self._connect)()

    async def _connect(self) -> bool:
        logger.info(f"Connecting to {self.host_id} at {self.config.host}")

        loop = asyncio.get_event_loop()

        def _connect():
            ssh = paramiko.SSHClient()
            ssh.load_system_host_keys()
            ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            password = self.config.get_password() or None
            ssh.connect(
                hostname=self.config.host,
                port=self.config.port,
                username=self.config.username,
                password=password,
                key_filename=self.config.key_filename,
                timeout=self.config.timeout,
                allow_agent=password is None,
                look_for_keys=password is None,
            )
            return ssh

        self._ssh = await loop.run_in_executor(None, _connect)
        self._connected = True
        logger.info(f"Connected to {self.host_id}")
        return True

    async def disconnect(self) -> None:
        """Disconnect from the node."""
        if self._ssh:
            self._ssh.close()
            self._ssh = None
        self._connected = False
        logger.info(f"Disconnected from {self.host_id}")

    async def _run(
        self,
        command: str,
        stdin: Optional[bytes] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        if not self._ssh:
            raise ConnectionError(f"Not connected to {self.host_id}")

        ssh = self._ssh
        loop = asyncio.get_event_loop()

        def _exec():
            chan_stdin, stdout, stderr = ssh.exec_command(
                f"sh -c {_q(command)}", timeout=timeout or self.config.timeout
            )
            if stdin is not None:
                chan_stdin.write(stdin)
                chan_stdin.channel.shutdown_write()
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            exit_code = stdout.channel.recv_exit_status()
            return CommandResult(exit_code=exit_code, stdout=out, stderr=err)

        result = await loop.run_in_executor(None, _exec)
        if not result.success:
            logger.debug(f"Command '{command}' failed (exit {result.exit_code}): {result.stderr}")
        return result

    async def write_file_atomic(
        self,
        path: str,
        data: bytes,
        mode: Optional[str] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        if not self._ssh:
            raise ConnectionError(f"Not connected to {self.host_id}")

        ssh = self._ssh
        tmp = posixpath.join(posixpath.dirname(path), f".{posixpath.basename(path)}.puppet-converge")
        loop = asyncio.get_event_loop()

        def _upload():
            sftp = ssh.open_sftp()
            try:
                sftp.putfo(io.BytesIO(data), tmp)
            finally:
                sftp.close()

        try:
            await loop.run_in_executor(None, _upload)
        except (IOError, paramiko.SSHException) as e:
            raise HostError(f"Failed to upload {path}: {e}") from e

        steps = self._attribute_commands(tmp, mode or "0644", owner, group)
        steps.append(f"mv -f {_q(tmp)} {_q(path)}")
        await self._check(" && ".join(steps))
