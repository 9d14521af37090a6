"""Local host access (the machine puppet-converge runs on)."""
import asyncio
import grp
import logging
import os
import pwd
import shutil
import signal
import stat
import tempfile
from pathlib import Path
from typing import Optional

from .base import CommandResult, FileStat, HostError
from .shell import ShellHost

logger = logging.getLogger(__name__)


def _owner_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _group_name(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)


def _apply_attributes(path: str, mode: Optional[str], owner: Optional[str], group: Optional[str]) -> None:
    if mode:
        os.chmod(path, int(mode, 8))
    if owner or group:
        shutil.chown(path, user=owner, group=group)


class LocalHost(ShellHost):
    """Run commands with asyncio subprocesses and manage files natively."""

    async def _run(
        self,
        command: str,
        stdin: Optional[bytes] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        try:
            out, err = await asyncio.wait_for(process.communicate(stdin), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(process, command)
            raise TimeoutError(f"Command timed out after {timeout}s: {command}") from None
        except BaseException:
            # Cancelled by an outer timeout: nothing may keep running
            await self._kill(process, command)
            raise

        result = CommandResult(
            exit_code=process.returncode,
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
        )
        if not result.success:
            logger.debug(f"Command '{command}' failed (exit {result.exit_code}): {result.stderr}")
        return result

    async def _kill(self, process: asyncio.subprocess.Process, command: str) -> None:
        """Kill the command's whole process group and reap it."""
        if process.returncode is not None:
            return
        logger.warning(f"[{self.host_id}] Killing '{command}' (pid {process.pid})")
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        await asyncio.shield(process.wait())

    # === Files ===

    async def read_file(self, path: str) -> Optional[bytes]:
        def _read() -> Optional[bytes]:
            p = Path(path)
            if not p.is_file():
                return None
            return p.read_bytes()

        return await asyncio.get_event_loop().run_in_executor(None, _read)

    async def stat_file(self, path: str) -> FileStat:
        def _stat() -> FileStat:
            try:
                st = os.stat(path)
            except FileNotFoundError:
                return FileStat(exists=False)
            return FileStat(
                exists=True,
                is_directory=stat.S_ISDIR(st.st_mode),
                mode=format(stat.S_IMODE(st.st_mode), "04o"),
                owner=_owner_name(st.st_uid),
                group=_group_name(st.st_gid),
            )

        return await asyncio.get_event_loop().run_in_executor(None, _stat)

    async def write_file_atomic(
        self,
        path: str,
        data: bytes,
        mode: Optional[str] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        def _write() -> None:
            directory = os.path.dirname(path) or "."
            fd, tmp = tempfile.mkstemp(dir=directory, prefix=".puppet-converge.")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                _apply_attributes(tmp, mode or "0644", owner, group)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise

        try:
            await asyncio.get_event_loop().run_in_executor(None, _write)
        except (OSError, LookupError) as e:
            raise HostError(f"Failed to write {path}: {e}") from e

    async def make_directory(
        self,
        path: str,
        mode: Optional[str] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        def _mkdir() -> None:
            os.makedirs(path, exist_ok=True)
            _apply_attributes(path, mode, owner, group)

        try:
            await asyncio.get_event_loop().run_in_executor(None, _mkdir)
        except (OSError, LookupError) as e:
            raise HostError(f"Failed to create {path}: {e}") from e

    async def set_file_attributes(
        self,
        path: str,
        mode: Optional[str] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        try:
            await asyncio.get_event_loop().run_in_executor(
                None, _apply_attributes, path, mode, owner, group
            )
        except (OSError, LookupError) as e:
            raise HostError(f"Failed to set attributes on {path}: {e}") from e

    async def remove_file(self, path: str) -> None:
        def _remove() -> None:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            elif os.path.lexists(path):
                os.unlink(path)

        try:
            await asyncio.get_event_loop().run_in_executor(None, _remove)
        except OSError as e:
            raise HostError(f"Failed to remove {path}: {e}") from e
