"""Host access implemented with shell commands.

Package, service and file operations are expressed as commands so the same
logic works locally and over SSH. Subclasses only provide ``_run`` and may
override file operations with native implementations.
"""
import base64
import logging
import shlex
from abc import abstractmethod
from typing import Optional

from .base import (
    SERVICE_ACTIONS,
    CommandResult,
    FileStat,
    HostAccess,
    HostError,
    PackageStatus,
    ServiceStatus,
)
from ..utils.logging_config import timed

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "apt"

# Version strings that mean "any installed version"
ANY_VERSION = {None, "", "installed", "present", "latest"}


def _q(value: str) -> str:
    return shlex.quote(value)


class ShellHost(HostAccess):
    """Base class for hosts driven through a shell."""

    @abstractmethod
    async def _run(
        self,
        command: str,
        stdin: Optional[bytes] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run ``command`` through ``sh -c`` on the host."""
        pass

    async def _check(self, command: str, stdin: Optional[bytes] = None) -> CommandResult:
        """Run a command that must succeed."""
        result = await self._run(command, stdin=stdin)
        if not result.success:
            raise HostError(
                f"Command failed (exit {result.exit_code}): {command}",
                output=result.output,
            )
        return result

    async def run_command(
        self,
        command: str,
        timeout: Optional[float] = None,
        environment: Optional[dict[str, str]] = None,
    ) -> CommandResult:
        logger.debug(f"[{self.host_id}] $ {command}")
        if not environment:
            return await self._run(command, timeout=timeout)

        # Values travel on stdin so they never show up in argv or logs
        names = sorted(environment)
        for name in names:
            if not name.isidentifier():
                raise HostError(f"Invalid environment variable name: {name!r}")
            if "\n" in str(environment[name]):
                raise HostError(f"Environment variable {name} must be a single line")
        reads = "; ".join(f"IFS= read -r {name}" for name in names)
        wrapped = f"{reads}; export {' '.join(names)}; {command}"
        stdin = "".join(f"{environment[name]}\n" for name in names).encode("utf-8")
        return await self._run(wrapped, stdin=stdin, timeout=timeout)

    # === Packages ===

    @timed("query_package")
    async def query_package(self, name: str, provider: Optional[str] = None) -> PackageStatus:
        provider = provider or DEFAULT_PROVIDER
        if provider == "apt":
            result = await self._run(f"dpkg-query -W -f='${{Status}}|${{Version}}' {_q(name)}")
            if not result.success:
                return PackageStatus(installed=False)
            status, _, version = result.stdout.partition("|")
            installed = "install ok installed" in status
            return PackageStatus(installed=installed, version=version.strip() if installed else None)

        if provider == "yum":
            result = await self._run(f"rpm -q --qf '%{{VERSION}}-%{{RELEASE}}' {_q(name)}")
            if not result.success:
                return PackageStatus(installed=False)
            return PackageStatus(installed=True, version=result.stdout.strip())

        if provider == "gem":
            result = await self._run(f"gem list --local --exact {_q(name)}")
            # Output: "rack (1.4.1, 1.3.0)"
            for line in result.stdout.splitlines():
                if line.startswith(f"{name} ("):
                    versions = line[len(name) + 2:].rstrip(")").split(",")
                    return PackageStatus(installed=True, version=versions[0].strip())
            return PackageStatus(installed=False)

        raise HostError(f"Unsupported package provider: {provider}")

    @timed("install_package")
    async def install_package(
        self,
        name: str,
        version: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> None:
        provider = provider or DEFAULT_PROVIDER
        pinned = version not in ANY_VERSION

        if provider == "apt":
            spec = f"{name}={version}" if pinned else name
            command = (
                "DEBIAN_FRONTEND=noninteractive apt-get install -y -q "
                f"-o Dpkg::Options::=--force-confold {_q(spec)}"
            )
        elif provider == "yum":
            spec = f"{name}-{version}" if pinned else name
            command = f"yum install -y -q {_q(spec)}"
        elif provider == "gem":
            command = f"gem install --no-ri --no-rdoc {_q(name)}"
            if pinned:
                command += f" -v {_q(version)}"
        else:
            raise HostError(f"Unsupported package provider: {provider}")

        logger.info(f"[{self.host_id}] Installing {name} ({provider}{', ' + version if pinned else ''})")
        await self._check(command)

    @timed("remove_package")
    async def remove_package(self, name: str, provider: Optional[str] = None) -> None:
        provider = provider or DEFAULT_PROVIDER
        commands = {
            "apt": f"DEBIAN_FRONTEND=noninteractive apt-get remove -y -q {_q(name)}",
            "yum": f"yum remove -y -q {_q(name)}",
            "gem": f"gem uninstall -x -a {_q(name)}",
        }
        if provider not in commands:
            raise HostError(f"Unsupported package provider: {provider}")
        logger.info(f"[{self.host_id}] Removing {name} ({provider})")
        await self._check(commands[provider])

    # === Files ===

    async def read_file(self, path: str) -> Optional[bytes]:
        # Base64 keeps non-UTF-8 content byte-exact through the text channel
        result = await self._run(f"test -f {_q(path)} && base64 < {_q(path)}")
        if not result.success:
            return None
        return base64.b64decode(result.stdout)

    async def stat_file(self, path: str) -> FileStat:
        result = await self._run(f"stat -c '%F|%a|%U|%G' {_q(path)}")
        if not result.success:
            return FileStat(exists=False)
        kind, mode, owner, group = result.stdout.strip().split("|")
        return FileStat(
            exists=True,
            is_directory=kind == "directory",
            mode=mode.zfill(4),
            owner=owner,
            group=group,
        )

    @timed("write_file")
    async def write_file_atomic(
        self,
        path: str,
        data: bytes,
        mode: Optional[str] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        tmp = f"{path}.puppet-converge.tmp"
        steps = [f"cat > {_q(tmp)}"]
        steps.extend(self._attribute_commands(tmp, mode, owner, group))
        steps.append(f"mv -f {_q(tmp)} {_q(path)}")
        await self._check(" && ".join(steps), stdin=data)

    async def make_directory(
        self,
        path: str,
        mode: Optional[str] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        steps = [f"mkdir -p {_q(path)}"]
        steps.extend(self._attribute_commands(path, mode, owner, group))
        await self._check(" && ".join(steps))

    async def set_file_attributes(
        self,
        path: str,
        mode: Optional[str] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        steps = self._attribute_commands(path, mode, owner, group)
        if steps:
            await self._check(" && ".join(steps))

    async def remove_file(self, path: str) -> None:
        await self._check(f"rm -rf {_q(path)}")

    def _attribute_commands(
        self,
        path: str,
        mode: Optional[str],
        owner: Optional[str],
        group: Optional[str],
    ) -> list[str]:
        steps = []
        if mode:
            steps.append(f"chmod {_q(mode)} {_q(path)}")
        if owner or group:
            spec = f"{owner or ''}:{group or ''}".rstrip(":")
            steps.append(f"chown {_q(spec)} {_q(path)}")
        return steps

    # === Services ===

    async def query_service(self, name: str) -> ServiceStatus:
        running = await self._run(f"systemctl is-active --quiet {_q(name)}")
        enabled = await self._run(f"systemctl is-enabled --quiet {_q(name)}")
        return ServiceStatus(running=running.success, enabled=enabled.success)

    @timed("control_service")
    async def control_service(self, name: str, action: str) -> None:
        if action not in SERVICE_ACTIONS:
            raise HostError(f"Invalid service action: {action}")
        logger.info(f"[{self.host_id}] Service {name}: {action}")
        await self._check(f"systemctl {action} {_q(name)}")
