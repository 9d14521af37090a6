"""Shared fixtures: an in-memory host and node configurations."""
import asyncio
from dataclasses import dataclass
from typing import Optional

import pytest

from puppet_converge.config import ConfigLoader
from puppet_converge.host.base import (
    SERVICE_ACTIONS,
    CommandResult,
    FileStat,
    HostAccess,
    HostError,
    PackageStatus,
    ServiceStatus,
)

# Exec guards also go through run_command, so commands are checked separately
MUTATING = {
    "install_package",
    "remove_package",
    "write_file_atomic",
    "make_directory",
    "set_file_attributes",
    "remove_file",
    "control_service",
}


@dataclass
class FakeFile:
    content: Optional[bytes]
    is_directory: bool = False
    mode: str = "0644"
    owner: str = "root"
    group: str = "root"


class FakeHost(HostAccess):
    """In-memory host that records every call.

    ``failures`` maps (operation, name) to an exception to raise and
    ``delays`` maps (operation, name) to seconds to sleep first.
    ``command_results`` maps a command to its exit code (default 0) and
    ``environments`` keeps the environment each command was given.
    """

    def __init__(self, host_id: str = "fake-node"):
        super().__init__(host_id)
        self.packages: dict[str, str] = {}
        self.files: dict[str, FakeFile] = {}
        self.services: dict[str, ServiceStatus] = {}
        self.command_results: dict[str, int] = {}
        self.environments: dict[str, dict[str, str]] = {}
        self.failures: dict[tuple[str, str], Exception] = {}
        self.delays: dict[tuple[str, str], float] = {}
        self.calls: list[tuple[str, str]] = []

    async def _hook(self, operation: str, name: str) -> None:
        self.calls.append((operation, name))
        delay = self.delays.get((operation, name))
        if delay:
            await asyncio.sleep(delay)
        error = self.failures.get((operation, name))
        if error is not None:
            raise error

    @property
    def mutations(self) -> list[tuple[str, str]]:
        return [call for call in self.calls if call[0] in MUTATING]

    def calls_for(self, operation: str) -> list[str]:
        return [name for op, name in self.calls if op == operation]

    # Packages
    async def query_package(self, name, provider=None):
        await self._hook("query_package", name)
        return PackageStatus(installed=name in self.packages, version=self.packages.get(name))

    async def install_package(self, name, version=None, provider=None):
        await self._hook("install_package", name)
        pinned = version not in (None, "installed", "present", "latest")
        self.packages[name] = version if pinned else "1.0"

    async def remove_package(self, name, provider=None):
        await self._hook("remove_package", name)
        self.packages.pop(name, None)

    # Files
    async def read_file(self, path):
        await self._hook("read_file", path)
        entry = self.files.get(path)
        if entry is None or entry.is_directory:
            return None
        return entry.content

    async def stat_file(self, path):
        await self._hook("stat_file", path)
        entry = self.files.get(path)
        if entry is None:
            return FileStat(exists=False)
        return FileStat(
            exists=True,
            is_directory=entry.is_directory,
            mode=entry.mode,
            owner=entry.owner,
            group=entry.group,
        )

    async def write_file_atomic(self, path, data, mode=None, owner=None, group=None):
        await self._hook("write_file_atomic", path)
        self.files[path] = FakeFile(data, False, mode or "0644", owner or "root", group or "root")

    async def make_directory(self, path, mode=None, owner=None, group=None):
        await self._hook("make_directory", path)
        self.files[path] = FakeFile(None, True, mode or "0755", owner or "root", group or "root")

    async def set_file_attributes(self, path, mode=None, owner=None, group=None):
        await self._hook("set_file_attributes", path)
        entry = self.files[path]
        entry.mode = mode or entry.mode
        entry.owner = owner or entry.owner
        entry.group = group or entry.group

    async def remove_file(self, path):
        await self._hook("remove_file", path)
        for existing in [p for p in self.files if p == path or p.startswith(path + "/")]:
            del self.files[existing]

    # Services
    async def query_service(self, name):
        await self._hook("query_service", name)
        status = self.services.get(name, ServiceStatus(running=False, enabled=False))
        return ServiceStatus(running=status.running, enabled=status.enabled)

    async def control_service(self, name, action):
        if action not in SERVICE_ACTIONS:
            raise HostError(f"Invalid service action: {action}")
        await self._hook("control_service", f"{name}:{action}")
        status = self.services.setdefault(name, ServiceStatus(running=False, enabled=False))
        if action in ("start", "restart"):
            status.running = True
        elif action == "stop":
            status.running = False
        elif action == "enable":
            status.enabled = True
        elif action == "disable":
            status.enabled = False

    # Commands
    async def run_command(self, command, timeout=None, environment=None):
        await self._hook("run_command", command)
        self.environments[command] = dict(environment or {})
        return CommandResult(exit_code=self.command_results.get(command, 0))


@pytest.fixture
def fake_host():
    return FakeHost()


@pytest.fixture
def loader():
    return ConfigLoader()


@pytest.fixture
def master_node(loader):
    """Debian master and agent, standalone master daemon."""
    return loader.parse({
        "certname": "puppet.example.com",
        "master": {},
        "agent": {"server": "puppet.example.com"},
    })


@pytest.fixture
def passenger_node(loader):
    """Debian master under passenger with sqlite storeconfigs."""
    return loader.parse({
        "certname": "puppet.example.com",
        "master": {
            "passenger": {"enabled": True},
            "storeconfigs": {"enabled": True, "adapter": "sqlite3"},
        },
        "agent": {"server": "puppet.example.com"},
    })


@pytest.fixture
def agent_node(loader):
    """Agent only."""
    return loader.parse({
        "certname": "node1.example.com",
        "agent": {"server": "puppet.example.com"},
    })
