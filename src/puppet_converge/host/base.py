"""Base host abstraction for the node being converged."""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..config.schema import HostConfig

logger = logging.getLogger(__name__)

SERVICE_ACTIONS = ("start", "stop", "restart", "enable", "disable")


class HostError(Exception):
    """A host operation failed."""

    def __init__(self, message: str, output: str = ""):
        self.output = output
        super().__init__(message)


@dataclass
class PackageStatus:
    """Installed state of a package."""
    installed: bool
    version: Optional[str] = None


@dataclass
class FileStat:
    """Metadata of a path on the host."""
    exists: bool
    is_directory: bool = False
    mode: Optional[str] = None   # Octal string, e.g. "0644"
    owner: Optional[str] = None
    group: Optional[str] = None


@dataclass
class ServiceStatus:
    """Runtime state of a service."""
    running: bool
    enabled: Optional[bool] = None


@dataclass
class CommandResult:
    """Result of a command run on the host."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()


class HostAccess(ABC):
    """Abstract base class for host access.

    Query methods must not change host state. Every method may raise
    HostError (or transport errors) which the convergence engine surfaces
    on the resource being processed.
    """

    def __init__(self, host_id: str, config: Optional[HostConfig] = None):
        self.host_id = host_id
        self.config = config or HostConfig()
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    # Connection management
    async def connect(self) -> bool:
        """Establish access to the host."""
        self._connected = True
        return True

    async def disconnect(self) -> None:
        """Release access to the host."""
        self._connected = False

    # Packages
    @abstractmethod
    async def query_package(self, name: str, provider: Optional[str] = None) -> PackageStatus:
        """Get the installed state of a package."""
        pass

    @abstractmethod
    async def install_package(
        self,
        name: str,
        version: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> None:
        """Install a package (a specific version if given)."""
        pass

    @abstractmethod
    async def remove_package(self, name: str, provider: Optional[str] = None) -> None:
        """Remove a package."""
        pass

    # Files
    @abstractmethod
    async def read_file(self, path: str) -> Optional[bytes]:
        """Get file contents, or None if the file does not exist."""
        pass

    @abstractmethod
    async def stat_file(self, path: str) -> FileStat:
        """Get metadata for a path."""
        pass

    @abstractmethod
    async def write_file_atomic(
        self,
        path: str,
        data: bytes,
        mode: Optional[str] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        """Replace a file in one step (write temp file, then rename)."""
        pass

    @abstractmethod
    async def make_directory(
        self,
        path: str,
        mode: Optional[str] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        """Create a directory (and parents)."""
        pass

    @abstractmethod
    async def set_file_attributes(
        self,
        path: str,
        mode: Optional[str] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        """Change mode and ownership of an existing path."""
        pass

    @abstractmethod
    async def remove_file(self, path: str) -> None:
        """Remove a file or directory tree."""
        pass

    # Services
    @abstractmethod
    async def query_service(self, name: str) -> ServiceStatus:
        """Get the runtime state of a service."""
        pass

    @abstractmethod
    async def control_service(self, name: str, action: str) -> None:
        """Run a service action: start, stop, restart, enable, disable."""
        pass

    # Commands
    @abstractmethod
    async def run_command(
        self,
        command: str,
        timeout: Optional[float] = None,
        environment: Optional[dict[str, str]] = None,
    ) -> CommandResult:
        """Run a shell command and return its exit code and output.

        ``environment`` is exported to the command without appearing in the
        command line, so it may carry credentials.
        """
        pass

    # Context manager support
    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()
        return False
