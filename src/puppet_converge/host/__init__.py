"""Host access for the node being converged."""
from .base import (
    HostAccess,
    HostError,
    PackageStatus,
    FileStat,
    ServiceStatus,
    CommandResult,
    SERVICE_ACTIONS,
)
from .shell import ShellHost
from .local import LocalHost
from .ssh import SSHHost
from ..config.schema import HostConfig

__all__ = [
    "HostAccess",
    "HostError",
    "PackageStatus",
    "FileStat",
    "ServiceStatus",
    "CommandResult",
    "SERVICE_ACTIONS",
    "ShellHost",
    "LocalHost",
    "SSHHost",
    "create_host",
]

# Host type registry
HOST_TYPES = {
    "local": LocalHost,
    "ssh": SSHHost,
}


def create_host(host_id: str, config: HostConfig) -> HostAccess:
    """Factory function to create host access instances."""
    host_type = config.type.lower()
    if host_type not in HOST_TYPES:
        raise ValueError(f"Unknown host type: {host_type}")

    host_class = HOST_TYPES[host_type]
    return host_class(host_id, config)
