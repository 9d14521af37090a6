"""Per-kind resource handlers.

Each handler knows how to observe one kind of resource on a host, apply
the minimal change towards its desired state, and react to a refresh.
``observe`` never changes host state; ``apply`` only touches what
``observe`` reported as drifted.
"""
import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Optional

from ..catalog.schema import Resource, ResourceKind
from ..host.base import HostAccess
from .errors import ApplyError, ObserveError
from .schema import ApplyResult, ObservedState

logger = logging.getLogger(__name__)

# Package ensure values satisfied by any installed version
INSTALLED = {None, "installed", "present", "latest"}
REMOVED = {"absent", "purged"}


def _mode(value) -> Optional[int]:
    if value is None:
        return None
    return int(str(value), 8)


def _digest(data: Optional[bytes]) -> Optional[str]:
    if data is None:
        return None
    return hashlib.md5(data).hexdigest()


class ResourceHandler(ABC):
    """Observe, apply and refresh one kind of resource."""

    kind: ResourceKind

    @abstractmethod
    async def observe(self, resource: Resource, host: HostAccess) -> ObservedState:
        pass

    @abstractmethod
    async def apply(
        self,
        resource: Resource,
        host: HostAccess,
        observed: ObservedState,
    ) -> ApplyResult:
        pass

    async def refresh(self, resource: Resource, host: HostAccess) -> bool:
        """React to a notification. Returns False when there is nothing to do."""
        return False


class PackageHandler(ResourceHandler):
    kind = ResourceKind.PACKAGE

    async def observe(self, resource, host):
        ensure = resource.ensure
        provider = resource.attributes.get("provider")
        status = await host.query_package(resource.name, provider)
        current = {"installed": status.installed, "version": status.version}

        if ensure in REMOVED:
            if status.installed:
                return ObservedState(False, current, [f"remove {status.version or ''}".strip()])
            return ObservedState(True, current)

        if not status.installed:
            target = "" if ensure in INSTALLED else f" {ensure}"
            return ObservedState(False, current, [f"install{target}"])

        if ensure not in INSTALLED and status.version != ensure:
            return ObservedState(False, current, [f"version {status.version} -> {ensure}"])

        return ObservedState(True, current)

    async def apply(self, resource, host, observed):
        provider = resource.attributes.get("provider")
        if resource.ensure in REMOVED:
            await host.remove_package(resource.name, provider)
        else:
            await host.install_package(resource.name, resource.ensure, provider)
        return ApplyResult(changed=True)


class FileHandler(ResourceHandler):
    """Plain files and directories.

    ``content`` is only managed when the attribute is set; ``mode``,
    ``owner`` and ``group`` only when given.
    """

    kind = ResourceKind.FILE

    def _path(self, resource: Resource) -> str:
        return resource.attributes.get("path") or resource.title

    def _desired_content(self, resource: Resource) -> Optional[bytes]:
        content = resource.attributes.get("content")
        if content is None:
            return None
        return content.encode("utf-8")

    async def observe(self, resource, host):
        path = self._path(resource)
        attrs = resource.attributes
        ensure = resource.ensure or "file"
        stat = await host.stat_file(path)
        current = {
            "exists": stat.exists,
            "directory": stat.is_directory,
            "mode": stat.mode,
            "owner": stat.owner,
            "group": stat.group,
        }
        changes = []

        if ensure == "absent":
            if stat.exists:
                changes.append("remove")
            return ObservedState(not changes, current, changes)

        if not stat.exists:
            changes.append(f"create {'directory' if ensure == 'directory' else 'file'}")
            return ObservedState(False, current, changes)

        if ensure == "directory" and not stat.is_directory:
            changes.append("replace file with directory")
            return ObservedState(False, current, changes)

        if ensure == "file" and stat.is_directory:
            raise ObserveError(resource.ref, f"{path} is a directory")

        desired = self._desired_content(resource)
        if desired is not None and not stat.is_directory:
            data = await host.read_file(path)
            current["md5"] = _digest(data)
            if data != desired:
                changes.append(f"content {current['md5']} -> {_digest(desired)}")

        if attrs.get("mode") and _mode(stat.mode) != _mode(attrs["mode"]):
            changes.append(f"mode {stat.mode} -> {attrs['mode']}")
        for key in ("owner", "group"):
            if attrs.get(key) and current[key] != attrs[key]:
                changes.append(f"{key} {current[key]} -> {attrs[key]}")

        return ObservedState(not changes, current, changes)

    async def apply(self, resource, host, observed):
        path = self._path(resource)
        attrs = resource.attributes
        ensure = resource.ensure or "file"
        mode, owner, group = attrs.get("mode"), attrs.get("owner"), attrs.get("group")

        if ensure == "absent":
            await host.remove_file(path)
            return ApplyResult(changed=True)

        if ensure == "directory":
            if observed.current.get("exists") and not observed.current.get("directory"):
                await host.remove_file(path)
            await host.make_directory(path, mode, owner, group)
            return ApplyResult(changed=True)

        desired = self._desired_content(resource)
        missing = not observed.current.get("exists")
        content_drift = desired is not None and any(c.startswith("content ") for c in observed.changes)
        if missing or content_drift:
            await host.write_file_atomic(path, desired or b"", mode, owner, group)
        else:
            await host.set_file_attributes(path, mode, owner, group)
        return ApplyResult(changed=True)


class ConcatHandler(FileHandler):
    """Target file assembled from fragments; content is always managed."""

    kind = ResourceKind.CONCAT

    def _desired_content(self, resource):
        return (resource.attributes.get("content") or "").encode("utf-8")


class ConcatFragmentHandler(ResourceHandler):
    """Fragments exist only in the catalog; their target carries the change."""

    kind = ResourceKind.CONCAT_FRAGMENT

    async def observe(self, resource, host):
        return ObservedState(True)

    async def apply(self, resource, host, observed):
        return ApplyResult(changed=False)


class ServiceHandler(ResourceHandler):
    kind = ResourceKind.SERVICE

    async def observe(self, resource, host):
        ensure = resource.ensure
        enable = resource.attributes.get("enable")
        status = await host.query_service(resource.name)
        current = {"running": status.running, "enabled": status.enabled}
        changes = []

        if ensure == "running" and not status.running:
            changes.append("start")
        elif ensure == "stopped" and status.running:
            changes.append("stop")

        if enable is not None and status.enabled is not None and enable != status.enabled:
            changes.append("enable" if enable else "disable")

        return ObservedState(not changes, current, changes)

    async def apply(self, resource, host, observed):
        for action in observed.changes:
            await host.control_service(resource.name, action)
        return ApplyResult(changed=bool(observed.changes))

    async def refresh(self, resource, host):
        if resource.ensure == "stopped":
            logger.info(f"{resource.ref} is stopped; not restarting")
            return False
        if resource.attributes.get("hasrestart", True):
            await host.control_service(resource.name, "restart")
        else:
            await host.control_service(resource.name, "stop")
            await host.control_service(resource.name, "start")
        return True


class ExecHandler(ResourceHandler):
    """Commands guarded by ``creates``, ``unless`` and ``onlyif``.

    ``refreshonly`` commands run only when notified. ``environment`` is
    exported to the command and its guards; secrets belong there rather
    than in the command, which is reported and logged.
    """

    kind = ResourceKind.EXEC

    async def _guards_satisfied(self, resource: Resource, host: HostAccess) -> Optional[str]:
        """Return the reason the command should not run, if any."""
        attrs = resource.attributes
        timeout = attrs.get("timeout")
        environment = attrs.get("environment")

        if attrs.get("creates"):
            stat = await host.stat_file(attrs["creates"])
            if stat.exists:
                return f"{attrs['creates']} exists"
        if attrs.get("unless"):
            result = await host.run_command(attrs["unless"], timeout=timeout, environment=environment)
            if result.success:
                return "unless check passed"
        if attrs.get("onlyif"):
            result = await host.run_command(attrs["onlyif"], timeout=timeout, environment=environment)
            if not result.success:
                return "onlyif check failed"
        return None

    async def observe(self, resource, host):
        if resource.attributes.get("refreshonly"):
            return ObservedState(True, {"refreshonly": True})

        reason = await self._guards_satisfied(resource, host)
        if reason:
            return ObservedState(True, {"guard": reason})
        return ObservedState(False, {}, [f"run: {resource.attributes['command']}"])

    async def _run(self, resource: Resource, host: HostAccess) -> None:
        attrs = resource.attributes
        returns = attrs.get("returns", [0])
        if isinstance(returns, int):
            returns = [returns]

        result = await host.run_command(
            attrs["command"],
            timeout=attrs.get("timeout"),
            environment=attrs.get("environment"),
        )
        if result.exit_code not in returns:
            raise ApplyError(
                resource.ref,
                f"'{attrs['command']}' returned {result.exit_code}: {result.output}",
            )
        logger.debug(f"{resource.ref} output: {result.output}")

    async def apply(self, resource, host, observed):
        await self._run(resource, host)
        return ApplyResult(changed=True)

    async def refresh(self, resource, host):
        reason = await self._guards_satisfied(resource, host)
        if reason:
            logger.info(f"{resource.ref} not re-run on refresh: {reason}")
            return False
        await self._run(resource, host)
        return True


# Handler registry
HANDLERS: dict[ResourceKind, ResourceHandler] = {
    handler.kind: handler
    for handler in (
        PackageHandler(),
        FileHandler(),
        ConcatHandler(),
        ConcatFragmentHandler(),
        ServiceHandler(),
        ExecHandler(),
    )
}


def get_handler(kind: ResourceKind) -> ResourceHandler:
    """Look up the handler for a resource kind."""
    if kind not in HANDLERS:
        raise ValueError(f"No handler for resource kind: {kind.value}")
    return HANDLERS[kind]
