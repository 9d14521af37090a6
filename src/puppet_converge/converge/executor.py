"""Executor for converging a catalog on a host.

Walks the catalog in dependency order, observing each resource and
applying only what drifted. Changes propagate along NOTIFY edges as
coalesced refreshes; failures skip everything that depends on them while
independent branches keep converging.
"""
import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Optional, TypeVar

from ..catalog.graph import Catalog
from ..catalog.schema import Resource, ResourceRef
from ..host.base import HostAccess
from ..utils.logging_config import timed_section
from .errors import ApplyError, NotifyTimeoutError, ObserveError, ResourceError
from .handlers import HANDLERS, ResourceHandler
from .schema import (
    AuditEntry,
    EngineOptions,
    ResourceReport,
    ResourceState,
    RunResult,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConvergenceExecutor:
    """Converge a frozen catalog on a host."""

    def __init__(
        self,
        audit_log_path: Optional[str] = None,
        handlers: Optional[dict] = None,
    ):
        """
        Initialize executor.

        Args:
            audit_log_path: Path to audit log file (optional); overridden
                per run by EngineOptions.audit_log_path
            handlers: Resource kind to handler mapping (defaults to HANDLERS)
        """
        self.audit_log_path = audit_log_path
        self.handlers = handlers or HANDLERS

    async def converge(
        self,
        catalog: Catalog,
        host: HostAccess,
        options: Optional[EngineOptions] = None,
    ) -> RunResult:
        """
        Converge every resource of ``catalog`` on ``host``.

        Args:
            catalog: Built catalog (frozen here if it is not already)
            host: Connected host access
            options: Run options (dry_run, parallel, timeout, audit)

        Returns:
            RunResult with one report per resource

        Raises:
            CycleError: If the catalog cannot be ordered
        """
        options = options or EngineOptions()
        if not catalog.frozen:
            catalog.freeze()

        if options.parallel:
            batches = catalog.layers()
        else:
            batches = [[resource] for resource in catalog.topological_order()]

        result = RunResult(
            node=catalog.name,
            dry_run=options.dry_run,
            started_at=datetime.now(timezone.utc),
        )
        for batch in batches:
            for resource in batch:
                result.reports[resource.ref] = ResourceReport(resource.ref)

        logger.info(
            f"{'DRY RUN: ' if options.dry_run else ''}Converging {len(catalog)} resources "
            f"on {host.host_id} ({len(batches)} {'layers' if options.parallel else 'steps'})"
        )

        # Pending refreshes: target -> resources that notified it
        marks: dict[ResourceRef, list[ResourceRef]] = {}

        for batch in batches:
            if len(batch) == 1:
                await self._converge_resource(catalog, batch[0], host, options, result, marks)
            else:
                await asyncio.gather(*(
                    self._converge_resource(catalog, resource, host, options, result, marks)
                    for resource in batch
                ))

        result.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Converged {catalog.name}: {len(result.applied)} applied, "
            f"{len(result.refreshed)} refreshed, {len(result.unchanged)} unchanged, "
            f"{len(result.noop)} noop, {len(result.failed)} failed, "
            f"{len(result.skipped)} skipped"
        )
        await self._write_audit_run(result, options)
        return result

    async def _converge_resource(
        self,
        catalog: Catalog,
        resource: Resource,
        host: HostAccess,
        options: EngineOptions,
        result: RunResult,
        marks: dict[ResourceRef, list[ResourceRef]],
    ) -> None:
        """Take one resource through its state machine."""
        ref = resource.ref
        report = result.reports[ref]
        start = time.perf_counter()

        try:
            blocker = self._blocker(catalog, ref, result)
            if blocker is not None:
                report.state = ResourceState.SKIPPED
                report.blocked_by = blocker
                logger.warning(f"{ref} skipped: blocked by failed {blocker}")
                return

            handler = self.handlers[resource.kind]
            await self._observe_and_apply(resource, handler, host, options, report)

            triggers = marks.pop(ref, [])
            if triggers and report.state != ResourceState.FAILED:
                report.triggered_by = triggers
                await self._refresh(resource, handler, host, options, report)

            if report.changed or report.state == ResourceState.NOOP:
                for target in catalog.notify_targets(ref):
                    marks.setdefault(target, []).append(ref)
        finally:
            report.duration_ms = (time.perf_counter() - start) * 1000
            await self._write_audit(report, result, options)

    def _blocker(
        self,
        catalog: Catalog,
        ref: ResourceRef,
        result: RunResult,
    ) -> Optional[ResourceRef]:
        """The originally failed resource this one depends on, if any."""
        for dependency in catalog.dependencies(ref):
            upstream = result.reports[dependency]
            if upstream.state == ResourceState.FAILED:
                return dependency
            if upstream.state == ResourceState.SKIPPED:
                return upstream.blocked_by
        return None

    async def _observe_and_apply(
        self,
        resource: Resource,
        handler: ResourceHandler,
        host: HostAccess,
        options: EngineOptions,
        report: ResourceReport,
    ) -> None:
        ref = resource.ref

        try:
            async with timed_section("observe", resource=str(ref)):
                observed = await self._with_timeout(handler.observe(resource, host), options)
        except asyncio.TimeoutError:
            self._fail(report, ObserveError(ref, f"observe timed out after {options.timeout}s"))
            return
        except Exception as e:
            self._fail(report, e if isinstance(e, ResourceError) else ObserveError(ref, str(e)))
            return

        report.state = ResourceState.OBSERVED
        report.changes = list(observed.changes)

        if observed.in_sync:
            report.state = ResourceState.UNCHANGED
            return

        if options.dry_run:
            report.state = ResourceState.NOOP
            logger.info(f"[noop] {ref} would change: {', '.join(observed.changes)}")
            return

        report.state = ResourceState.APPLYING
        try:
            async with timed_section("apply", resource=str(ref)):
                applied = await self._with_timeout(handler.apply(resource, host, observed), options)
        except asyncio.TimeoutError:
            self._fail(report, ApplyError(ref, f"apply timed out after {options.timeout}s"))
            return
        except Exception as e:
            self._fail(report, e if isinstance(e, ResourceError) else ApplyError(ref, str(e)))
            return

        if applied.error:
            self._fail(report, ApplyError(ref, applied.error))
            return

        report.changed = applied.changed
        report.state = ResourceState.APPLIED if applied.changed else ResourceState.UNCHANGED
        if applied.changed:
            logger.info(f"{ref}: {', '.join(observed.changes)}")

    async def _refresh(
        self,
        resource: Resource,
        handler: ResourceHandler,
        host: HostAccess,
        options: EngineOptions,
        report: ResourceReport,
    ) -> None:
        ref = resource.ref
        sources = ", ".join(str(source) for source in report.triggered_by)

        if options.dry_run:
            report.changes.append(f"would refresh (triggered by {sources})")
            report.state = ResourceState.NOOP
            logger.info(f"[noop] {ref} would refresh from {len(report.triggered_by)} event(s)")
            return

        previous = report.state
        report.state = ResourceState.REFRESHING
        try:
            async with timed_section("refresh", resource=str(ref)):
                refreshed = await self._with_timeout(handler.refresh(resource, host), options)
        except asyncio.TimeoutError:
            self._fail(report, NotifyTimeoutError(ref, f"refresh timed out after {options.timeout}s"))
            return
        except Exception as e:
            self._fail(report, e if isinstance(e, ResourceError) else ApplyError(ref, f"refresh failed: {e}"))
            return

        if not refreshed:
            report.state = previous
            return

        report.state = ResourceState.REFRESHED
        report.refreshed = True
        report.changed = True
        logger.info(f"{ref} refreshed (triggered by {sources})")

    async def _with_timeout(self, awaitable: Awaitable[T], options: EngineOptions) -> T:
        return await asyncio.wait_for(awaitable, timeout=options.timeout)

    def _fail(self, report: ResourceReport, error: Exception) -> None:
        report.state = ResourceState.FAILED
        report.error = str(error)
        logger.error(f"Failed: {error}")

    async def _write_audit(
        self,
        report: ResourceReport,
        result: RunResult,
        options: EngineOptions,
    ) -> None:
        """Write one audit line for a resource that did more than stay in sync."""
        if report.state == ResourceState.UNCHANGED:
            return

        entry = AuditEntry(
            timestamp=datetime.now(timezone.utc),
            node=result.node,
            resource=str(report.ref),
            state=report.state.value,
            dry_run=result.dry_run,
            context=options.audit_context,
            user=options.user or "system",
            changes=report.changes,
            error=report.error,
        )
        self._append_audit({
            "timestamp": entry.timestamp.isoformat(),
            "node": entry.node,
            "resource": entry.resource,
            "state": entry.state,
            "dry_run": entry.dry_run,
            "context": entry.context,
            "user": entry.user,
            "changes": entry.changes,
            "blocked_by": str(report.blocked_by) if report.blocked_by else None,
            "error": entry.error,
        }, options)

    async def _write_audit_run(self, result: RunResult, options: EngineOptions) -> None:
        summary = result.to_dict()
        self._append_audit({
            "timestamp": (result.finished_at or datetime.now(timezone.utc)).isoformat(),
            "node": result.node,
            "operation": "converge",
            "dry_run": result.dry_run,
            "context": options.audit_context,
            "user": options.user or "system",
            "exit_code": summary["exit_code"],
            "summary": summary["summary"],
        }, options)

    def _append_audit(self, record: dict, options: EngineOptions) -> None:
        audit_path = options.audit_log_path or self.audit_log_path
        if not audit_path:
            return

        try:
            log_path = Path(audit_path)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "a") as f:
                f.write(json.dumps(record) + "\n")
        except OSError as e:
            logger.warning(f"Failed to write audit log: {e}")
