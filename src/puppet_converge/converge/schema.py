"""Schema definitions for convergence runs.

Observed state and outcomes live here, per run. The catalog itself is
never written to while converging.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ..catalog.schema import ResourceRef


class ResourceState(str, Enum):
    """Lifecycle of a resource within one run."""
    PENDING = "pending"
    OBSERVED = "observed"
    UNCHANGED = "unchanged"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    REFRESHING = "refreshing"
    REFRESHED = "refreshed"
    SKIPPED = "skipped"
    NOOP = "noop"          # Dry-run: drifted, nothing applied


TERMINAL_STATES = frozenset({
    ResourceState.UNCHANGED,
    ResourceState.APPLIED,
    ResourceState.FAILED,
    ResourceState.REFRESHED,
    ResourceState.SKIPPED,
    ResourceState.NOOP,
})


@dataclass
class ObservedState:
    """Current state of a resource compared with its desired state."""
    in_sync: bool
    current: dict[str, Any] = field(default_factory=dict)
    changes: list[str] = field(default_factory=list)


@dataclass
class ApplyResult:
    """Outcome of one apply."""
    changed: bool
    error: Optional[str] = None


@dataclass
class ResourceReport:
    """What happened to one resource during a run."""
    ref: ResourceRef
    state: ResourceState = ResourceState.PENDING
    changed: bool = False
    changes: list[str] = field(default_factory=list)
    blocked_by: Optional[ResourceRef] = None
    triggered_by: list[ResourceRef] = field(default_factory=list)
    refreshed: bool = False
    error: Optional[str] = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "resource": str(self.ref),
            "state": self.state.value,
            "changed": self.changed,
            "changes": self.changes,
            "blocked_by": str(self.blocked_by) if self.blocked_by else None,
            "triggered_by": [str(ref) for ref in self.triggered_by],
            "refreshed": self.refreshed,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 2),
        }


# --- Execution ---

@dataclass
class EngineOptions:
    """Options for a convergence run."""
    dry_run: bool = False
    parallel: bool = False          # Apply dependency layers concurrently
    timeout: Optional[float] = 300.0  # Per host operation, seconds
    audit_log_path: Optional[str] = None
    audit_context: str = ""
    user: Optional[str] = None


@dataclass
class RunResult:
    """Result of converging one node."""
    node: str
    dry_run: bool = False
    reports: dict[ResourceRef, ResourceReport] = field(default_factory=dict)
    error: Optional[str] = None
    catalog_error: bool = False    # Config or catalog rejected before apply
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def _in_state(self, state: ResourceState) -> list[ResourceRef]:
        return [ref for ref, report in self.reports.items() if report.state == state]

    @property
    def applied(self) -> list[ResourceRef]:
        return self._in_state(ResourceState.APPLIED)

    @property
    def unchanged(self) -> list[ResourceRef]:
        return self._in_state(ResourceState.UNCHANGED)

    @property
    def refreshed(self) -> list[ResourceRef]:
        return self._in_state(ResourceState.REFRESHED)

    @property
    def skipped(self) -> list[ResourceRef]:
        return self._in_state(ResourceState.SKIPPED)

    @property
    def failed(self) -> list[ResourceRef]:
        return self._in_state(ResourceState.FAILED)

    @property
    def noop(self) -> list[ResourceRef]:
        return self._in_state(ResourceState.NOOP)

    @property
    def changed(self) -> list[ResourceRef]:
        return [ref for ref, report in self.reports.items() if report.changed]

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def exit_code(self) -> int:
        """0 on success, 1 if resources failed or were skipped, 2 if rejected."""
        if self.catalog_error:
            return 2
        if self.error or self.failed or self.skipped:
            return 1
        return 0

    def report(self, ref: ResourceRef) -> ResourceReport:
        return self.reports[ref]

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "node": self.node,
            "dry_run": self.dry_run,
            "exit_code": self.exit_code,
            "error": self.error,
            "summary": {
                state.value: len(self._in_state(state))
                for state in ResourceState
                if state in TERMINAL_STATES
            },
            "resources": [report.to_dict() for report in self.reports.values()],
        }


# --- Audit Entry ---

@dataclass
class AuditEntry:
    """Audit log entry for one resource outcome."""
    timestamp: datetime
    node: str
    resource: str
    state: str
    dry_run: bool = False
    context: str = ""
    user: str = "system"
    changes: list[str] = field(default_factory=list)
    error: Optional[str] = None
