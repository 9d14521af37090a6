"""Human-readable run summaries."""
from .schema import ResourceState, RunResult

_MARKERS = {
    ResourceState.APPLIED: "[+]",
    ResourceState.REFRESHED: "[~]",
    ResourceState.NOOP: "[?]",
    ResourceState.FAILED: "[!]",
    ResourceState.SKIPPED: "[-]",
}


def summarize_run(result: RunResult) -> str:
    """
    Create a human-readable summary of a run.

    Useful for dry-run output and logging.
    """
    if result.error:
        return f"Run for {result.node} aborted: {result.error}"

    lines = []
    counts = (
        f"{len(result.applied)} applied, {len(result.refreshed)} refreshed, "
        f"{len(result.unchanged)} unchanged, {len(result.failed)} failed, "
        f"{len(result.skipped)} skipped"
    )
    if result.dry_run:
        counts = f"{len(result.noop)} would change, " + counts
        if not result.noop:
            return f"No changes needed for {result.node} - current state matches desired state"

    lines.append(f"{'Dry run' if result.dry_run else 'Run'} for {result.node}: {counts}")

    details = [report for report in result.reports.values() if report.state in _MARKERS]
    if details:
        lines.append("")
    for report in details:
        marker = _MARKERS[report.state]
        if report.state == ResourceState.FAILED:
            lines.append(f"  {marker} {report.ref}: {report.error}")
        elif report.state == ResourceState.SKIPPED:
            lines.append(f"  {marker} {report.ref}: skipped (blocked by {report.blocked_by})")
        elif report.state == ResourceState.REFRESHED and not report.changes:
            sources = ", ".join(str(ref) for ref in report.triggered_by)
            lines.append(f"  {marker} {report.ref}: refreshed (triggered by {sources})")
        else:
            lines.append(f"  {marker} {report.ref}")
            for change in report.changes:
                lines.append(f"      {change}")
            if report.refreshed:
                sources = ", ".join(str(ref) for ref in report.triggered_by)
                lines.append(f"      refreshed (triggered by {sources})")

    return "\n".join(lines)
