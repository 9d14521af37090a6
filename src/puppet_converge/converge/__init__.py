"""Convergence engine - observe, apply and refresh a catalog on a host.

Usage:
    from puppet_converge.converge import NodeEngine, EngineOptions

    engine = NodeEngine()
    result = await engine.apply_config("node.yaml", options=EngineOptions(dry_run=True))
    print(summarize_run(result))
"""

from .errors import ResourceError, ObserveError, ApplyError, NotifyTimeoutError
from .schema import (
    ResourceState,
    TERMINAL_STATES,
    ObservedState,
    ApplyResult,
    ResourceReport,
    EngineOptions,
    RunResult,
    AuditEntry,
)
from .handlers import (
    ResourceHandler,
    PackageHandler,
    FileHandler,
    ConcatHandler,
    ConcatFragmentHandler,
    ServiceHandler,
    ExecHandler,
    HANDLERS,
    get_handler,
)
from .executor import ConvergenceExecutor
from .report import summarize_run
from .engine import NodeEngine

__all__ = [
    # Errors
    "ResourceError",
    "ObserveError",
    "ApplyError",
    "NotifyTimeoutError",
    # Schema classes
    "ResourceState",
    "TERMINAL_STATES",
    "ObservedState",
    "ApplyResult",
    "ResourceReport",
    "EngineOptions",
    "RunResult",
    "AuditEntry",
    # Handlers
    "ResourceHandler",
    "PackageHandler",
    "FileHandler",
    "ConcatHandler",
    "ConcatFragmentHandler",
    "ServiceHandler",
    "ExecHandler",
    "HANDLERS",
    "get_handler",
    # Engine
    "ConvergenceExecutor",
    "summarize_run",
    "NodeEngine",
]
