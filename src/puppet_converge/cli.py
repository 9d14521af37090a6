#!/usr/bin/env python3
"""puppet-converge command line.

Usage:
    puppet-converge apply [--config node.yaml] [--passenger] [--storeconfigs-adapter mysql ...]
    puppet-converge noop  [--config node.yaml]
    puppet-converge plan  [--config node.yaml]

Exit codes:
    0  converged (or nothing to do)
    1  resources failed or were skipped, or the host was unreachable
    2  configuration or catalog error

Environment variables:
    PUPPET_CONVERGE_LOG_LEVEL     Console log level (default: INFO)
    PUPPET_CONVERGE_LOG_FILE      Log file (default: ~/.puppet-converge/converge.log)
    PUPPET_CONVERGE_SSH_PASSWORD  SSH password for host.type=ssh
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Optional

from .catalog.errors import CatalogError
from .converge import EngineOptions, NodeEngine, summarize_run
from .converge.engine import CONFIG_ERRORS
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="puppet-converge",
        description="Install and converge a Puppet master and agent node",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Preview what would change
    puppet-converge noop --config configs/node.yaml

    # Run the master under passenger with a MySQL storeconfigs backend
    puppet-converge apply --passenger --storeconfigs-adapter mysql \\
        --db-user puppet --db-password secret --db-server db.example.com

    # Show the resource order without touching the host
    puppet-converge plan
""",
    )
    parser.add_argument(
        "command",
        choices=["apply", "noop", "plan"],
        help="apply changes, preview them (noop), or print the resource order (plan)",
    )
    parser.add_argument("--config", help="Node config file (default: search ./configs/node.yaml etc.)")
    parser.add_argument("--certname", help="Override the node certname")

    passenger = parser.add_mutually_exclusive_group()
    passenger.add_argument(
        "--passenger", dest="passenger", action="store_true", default=None,
        help="Run the master under the web server with passenger",
    )
    passenger.add_argument(
        "--no-passenger", dest="passenger", action="store_false",
        help="Run the standalone master daemon",
    )

    parser.add_argument(
        "--storeconfigs-adapter",
        help="Enable storeconfigs with this database adapter (sqlite3, mysql)",
    )
    parser.add_argument("--db-user", help="Storeconfigs database user")
    parser.add_argument("--db-password", help="Storeconfigs database password")
    parser.add_argument("--db-server", help="Storeconfigs database server")
    parser.add_argument("--db-socket", help="Storeconfigs database socket")
    parser.add_argument("--master-version", help="Master package version")
    parser.add_argument("--agent-version", help="Agent package version")
    parser.add_argument(
        "--parallel", action="store_true",
        help="Apply independent resources of each dependency layer concurrently",
    )
    parser.add_argument(
        "--timeout", type=float, default=300.0,
        help="Timeout in seconds for each host operation (default: 300)",
    )
    parser.add_argument("--audit-log", help="Append JSON-lines audit entries to this file")
    parser.add_argument("--json", action="store_true", help="Print the run result as JSON")
    parser.add_argument("--no-log-file", action="store_true", help="Log to the console only")
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def collect_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Map command line options onto dotted config keys."""
    overrides: dict[str, Any] = {
        "certname": args.certname,
        "master.version": args.master_version,
        "agent.version": args.agent_version,
    }
    if args.passenger is not None:
        overrides["master.passenger.enabled"] = args.passenger
    if args.storeconfigs_adapter:
        overrides["master.storeconfigs.enabled"] = True
        overrides["master.storeconfigs.adapter.type"] = args.storeconfigs_adapter
    overrides.update({
        "master.storeconfigs.adapter.user": args.db_user,
        "master.storeconfigs.adapter.password": args.db_password,
        "master.storeconfigs.adapter.server": args.db_server,
        "master.storeconfigs.adapter.socket": args.db_socket,
    })
    return {key: value for key, value in overrides.items() if value is not None}


def run_plan(engine: NodeEngine, config: Optional[str], overrides: dict[str, Any]) -> int:
    try:
        node = engine.load(config, overrides)
        catalog = engine.build(node)
        order = catalog.topological_order()
    except CONFIG_ERRORS as e:
        logger.error(f"Configuration error: {e}")
        return 2

    print(f"Catalog for {catalog.name}: {len(catalog)} resources, {len(catalog.edges)} edges")
    for position, resource in enumerate(order, 1):
        deps = ", ".join(str(ref) for ref in catalog.dependencies(resource))
        suffix = f"  (after {deps})" if deps else ""
        print(f"{position:4d}. {resource.ref}{suffix}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the puppet-converge CLI."""
    args = build_parser().parse_args(argv)

    setup_logging(
        level=logging.DEBUG if args.verbose else None,
        log_to_file=not args.no_log_file,
    )

    overrides = collect_overrides(args)
    engine = NodeEngine()

    if args.command == "plan":
        return run_plan(engine, args.config, overrides)

    options = EngineOptions(
        dry_run=args.command == "noop",
        parallel=args.parallel,
        timeout=args.timeout if args.timeout > 0 else None,
        audit_log_path=args.audit_log,
        audit_context=f"puppet-converge {args.command}",
    )

    try:
        result = asyncio.run(engine.apply_config(args.config, overrides, options))
    except KeyboardInterrupt:
        logger.warning("Run interrupted by user")
        return 130
    except CatalogError as e:
        logger.error(f"Catalog error: {e}")
        return 2

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(summarize_run(result))
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
