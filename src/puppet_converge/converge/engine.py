"""Node Engine - orchestrates the full converge workflow.

Provides a single entry point for:
1. Loading the node configuration
2. Building and validating the catalog
3. Connecting to the host
4. Converging (or dry-running) every resource
"""
import logging
from typing import Any, Callable, Optional

import yaml

from ..catalog.builder import CatalogBuilder
from ..catalog.errors import CatalogError
from ..catalog.graph import Catalog
from ..catalog.schema import Resource
from ..config.loader import ConfigError, load_node_config
from ..config.schema import NodeConfig
from ..host import create_host
from ..host.base import HostAccess
from .executor import ConvergenceExecutor
from .report import summarize_run
from .schema import EngineOptions, RunResult

logger = logging.getLogger(__name__)

# Errors that reject a run before anything is applied
CONFIG_ERRORS = (ConfigError, CatalogError, FileNotFoundError, yaml.YAMLError)


class NodeEngine:
    """
    Converge a puppet master/agent node.

    Usage:
        engine = NodeEngine()
        result = await engine.apply_config("node.yaml", options=EngineOptions(dry_run=True))
    """

    def __init__(
        self,
        builder: Optional[CatalogBuilder] = None,
        executor: Optional[ConvergenceExecutor] = None,
        host_factory: Callable[..., HostAccess] = create_host,
    ):
        """
        Initialize the Node Engine.

        Args:
            builder: Catalog builder (default renders packaged templates)
            executor: Convergence executor
            host_factory: Creates host access from (host_id, HostConfig)
        """
        self.builder = builder or CatalogBuilder()
        self.executor = executor or ConvergenceExecutor()
        self.host_factory = host_factory

    def load(
        self,
        config_path: Optional[str] = None,
        overrides: Optional[dict[str, Any]] = None,
    ) -> NodeConfig:
        """Load a node configuration (for external use)."""
        return load_node_config(config_path, overrides)

    def build(self, node: NodeConfig) -> Catalog:
        """Build the frozen catalog for a node (for external use)."""
        return self.builder.build(node)

    def plan(self, node: NodeConfig) -> list[Resource]:
        """Return the resources of a node in the order they would converge."""
        return self.build(node).topological_order()

    async def apply_config(
        self,
        config_path: Optional[str] = None,
        overrides: Optional[dict[str, Any]] = None,
        options: Optional[EngineOptions] = None,
    ) -> RunResult:
        """
        Load a node configuration and converge it.

        Configuration errors are reported in the result (exit code 2)
        instead of being raised.
        """
        try:
            node = self.load(config_path, overrides)
        except CONFIG_ERRORS as e:
            logger.error(f"Configuration error: {e}")
            return RunResult(
                node=str((overrides or {}).get("certname") or "unknown"),
                dry_run=bool(options and options.dry_run),
                error=f"Configuration error: {e}",
                catalog_error=True,
            )
        return await self.apply_node(node, options)

    async def apply_node(
        self,
        node: NodeConfig,
        options: Optional[EngineOptions] = None,
        host: Optional[HostAccess] = None,
    ) -> RunResult:
        """
        Converge a parsed node configuration.

        This is the main entry point. It:
        1. Builds and validates the catalog
        2. Connects to the host (unless one is passed in)
        3. Converges (or dry-runs) every resource

        Args:
            node: Parsed node configuration
            options: Run options
            host: Host access to use instead of one created from node.host

        Returns:
            RunResult with per-resource reports
        """
        options = options or EngineOptions()

        # Step 1: Build
        logger.info(f"Building catalog for {node.certname}")
        try:
            catalog = self.build(node)
            catalog.topological_order()
        except CatalogError as e:
            logger.error(f"Catalog error: {e}")
            return RunResult(
                node=node.certname,
                dry_run=options.dry_run,
                error=f"Catalog error: {e}",
                catalog_error=True,
            )

        # Step 2: Connect
        if host is None:
            host = self.host_factory(node.certname, node.host)

        # Step 3: Converge
        try:
            async with host:
                return await self.executor.converge(catalog, host, options)
        except CatalogError as e:
            return RunResult(
                node=node.certname,
                dry_run=options.dry_run,
                error=f"Catalog error: {e}",
                catalog_error=True,
            )
        except Exception as e:
            logger.exception(f"Run failed on {host.host_id}: {e}")
            return RunResult(
                node=node.certname,
                dry_run=options.dry_run,
                error=f"Host error: {e}",
            )

    async def preview(
        self,
        node: NodeConfig,
        host: Optional[HostAccess] = None,
        options: Optional[EngineOptions] = None,
    ) -> str:
        """
        Preview changes without applying.

        Returns human-readable run summary.
        """
        options = options or EngineOptions()
        options.dry_run = True
        result = await self.apply_node(node, options, host)
        summary = summarize_run(result)

        if result.catalog_error:
            return summary

        validation = self.builder.validator.validate(self.build(node))
        if validation.warnings:
            summary += "\n\nWarnings:\n" + "\n".join(
                f"  - {w}" for w in validation.warnings
            )
        return summary
