"""Catalog builder for puppet master and agent nodes.

Evaluates the conditional node logic into a concrete catalog:

- ``puppet`` (agent): package, service and the [agent] section
- ``puppet::master``: package, directories and the [master] section
- exactly one of the direct ``puppetmaster`` daemon or ``puppet::passenger``
  (web server hosted) deployment, whose service is the single notify
  target of every master fragment
- ``puppet::storeconfigs`` when enabled, with one database backend chosen
  by the adapter type
"""
import logging
import os.path
import shlex
from dataclasses import dataclass, field
from typing import Optional

from ..config.params import get_params
from ..config.schema import (
    ADAPTERS,
    AdapterConfig,
    MySQLAdapter,
    NodeConfig,
    SqliteAdapter,
)
from ..rendering import Jinja2Renderer, TemplateError, TemplateRenderer
from ..utils.logging_config import timed_section_sync
from .errors import CatalogValidationError, TemplateRenderError, UnsupportedAdapterError
from .fragments import assemble_catalog_fragments
from .graph import Catalog
from .schema import Resource, ResourceKind, ResourceRef
from .validator import MASTER_TAG, CatalogValidator

logger = logging.getLogger(__name__)

AGENT_TAG = "puppet"
CONFIG_TAG = "puppet::config"
PASSENGER_TAG = "puppet::passenger"
STORECONFIGS_TAG = "puppet::storeconfigs"

# Fragment order keys within puppet.conf
ORDER_MAIN = "00"
ORDER_MASTER = "05"
ORDER_STORECONFIGS = "06"
ORDER_AGENT = "10"


def _sql_string(value: str) -> str:
    """Quote a MySQL string literal."""
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


@dataclass
class BuildContext:
    """State shared by the class builders during one build."""
    catalog: Catalog
    node: NodeConfig
    params: dict
    packages: list[Resource] = field(default_factory=list)


class CatalogBuilder:
    """Build a catalog from a NodeConfig.

    Usage:
        builder = CatalogBuilder()
        catalog = builder.build(node_config)
    """

    def __init__(
        self,
        renderer: Optional[TemplateRenderer] = None,
        validator: Optional[CatalogValidator] = None,
    ):
        self.renderer = renderer or Jinja2Renderer()
        self.validator = validator or CatalogValidator()

    def build(self, node: NodeConfig) -> Catalog:
        """
        Build, validate and freeze the catalog for a node.

        Raises:
            CatalogError: Any builder-time error (duplicate, unknown
                reference, unsupported adapter, template failure, failed
                validation)
        """
        logger.info(f"Building catalog for {node.certname}")
        ctx = BuildContext(
            catalog=Catalog(name=node.certname),
            node=node,
            params=get_params(node.os_family),
        )

        service_notify: Optional[ResourceRef] = None
        agent_service: Optional[ResourceRef] = None

        try:
            if node.master_enabled:
                service_notify = self._declare_master(ctx)
            if node.agent_enabled:
                agent_service = self._declare_agent(ctx)

            if node.master_enabled or node.agent_enabled:
                self._declare_config(ctx, service_notify or agent_service)
        except TemplateError as e:
            raise TemplateRenderError(str(e)) from e

        assemble_catalog_fragments(ctx.catalog)

        with timed_section_sync("validate_catalog", resource=node.certname):
            validation = self.validator.validate(ctx.catalog)
        for warning in validation.warnings:
            logger.warning(f"Catalog warning: {warning}")
        if not validation.valid:
            raise CatalogValidationError(validation.errors)

        ctx.catalog.freeze()
        logger.info(
            f"Catalog for {node.certname}: {len(ctx.catalog)} resources, "
            f"{len(ctx.catalog.edges)} edges"
        )
        return ctx.catalog

    # === puppet::config ===

    def _declare_config(self, ctx: BuildContext, notify: Optional[ResourceRef]) -> Resource:
        """Declare puppet.conf and its [main] section."""
        catalog, node = ctx.catalog, ctx.node
        tags = (CONFIG_TAG,)

        confdir = catalog.declare_once(
            ResourceKind.FILE, node.confdir,
            {"ensure": "directory", "owner": "root", "group": node.group, "mode": "0755"},
            tags,
        )
        concat = catalog.declare(
            ResourceKind.CONCAT, node.puppet_conf,
            {"ensure": "file", "owner": "root", "group": node.group, "mode": "0644"},
            tags,
        )
        catalog.require(concat, confdir)
        for package in ctx.packages:
            catalog.require(concat, package)

        catalog.declare(
            ResourceKind.CONCAT_FRAGMENT, "puppet.conf-main",
            {
                "target": node.puppet_conf,
                "order": ORDER_MAIN,
                "content": self.renderer.render("puppet.conf-main", {
                    "confdir": node.confdir,
                    "vardir": node.vardir,
                    "logdir": node.logdir,
                    "rundir": node.rundir,
                    "ssldir": node.ssldir,
                }),
                "notify": notify,
            },
            tags,
        )
        return concat

    # === puppet (agent) ===

    def _declare_agent(self, ctx: BuildContext) -> ResourceRef:
        catalog, node = ctx.catalog, ctx.node
        agent = node.agent
        tags = (AGENT_TAG,)

        package = catalog.declare_once(
            ResourceKind.PACKAGE, agent.package,
            {"ensure": agent.version, "provider": node.package_provider},
            tags,
        )
        ctx.packages.append(package)

        service = catalog.declare(
            ResourceKind.SERVICE, agent.service,
            {
                "ensure": "running" if agent.service_enable else "stopped",
                "enable": agent.service_enable,
                "hasstatus": True,
                "hasrestart": True,
            },
            tags,
        )
        catalog.require(service, package)

        catalog.declare(
            ResourceKind.CONCAT_FRAGMENT, "puppet.conf-agent",
            {
                "target": node.puppet_conf,
                "order": ORDER_AGENT,
                "content": self.renderer.render("puppet.conf-agent", {
                    "certname": node.certname,
                    "server": agent.server,
                    "environment": agent.environment,
                    "runinterval": agent.runinterval,
                    "report": agent.report,
                    "pluginsync": agent.pluginsync,
                }),
                "notify": service.ref,
            },
            tags,
        )
        return service.ref

    # === puppet::master ===

    def _declare_master(self, ctx: BuildContext) -> ResourceRef:
        """Declare the master and return its single notify target."""
        catalog, node = ctx.catalog, ctx.node
        master = node.master
        tags = (MASTER_TAG,)

        package = catalog.declare(
            ResourceKind.PACKAGE, master.package,
            {"ensure": master.version, "provider": node.package_provider},
            tags,
        )
        ctx.packages.append(package)

        owned_dir = {"ensure": "directory", "owner": node.user, "group": node.group, "mode": "0755"}
        directories = [node.vardir, master.modulepath, os.path.dirname(master.manifest)]
        for path in dict.fromkeys(directories):
            directory = catalog.declare_once(ResourceKind.FILE, path, owned_dir, tags)
            catalog.require(directory, package)

        manifest = catalog.declare(
            ResourceKind.FILE, master.manifest,
            {"ensure": "present", "owner": node.user, "group": node.group, "mode": "0644"},
            tags,
        )
        catalog.require(manifest, ResourceRef(ResourceKind.FILE, os.path.dirname(master.manifest)))

        # Exactly one deployment mode declares the master's service
        if master.passenger.enabled:
            service = self._declare_passenger(ctx, package)
        else:
            service = catalog.declare(
                ResourceKind.SERVICE, master.service,
                {"ensure": "running", "enable": True, "hasstatus": True, "hasrestart": True},
                tags,
            )
            catalog.require(service, package)
            catalog.require(service, manifest)

        catalog.declare(
            ResourceKind.CONCAT_FRAGMENT, "puppet.conf-master",
            {
                "target": node.puppet_conf,
                "order": ORDER_MASTER,
                "content": self.renderer.render("puppet.conf-master", {
                    "certname": master.certname,
                    "manifest": master.manifest,
                    "modulepath": master.modulepath,
                    "reports": master.reports,
                    "autosign": master.autosign,
                    "dns_alt_names": master.dns_alt_names,
                    "passenger": master.passenger.enabled,
                }),
                "notify": service.ref,
            },
            tags,
        )

        if master.storeconfigs.enabled:
            self._declare_storeconfigs(ctx, service.ref)

        return service.ref

    # === puppet::passenger ===

    def _declare_passenger(self, ctx: BuildContext, master_package: Resource) -> Resource:
        """Host the master in the web server; returns the web service."""
        catalog, node = ctx.catalog, ctx.node
        master = node.master
        passenger = master.passenger
        tags = (MASTER_TAG, PASSENGER_TAG)

        web_package = catalog.declare(
            ResourceKind.PACKAGE, passenger.web_package,
            {"ensure": "installed", "provider": node.package_provider},
            tags,
        )
        passenger_package = catalog.declare(
            ResourceKind.PACKAGE, passenger.passenger_package,
            {"ensure": "installed", "provider": node.package_provider},
            tags,
        )
        catalog.require(passenger_package, web_package)

        rack_gem = catalog.declare_once(
            ResourceKind.PACKAGE, "rack",
            {"ensure": "installed", "provider": "gem"},
        )
        catalog.require(rack_gem, self._rubygems(ctx))
        ctx.packages.extend([web_package, passenger_package])

        owned_dir = {"ensure": "directory", "owner": node.user, "group": node.group, "mode": "0755"}
        rack_dirs = []
        for path in (passenger.rack_dir, passenger.docroot, f"{passenger.rack_dir}/tmp"):
            directory = catalog.declare(ResourceKind.FILE, path, owned_dir, tags)
            catalog.require(directory, master_package)
            if rack_dirs:
                catalog.require(directory, rack_dirs[0])
            rack_dirs.append(directory)

        # Passenger runs the application as the owner of config.ru
        config_ru = catalog.declare(
            ResourceKind.FILE, f"{passenger.rack_dir}/config.ru",
            {
                "ensure": "file",
                "owner": node.user,
                "group": node.group,
                "mode": "0644",
                "content": self.renderer.render("config.ru", {
                    "confdir": node.confdir,
                    "vardir": node.vardir,
                }),
            },
            tags,
        )
        catalog.require(config_ru, rack_dirs[0])

        cert_path = f"{node.ssldir}/certs/{master.certname}.pem"
        certificate = catalog.declare(
            ResourceKind.EXEC, "puppet-master-certificate",
            {
                "command": f"puppet cert --generate {shlex.quote(master.certname)}",
                "creates": cert_path,
                "unless": f"test -f {shlex.quote(cert_path)}",
            },
            tags,
        )
        catalog.require(certificate, master_package)

        vhost = catalog.declare(
            ResourceKind.FILE, f"{passenger.vhost_dir}/puppet-{passenger.site}.conf",
            {
                "ensure": "file",
                "owner": "root",
                "group": "root",
                "mode": "0644",
                "content": self.renderer.render("apache-passenger-vhost", {
                    "port": passenger.port,
                    "certname": master.certname,
                    "ssldir": node.ssldir,
                    "docroot": passenger.docroot,
                }),
            },
            tags,
        )
        catalog.require(vhost, passenger_package)
        catalog.require(vhost, certificate)

        service = catalog.declare(
            ResourceKind.SERVICE, passenger.web_service,
            {"ensure": "running", "enable": True, "hasstatus": True, "hasrestart": True},
            tags,
        )
        catalog.require(service, web_package)
        catalog.require(service, rack_gem)
        catalog.require(service, rack_dirs[-1])
        catalog.notify(config_ru, service)
        catalog.notify(vhost, service)
        return service

    # === puppet::storeconfigs ===

    def _declare_storeconfigs(self, ctx: BuildContext, service_notify: ResourceRef) -> None:
        catalog, node = ctx.catalog, ctx.node
        storeconfigs = node.master.storeconfigs
        adapter = storeconfigs.adapter
        tags = (MASTER_TAG, STORECONFIGS_TAG)

        variables = self._adapter_variables(node, adapter)
        variables["thin"] = storeconfigs.thin
        catalog.declare(
            ResourceKind.CONCAT_FRAGMENT, "puppet.conf-master-storeconfigs",
            {
                "target": node.puppet_conf,
                "order": ORDER_STORECONFIGS,
                "content": self.renderer.render("puppet.conf-master-storeconfigs", variables),
                "notify": service_notify,
            },
            tags,
        )

        if not storeconfigs.manage_backend:
            logger.info(
                f"storeconfigs backend for {adapter.name} not managed "
                "(fragment-only mode)"
            )
            return

        activerecord = catalog.declare_once(
            ResourceKind.PACKAGE, "activerecord",
            {"ensure": "installed", "provider": "gem"},
        )
        catalog.require(activerecord, self._rubygems(ctx))
        catalog.require(service_notify, activerecord)

        if isinstance(adapter, SqliteAdapter):
            backend = self._declare_sqlite(ctx, variables["dbfile"], tags)
        elif isinstance(adapter, MySQLAdapter):
            backend = self._declare_mysql(ctx, adapter, tags)
        else:
            raise UnsupportedAdapterError(type(adapter).__name__, sorted(ADAPTERS))

        for resource in backend:
            catalog.require(service_notify, resource)

    def _adapter_variables(self, node: NodeConfig, adapter: AdapterConfig) -> dict:
        """Template variables for the storeconfigs section."""
        if isinstance(adapter, SqliteAdapter):
            return {
                "dbadapter": "sqlite3",
                "dbfile": adapter.dbfile or f"{node.vardir}/state/clientconfigs.sqlite3",
            }
        if isinstance(adapter, MySQLAdapter):
            return {
                "dbadapter": "mysql",
                "dbname": adapter.dbname,
                "dbuser": adapter.user,
                "dbpassword": adapter.get_password(),
                "dbserver": adapter.server,
                "dbsocket": adapter.socket,
            }
        raise UnsupportedAdapterError(type(adapter).__name__, sorted(ADAPTERS))

    def _declare_sqlite(self, ctx: BuildContext, dbfile: str, tags: tuple) -> list[Resource]:
        catalog, node = ctx.catalog, ctx.node
        resources = []
        for name in ctx.params["sqlite_packages"]:
            resources.append(catalog.declare_once(
                ResourceKind.PACKAGE, name,
                {"ensure": "installed", "provider": node.package_provider},
                tags,
            ))

        directory = catalog.declare_once(
            ResourceKind.FILE, os.path.dirname(dbfile),
            {"ensure": "directory", "owner": node.user, "group": node.group, "mode": "0750"},
            tags,
        )
        resources.append(directory)
        return resources

    def _declare_mysql(self, ctx: BuildContext, adapter: MySQLAdapter, tags: tuple) -> list[Resource]:
        catalog, node = ctx.catalog, ctx.node
        binding = catalog.declare_once(
            ResourceKind.PACKAGE, ctx.params["mysql_package"],
            {"ensure": "installed", "provider": node.package_provider},
            tags,
        )

        connection = ["mysql", "-h", adapter.server]
        if adapter.socket:
            connection += ["-S", adapter.socket]
        client = " ".join(shlex.quote(part) for part in connection)

        # The password only travels in the environment, never in a command
        statements = (
            f"CREATE DATABASE IF NOT EXISTS `{adapter.dbname}`; "
            f"GRANT ALL PRIVILEGES ON `{adapter.dbname}`.* TO {_sql_string(adapter.user)}@'%' "
            f"IDENTIFIED BY {_sql_string(adapter.get_password())};"
        )
        check = (
            f'MYSQL_PWD="$PUPPET_STORECONFIGS_DBPASS" {client} -u {shlex.quote(adapter.user)} '
            f"-e {shlex.quote('USE `' + adapter.dbname + '`')}"
        )
        database = catalog.declare(
            ResourceKind.EXEC, "puppet-storeconfigs-mysql-db",
            {
                "command": f'{client} -e "$PUPPET_STORECONFIGS_SQL"',
                "unless": check,
                "environment": {
                    "PUPPET_STORECONFIGS_DBPASS": adapter.get_password(),
                    "PUPPET_STORECONFIGS_SQL": statements,
                },
            },
            tags,
        )
        catalog.require(database, binding)
        return [binding, database]

    def _rubygems(self, ctx: BuildContext) -> Resource:
        """Shared by passenger and storeconfigs."""
        return ctx.catalog.declare_once(
            ResourceKind.PACKAGE, ctx.params["rubygems_package"],
            {"ensure": "installed", "provider": ctx.node.package_provider},
        )
