"""Node configuration schema.

Every catalog-building function receives one of these structs explicitly;
there are no resource defaults inherited from an enclosing scope.
"""
import os
from dataclasses import dataclass, field
from typing import ClassVar, Optional, Union


# --- Storeconfigs adapters ---

@dataclass(frozen=True)
class SqliteAdapter:
    """Local sqlite3 database for stored configurations."""
    name: ClassVar[str] = "sqlite3"
    dbfile: Optional[str] = None  # Defaults to $vardir/state/clientconfigs.sqlite3


@dataclass(frozen=True)
class MySQLAdapter:
    """MySQL database for stored configurations."""
    name: ClassVar[str] = "mysql"
    user: str = "puppet"
    password: Optional[str] = None
    password_env: str = "PUPPET_STORECONFIGS_PASSWORD"
    server: str = "localhost"
    socket: Optional[str] = None
    dbname: str = "puppet"

    def get_password(self) -> str:
        """Get password from config or environment variable."""
        if self.password:
            return self.password
        return os.environ.get(self.password_env, "")


AdapterConfig = Union[SqliteAdapter, MySQLAdapter]

# Adapter name (as written in config) -> adapter struct
ADAPTERS: dict[str, type] = {
    "sqlite3": SqliteAdapter,
    "sqlite": SqliteAdapter,
    "mysql": MySQLAdapter,
}


@dataclass
class StoreConfigsConfig:
    """Stored configuration settings for the master.

    ``manage_backend=False`` is the fragment-only mode: puppet.conf gets the
    storeconfigs settings but no database packages or setup commands are
    declared (the backend is managed elsewhere).
    """
    enabled: bool = False
    adapter: AdapterConfig = field(default_factory=SqliteAdapter)
    manage_backend: bool = True
    thin: bool = False


@dataclass
class PassengerConfig:
    """Run the master inside the web server through passenger."""
    enabled: bool = False
    site: str = "puppet"
    port: int = 8140
    rack_dir: str = "/etc/puppet/rack"
    web_package: Optional[str] = None
    web_service: Optional[str] = None
    passenger_package: Optional[str] = None
    vhost_dir: Optional[str] = None

    @property
    def docroot(self) -> str:
        return f"{self.rack_dir}/public"


@dataclass
class MasterConfig:
    """Puppet master settings."""
    enabled: bool = True
    version: str = "installed"
    package: Optional[str] = None
    service: Optional[str] = None
    manifest: Optional[str] = None     # Defaults to $confdir/manifests/site.pp
    modulepath: Optional[str] = None   # Defaults to $confdir/modules
    certname: Optional[str] = None     # Defaults to the node certname
    autosign: bool = False
    reports: str = "store"
    dns_alt_names: list[str] = field(default_factory=list)
    passenger: PassengerConfig = field(default_factory=PassengerConfig)
    storeconfigs: StoreConfigsConfig = field(default_factory=StoreConfigsConfig)


@dataclass
class AgentConfig:
    """Puppet agent settings."""
    enabled: bool = True
    version: str = "installed"
    package: Optional[str] = None
    service: Optional[str] = None
    server: str = "puppet"
    environment: str = "production"
    runinterval: int = 1800
    report: bool = True
    pluginsync: bool = True
    service_enable: bool = True


@dataclass
class HostConfig:
    """How to reach the node being converged."""
    type: str = "local"  # local, ssh
    host: str = "localhost"
    port: int = 22
    username: str = "root"
    password: Optional[str] = None
    password_env: str = "PUPPET_CONVERGE_SSH_PASSWORD"
    key_filename: Optional[str] = None
    timeout: int = 30
    retries: int = 3

    def get_password(self) -> str:
        """Get password from config or environment variable."""
        if self.password:
            return self.password
        return os.environ.get(self.password_env, "")


@dataclass
class NodeConfig:
    """Complete configuration for one node."""
    certname: str
    os_family: str = "debian"
    confdir: str = "/etc/puppet"
    vardir: str = "/var/lib/puppet"
    logdir: str = "/var/log/puppet"
    rundir: str = "/var/run/puppet"
    user: str = "puppet"
    group: str = "puppet"
    package_provider: Optional[str] = None
    host: HostConfig = field(default_factory=HostConfig)
    master: Optional[MasterConfig] = None
    agent: Optional[AgentConfig] = None

    @property
    def puppet_conf(self) -> str:
        return f"{self.confdir}/puppet.conf"

    @property
    def ssldir(self) -> str:
        return f"{self.vardir}/ssl"

    @property
    def master_enabled(self) -> bool:
        return self.master is not None and self.master.enabled

    @property
    def agent_enabled(self) -> bool:
        return self.agent is not None and self.agent.enabled
