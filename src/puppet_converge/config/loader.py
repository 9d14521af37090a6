"""Node configuration loading from YAML.

Converts the YAML/dict form into strongly-typed NodeConfig objects, filling
in OS-family defaults so catalog building never has to guess.

Example node.yaml:

```yaml
certname: puppet.example.com
os_family: debian

defaults:
  version: "2.7.26"

master:
  passenger:
    enabled: true
  storeconfigs:
    enabled: true
    adapter:
      type: mysql
      user: puppet
      password_env: PUPPET_DB_PASSWORD
      server: db.example.com

agent:
  server: puppet.example.com
```
"""
import copy
import dataclasses
import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from ..catalog.errors import UnsupportedAdapterError
from .params import DEFAULT_OS_FAMILY, get_params
from .schema import (
    ADAPTERS,
    AdapterConfig,
    AgentConfig,
    HostConfig,
    MasterConfig,
    NodeConfig,
    PassengerConfig,
    StoreConfigsConfig,
)

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Error parsing node configuration."""
    pass


def _field_names(cls) -> set[str]:
    return {f.name for f in dataclasses.fields(cls)}


def _check_keys(section: str, data: dict[str, Any], allowed: set[str]) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigError(f"Unknown key(s) in {section}: {', '.join(unknown)}")


def apply_overrides(data: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``data`` with dotted-key overrides applied.

    Examples:
        {"master.passenger.enabled": True}
        {"master.storeconfigs.adapter.type": "mysql"}
    """
    result = copy.deepcopy(data)
    for dotted, value in overrides.items():
        if value is None:
            continue
        keys = dotted.split(".")
        node = result
        for key in keys[:-1]:
            child = node.get(key)
            if isinstance(child, str) and key == "adapter":
                # "adapter: sqlite3" shorthand being extended with options
                child = {"type": child}
            elif isinstance(child, str):
                # "storeconfigs: mysql"
                child = {"enabled": True, "adapter": child}
            elif isinstance(child, bool):
                # "passenger: true"
                child = {"enabled": child}
            elif not isinstance(child, dict):
                child = {}
            node[key] = child
            node = child
        node[keys[-1]] = value
    return result


class ConfigLoader:
    """Load and parse node configuration."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path

    def _find_config(self) -> str:
        """Find the node.yaml config file."""
        search_paths = [
            Path.cwd() / "configs" / "node.yaml",
            Path.cwd() / "node.yaml",
            Path.home() / ".config" / "puppet-converge" / "node.yaml",
            Path("/etc/puppet-converge/node.yaml"),
        ]

        for path in search_paths:
            if path.exists():
                return str(path)

        raise FileNotFoundError(
            "Could not find node.yaml. Create one in ./configs/node.yaml"
        )

    def load(self, overrides: Optional[dict[str, Any]] = None) -> NodeConfig:
        """Load the YAML file, apply overrides and parse it."""
        path = self.config_path or self._find_config()
        logger.info(f"Loading node configuration from {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: top level must be a mapping")
        if overrides:
            data = apply_overrides(data, overrides)
        return self.parse(data)

    def parse(self, data: dict[str, Any]) -> NodeConfig:
        """
        Parse a configuration dict into a NodeConfig.

        Raises:
            ConfigError: If the config is invalid
            UnsupportedAdapterError: If the storeconfigs adapter is unknown
        """
        data = copy.deepcopy(data)

        certname = data.pop("certname", None)
        if not certname:
            raise ConfigError("Missing required field: certname")

        os_family = str(data.pop("os_family", DEFAULT_OS_FAMILY)).lower()
        try:
            params = get_params(os_family)
        except KeyError as e:
            raise ConfigError(str(e.args[0])) from None

        # Merge defaults into the master and agent sections
        defaults = data.pop("defaults", {}) or {}
        sections = {}
        for section in ("master", "agent"):
            raw = data.pop(section, None)
            if raw is None:
                sections[section] = None
                continue
            if raw is True:
                raw = {}
            if raw is False:
                raw = {"enabled": False}
            if not isinstance(raw, dict):
                raise ConfigError(f"Section '{section}' must be a mapping")
            for key, value in defaults.items():
                raw.setdefault(key, value)
            sections[section] = raw

        host = self._parse_host(data.pop("host", {}) or {})

        node_fields = _field_names(NodeConfig) - {"certname", "os_family", "host", "master", "agent"}
        _check_keys("node", data, node_fields)

        provider = data.pop("package_provider", None) or params["package_provider"]

        node = NodeConfig(
            certname=certname,
            os_family=os_family,
            package_provider=provider,
            host=host,
            **data,
        )

        if sections["master"] is not None:
            node.master = self._parse_master(sections["master"], node, params)
        if sections["agent"] is not None:
            node.agent = self._parse_agent(sections["agent"], params)

        if not node.master_enabled and not node.agent_enabled:
            logger.warning(f"Node {certname} enables neither master nor agent")

        return node

    def _parse_host(self, data: dict[str, Any]) -> HostConfig:
        _check_keys("host", data, _field_names(HostConfig))
        host = HostConfig(**data)
        if host.type not in ("local", "ssh"):
            raise ConfigError(f"Invalid host type: {host.type}. Must be 'local' or 'ssh'")
        return host

    def _parse_agent(self, data: dict[str, Any], params: dict[str, Any]) -> AgentConfig:
        _check_keys("agent", data, _field_names(AgentConfig))
        agent = AgentConfig(**data)
        agent.version = str(agent.version)
        agent.package = agent.package or params["agent_package"]
        agent.service = agent.service or params["agent_service"]
        return agent

    def _parse_master(
        self,
        data: dict[str, Any],
        node: NodeConfig,
        params: dict[str, Any],
    ) -> MasterConfig:
        passenger = self._parse_passenger(data.pop("passenger", {}) or {}, params)
        storeconfigs = self._parse_storeconfigs(data.pop("storeconfigs", {}) or {})

        _check_keys("master", data, _field_names(MasterConfig))
        master = MasterConfig(passenger=passenger, storeconfigs=storeconfigs, **data)
        master.version = str(master.version)
        master.package = master.package or params["master_package"]
        master.service = master.service or params["master_service"]
        master.manifest = master.manifest or f"{node.confdir}/manifests/site.pp"
        master.modulepath = master.modulepath or f"{node.confdir}/modules"
        master.certname = master.certname or node.certname
        return master

    def _parse_passenger(self, data: Any, params: dict[str, Any]) -> PassengerConfig:
        if isinstance(data, bool):
            data = {"enabled": data}
        if not isinstance(data, dict):
            raise ConfigError(f"master.passenger must be true, false or a mapping, got {data!r}")
        _check_keys("master.passenger", data, _field_names(PassengerConfig))
        passenger = PassengerConfig(**data)
        passenger.web_package = passenger.web_package or params["web_package"]
        passenger.web_service = passenger.web_service or params["web_service"]
        passenger.passenger_package = passenger.passenger_package or params["passenger_package"]
        passenger.vhost_dir = passenger.vhost_dir or params["vhost_dir"]
        return passenger

    def _parse_storeconfigs(self, data: Any) -> StoreConfigsConfig:
        if isinstance(data, bool):
            data = {"enabled": data}
        elif isinstance(data, str):
            # "storeconfigs: mysql" enables storeconfigs with that adapter
            data = {"enabled": True, "adapter": data}
        if not isinstance(data, dict):
            raise ConfigError(
                f"master.storeconfigs must be true, false, an adapter name or a mapping, got {data!r}"
            )
        data = dict(data)
        adapter = self.parse_adapter(data.pop("adapter", "sqlite3"))
        _check_keys("master.storeconfigs", data, _field_names(StoreConfigsConfig) - {"adapter"})
        return StoreConfigsConfig(adapter=adapter, **data)

    def parse_adapter(self, data: Any) -> AdapterConfig:
        """
        Parse a storeconfigs adapter given as a name or a mapping.

        Raises:
            UnsupportedAdapterError: If the adapter name is unknown
        """
        if isinstance(data, str):
            data = {"type": data}
        if not isinstance(data, dict):
            raise ConfigError(f"Invalid storeconfigs adapter: {data!r}")

        options = dict(data)
        if not options.get("type"):
            raise ConfigError(
                f"Storeconfigs adapter options ({', '.join(sorted(options))}) given without "
                "an adapter type; set master.storeconfigs.adapter.type"
            )
        adapter_type = str(options.pop("type")).lower()
        if adapter_type not in ADAPTERS:
            raise UnsupportedAdapterError(adapter_type, sorted(ADAPTERS))

        adapter_cls = ADAPTERS[adapter_type]
        _check_keys(f"storeconfigs adapter '{adapter_type}'", options, _field_names(adapter_cls))
        return adapter_cls(**options)


def load_node_config(
    config_path: Optional[str] = None,
    overrides: Optional[dict[str, Any]] = None,
) -> NodeConfig:
    """Load a NodeConfig from a YAML file (searching default paths if None)."""
    return ConfigLoader(config_path).load(overrides)
