"""Per-OS-family defaults for package names, services and paths."""
from typing import Any

DEFAULT_OS_FAMILY = "debian"

OS_PARAMS: dict[str, dict[str, Any]] = {
    "debian": {
        "package_provider": "apt",
        "agent_package": "puppet",
        "agent_service": "puppet",
        "master_package": "puppetmaster",
        "master_service": "puppetmaster",
        "web_package": "apache2",
        "web_service": "apache2",
        "passenger_package": "libapache2-mod-passenger",
        "vhost_dir": "/etc/apache2/sites-enabled",
        "rubygems_package": "rubygems",
        "sqlite_packages": ["sqlite3", "libsqlite3-ruby"],
        "mysql_package": "libmysql-ruby",
    },
    "redhat": {
        "package_provider": "yum",
        "agent_package": "puppet",
        "agent_service": "puppet",
        "master_package": "puppet-server",
        "master_service": "puppetmaster",
        "web_package": "httpd",
        "web_service": "httpd",
        "passenger_package": "mod_passenger",
        "vhost_dir": "/etc/httpd/conf.d",
        "rubygems_package": "rubygems",
        "sqlite_packages": ["sqlite", "ruby-sqlite3"],
        "mysql_package": "ruby-mysql",
    },
}


def get_params(os_family: str) -> dict[str, Any]:
    """Get defaults for an OS family.

    Raises:
        KeyError: If the family is unknown
    """
    family = os_family.lower()
    if family not in OS_PARAMS:
        raise KeyError(
            f"Unknown OS family: {os_family}. "
            f"Supported: {', '.join(sorted(OS_PARAMS))}"
        )
    return dict(OS_PARAMS[family])
