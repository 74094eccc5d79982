"""
Configuration management for fleetlink.

Handles loading, validation, and access to configuration settings.
Static deployment parameters (server endpoint, tunnel key, base domain,
AAA server) may also come from the environment and are read once at
startup.
"""

import logging
import os
import yaml
from dataclasses import dataclass, field, fields, asdict
from typing import Optional, Dict, Any, List
from pathlib import Path

logger = logging.getLogger(__name__)


# Default configuration paths
CONFIG_PATHS = [
    "/etc/fleetlink/config.yaml",
    os.path.expanduser("~/.config/fleetlink/config.yaml"),
    "config.yaml",
]


@dataclass
class ServerConfig:
    """HTTP API configuration."""
    host: str = "0.0.0.0"
    port: int = 8080
    public_url: str = ""  # Base URL devices use to reach this server
    packages_dir: str = ""  # Served under /routeros when set


@dataclass
class TunnelConfig:
    """Secure tunnel (WireGuard) configuration."""
    endpoint_address: str = ""
    endpoint_port: int = 51820
    server_public_key: str = ""
    subnet: str = "10.10.10.0/24"
    server_address: str = "10.10.10.1"
    interface_name: str = "wg0"
    config_dir: str = "/etc/wireguard"
    service_template: str = "wg-quick@{interface}"
    device_listen_port: int = 13231
    device_interface: str = "wireguard"
    device_peer_name: str = "fleetpeer"
    mtu: int = 1420
    keepalive: int = 10

    @property
    def config_path(self) -> str:
        return str(Path(self.config_dir) / f"{self.interface_name}.conf")

    @property
    def service_name(self) -> str:
        return self.service_template.format(interface=self.interface_name)


@dataclass
class DeviceConfig:
    """Device API connection settings."""
    api_port: int = 8728
    connect_timeout: float = 3.0
    use_ssl: bool = False
    pool_idle_seconds: int = 120
    sweep_interval_seconds: int = 30


@dataclass
class ProvisioningConfig:
    """Zero-touch provisioning settings."""
    base_domain: str = ""
    routeros_base_url: str = ""  # Defaults to <server>/routeros
    min_major_version: int = 7
    probe_count: int = 3
    session_ttl_seconds: int = 86400
    purge_interval_seconds: int = 300
    api_user_prefix: str = "fleet"
    scheduler_name: str = "fleetlink-reconnect"
    script_file: str = "fleetlink-auto.rsc"
    dns_servers: str = "8.8.8.8,1.1.1.1"
    public_ip_lookup_host: str = "api64.ipify.org"
    issue_certificates: bool = False
    admin_email: str = ""


@dataclass
class RadiusConfig:
    """AAA (FreeRADIUS) server settings."""
    server_address: str = ""
    clients_conf_paths: List[str] = field(default_factory=lambda: [
        "/etc/freeradius/3.0/clients.conf",
        "/etc/freeradius/clients.conf",
        "/etc/raddb/clients.conf",
    ])
    service_name: str = "freeradius"


@dataclass
class ProxyConfig:
    """Reverse proxy (nginx) settings."""
    sites_available: str = "/etc/nginx/sites-available"
    sites_enabled: str = "/etc/nginx/sites-enabled"
    nginx_binary: str = "/usr/sbin/nginx"
    service_name: str = "nginx"


@dataclass
class SystemConfig:
    """Local privileged command execution."""
    use_sudo: bool = True
    temp_dir: str = "/tmp"
    command_timeout: float = 30.0


@dataclass
class SecurityConfig:
    """Security configuration."""
    encryption_key: str = ""
    # Each operator: {token, tenant_id, operator_id, role}
    operators: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class StorageConfig:
    """Station/tenant persistence."""
    backend: str = "memory"  # 'memory', 'yaml'
    path: str = "/var/lib/fleetlink/stations.yaml"


# Environment variable -> (section, attribute)
ENV_OVERRIDES = {
    "FLEETLINK_SERVER_IP": ("tunnel", "endpoint_address"),
    "FLEETLINK_WIREGUARD_PORT": ("tunnel", "endpoint_port"),
    "FLEETLINK_WIREGUARD_PUBLIC_KEY": ("tunnel", "server_public_key"),
    "FLEETLINK_RADIUS_SERVER_IP": ("radius", "server_address"),
    "FLEETLINK_DOMAIN": ("provisioning", "base_domain"),
    "FLEETLINK_ROUTEROS_BASE_URL": ("provisioning", "routeros_base_url"),
    "FLEETLINK_ENCRYPTION_KEY": ("security", "encryption_key"),
    "FLEETLINK_RADIUS_CLIENTS_CONF": ("radius", "clients_conf_paths"),
    "FLEETLINK_RADIUS_SERVICE": ("radius", "service_name"),
}

# Host values that may carry a ':port' suffix
_HOST_ONLY = {("tunnel", "endpoint_address"), ("radius", "server_address")}


def _section(cls, data: Optional[Dict[str, Any]]):
    """Build a section dataclass, ignoring unknown keys."""
    if not data:
        return cls()
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Config:
    """Main configuration class."""
    version: int = 1
    server: ServerConfig = field(default_factory=ServerConfig)
    tunnel: TunnelConfig = field(default_factory=TunnelConfig)
    device: DeviceConfig = field(default_factory=DeviceConfig)
    provisioning: ProvisioningConfig = field(default_factory=ProvisioningConfig)
    radius: RadiusConfig = field(default_factory=RadiusConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    system: SystemConfig = field(default_factory=SystemConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create Config from dictionary."""
        config = cls()

        if "version" in data:
            config.version = data["version"]

        config.server = _section(ServerConfig, data.get("server"))
        config.tunnel = _section(TunnelConfig, data.get("tunnel"))
        config.device = _section(DeviceConfig, data.get("device"))
        config.provisioning = _section(ProvisioningConfig, data.get("provisioning"))
        config.radius = _section(RadiusConfig, data.get("radius"))
        config.proxy = _section(ProxyConfig, data.get("proxy"))
        config.system = _section(SystemConfig, data.get("system"))
        config.security = _section(SecurityConfig, data.get("security"))
        config.storage = _section(StorageConfig, data.get("storage"))

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert Config to dictionary (secrets excluded)."""
        data = asdict(self)
        data["security"] = {"operators": [
            {k: v for k, v in op.items() if k != "token"}
            for op in self.security.operators
        ]}
        return data

    def apply_env(self, environ: Optional[Dict[str, str]] = None) -> "Config":
        """Override settings from FLEETLINK_* environment variables."""
        environ = os.environ if environ is None else environ

        for var, (section_name, attr) in ENV_OVERRIDES.items():
            raw = environ.get(var)
            if raw is None or raw == "":
                continue

            section = getattr(self, section_name)
            current = getattr(section, attr)

            if (section_name, attr) in _HOST_ONLY:
                value: Any = raw.split(":")[0]
            elif isinstance(current, list):
                value = [raw]
            elif isinstance(current, int):
                try:
                    value = int(raw)
                except ValueError:
                    logger.warning(f"Ignoring non-numeric {var}={raw!r}")
                    continue
            else:
                value = raw

            setattr(section, attr, value)

        return self

    def save(self, path: Optional[str] = None):
        """Save configuration to file."""
        if path is None:
            path = CONFIG_PATHS[0]

        # Ensure directory exists
        Path(path).parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False)


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Config:
    """
    Load configuration from file, then apply environment overrides.

    Args:
        path: Path to config file. If None, searches default locations.
        environ: Environment mapping (defaults to os.environ).

    Returns:
        Config object with loaded or default settings.
    """
    if path is not None:
        paths_to_try = [path]
    else:
        paths_to_try = CONFIG_PATHS

    config = None
    for config_path in paths_to_try:
        if os.path.exists(config_path):
            try:
                with open(config_path) as f:
                    data = yaml.safe_load(f)
                    if data:
                        config = Config.from_dict(data)
                        logger.info(f"Loaded configuration from {config_path}")
                        break
            except Exception as e:
                logger.warning(f"Failed to load config from {config_path}: {e}")

    if config is None:
        config = Config()

    return config.apply_env(environ)


def get_config_path() -> Optional[str]:
    """Get the path to the active config file."""
    for path in CONFIG_PATHS:
        if os.path.exists(path):
            return path
    return None
