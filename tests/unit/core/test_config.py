"""
Tests for fleetlink.core.config module.
"""

from pathlib import Path

import pytest
import yaml

from fleetlink.core.config import (
    Config,
    DeviceConfig,
    TunnelConfig,
    load_config,
)


class TestTunnelConfig:
    """Tests for TunnelConfig dataclass."""

    def test_default_values(self):
        config = TunnelConfig()
        assert config.subnet == "10.10.10.0/24"
        assert config.server_address == "10.10.10.1"
        assert config.device_listen_port == 13231
        assert config.interface_name == "wg0"

    def test_derived_paths(self):
        config = TunnelConfig(config_dir="/etc/wg", interface_name="wg1")
        assert config.config_path == "/etc/wg/wg1.conf"
        assert config.service_name == "wg-quick@wg1"


class TestDeviceConfig:
    """Tests for DeviceConfig dataclass."""

    def test_default_values(self):
        config = DeviceConfig()
        assert config.api_port == 8728
        assert config.connect_timeout == 3.0
        assert config.pool_idle_seconds == 120
        assert config.sweep_interval_seconds == 30


class TestConfig:
    """Tests for main Config class."""

    def test_from_dict(self):
        config = Config.from_dict({
            "server": {"port": 9000},
            "provisioning": {"base_domain": "example.net"},
        })
        assert config.server.port == 9000
        assert config.provisioning.base_domain == "example.net"
        assert config.tunnel.subnet == "10.10.10.0/24"

    def test_from_dict_ignores_unknown_keys(self):
        config = Config.from_dict({"device": {"api_port": 8729, "colour": "blue"}})
        assert config.device.api_port == 8729

    def test_to_dict_drops_secrets(self):
        config = Config.from_dict({"security": {
            "encryption_key": "k",
            "operators": [{"token": "t", "tenant_id": "t1"}],
        }})
        data = config.to_dict()
        assert "encryption_key" not in data["security"]
        assert data["security"]["operators"] == [{"tenant_id": "t1"}]

    def test_save_and_load(self, temp_dir: Path):
        path = temp_dir / "nested" / "config.yaml"
        config = Config.from_dict({"server": {"port": 9100}})
        config.save(str(path))

        loaded = load_config(str(path), environ={})
        assert loaded.server.port == 9100


class TestEnvironmentOverrides:
    """Tests for FLEETLINK_* overrides."""

    def test_server_ip_strips_port(self):
        config = Config().apply_env({"FLEETLINK_SERVER_IP": "203.0.113.7:8080"})
        assert config.tunnel.endpoint_address == "203.0.113.7"

    def test_numeric_override(self):
        config = Config().apply_env({"FLEETLINK_WIREGUARD_PORT": "51821"})
        assert config.tunnel.endpoint_port == 51821

    def test_non_numeric_port_ignored(self):
        config = Config().apply_env({"FLEETLINK_WIREGUARD_PORT": "abc"})
        assert config.tunnel.endpoint_port == 51820

    def test_clients_conf_becomes_list(self):
        config = Config().apply_env({"FLEETLINK_RADIUS_CLIENTS_CONF": "/srv/clients.conf"})
        assert config.radius.clients_conf_paths == ["/srv/clients.conf"]

    def test_empty_values_ignored(self):
        config = Config().apply_env({"FLEETLINK_DOMAIN": ""})
        assert config.provisioning.base_domain == ""

    def test_environment_overrides_file(self, temp_config_file: Path, monkeypatch):
        monkeypatch.setenv("FLEETLINK_DOMAIN", "override.example.org")
        config = load_config(str(temp_config_file))
        assert config.provisioning.base_domain == "override.example.org"
        assert config.server.port == 9090


class TestLoadConfig:
    """Tests for load_config function."""

    def test_missing_file_gives_defaults(self, temp_dir: Path):
        config = load_config(str(temp_dir / "absent.yaml"), environ={})
        assert config.server.port == 8080

    def test_invalid_yaml_gives_defaults(self, temp_dir: Path):
        path = temp_dir / "broken.yaml"
        path.write_text("server: [unclosed")
        config = load_config(str(path), environ={})
        assert config.server.port == 8080

    def test_file_values(self, temp_config_file: Path):
        config = load_config(str(temp_config_file), environ={})
        assert config.server.public_url == "https://fleet.example.com"
        assert config.tunnel.endpoint_address == "203.0.113.10"
        data = yaml.safe_load(temp_config_file.read_text())
        assert data["provisioning"]["base_domain"] == config.provisioning.base_domain
