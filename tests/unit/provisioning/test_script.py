"""
Tests for fleetlink.provisioning.script module.
"""

import pytest

from fleetlink.provisioning.script import (
    EnsureObject,
    Raw,
    ScriptGenerator,
    ScriptSettings,
    escape,
    quote_value,
)
from fleetlink.provisioning.sessions import ProvisioningError, ProvisioningSession
from fleetlink.store.models import EnrollmentMode


def prepared_session(**overrides):
    values = dict(
        token="a" * 32,
        tenant_id="t1",
        name="Main-Office",
        host="10.10.10.5",
        api_user="fleet-abc123",
        api_password="0badc0ffee12",
    )
    values.update(overrides)
    return ProvisioningSession(**values)


class TestQuoting:
    """Tests for script quoting helpers."""

    def test_escape(self):
        assert escape('say "hi" $x \\ ok') == 'say \\"hi\\" \\$x \\\\ ok'

    def test_raw_is_not_quoted(self):
        assert quote_value(Raw("$apiUser")) == "$apiUser"
        assert quote_value(8728) == '"8728"'


class TestEnsureObject:
    """Tests for EnsureObject rendering."""

    def test_add_or_set(self):
        lines = EnsureObject(
            "/ip/firewall/filter", {"comment": "Allow WireGuard"},
            {"chain": "input", "action": "accept"}, stage="firewall",
        ).render()

        assert lines[0] == ":do {"
        assert lines[1] == ':local found [/ip/firewall/filter/find where comment="Allow WireGuard"]'
        assert '/ip/firewall/filter/add comment="Allow WireGuard" chain="input" action="accept"' in lines[2]
        assert '/ip/firewall/filter/set $found chain="input" action="accept"' in lines[2]
        assert lines[3] == '} on-error={ $safeFetch ($logBase . "firewall-failed") }'

    def test_add_only(self):
        lines = EnsureObject("/interface/list", {"name": "LAN"}, stage="list").render()
        assert "else=" not in lines[2]
        assert '/interface/list/add name="LAN"' in lines[2]


class TestScriptGenerator:
    """Tests for ScriptGenerator."""

    def _generator(self, sample_config):
        return ScriptGenerator(ScriptSettings.from_config(sample_config))

    def test_settings_from_config(self, sample_config):
        settings = ScriptSettings.from_config(sample_config)
        assert settings.endpoint_address == "203.0.113.10"
        assert settings.base_domain == "example.com"
        assert settings.subnet_prefix == "10.10.10."

    def test_urls(self, sample_config):
        urls = self._generator(sample_config).urls(prepared_session(), "https://fleet.example.com/")
        token = "a" * 32
        assert urls["log"] == f"https://fleet.example.com/provisioning/log?token={token}&msg="
        assert urls["complete"] == f"https://fleet.example.com/provisioning/complete?token={token}"
        assert "server=https%3A%2F%2Ffleet.example.com" in urls["script"]
        assert urls["script"].endswith("&name=Main-Office&mode=api")
        assert urls["routeros"] == "https://fleet.example.com/routeros"

    def test_routeros_base_override(self, sample_config):
        sample_config.provisioning.routeros_base_url = "https://cdn.example.com/ros/"
        urls = self._generator(sample_config).urls(prepared_session(), "https://fleet.example.com")
        assert urls["routeros"] == "https://cdn.example.com/ros"

    def test_render_api_mode(self, sample_config):
        script = self._generator(sample_config).render(prepared_session(), "https://fleet.example.com")

        assert ':local internalIp "10.10.10.5"' in script
        assert ':local apiUser "fleet-abc123"' in script
        assert "/system/scheduler/add name=\"fleetlink-reconnect\"" in script
        assert ":if ($rosMajor < 7) do={" in script
        assert 'public-key="c2VydmVyLXB1YmxpYy1rZXktZm9yLXRlc3RzLTEyMzQ="' in script
        assert 'endpoint-address="203.0.113.10"' in script
        assert 'allowed-address="10.10.10.1/32"' in script
        assert '/ip/service/set api address="10.10.10.0/24" port=8728 disabled=no' in script
        assert 'dst-host="*.example.com"' in script
        assert "/user/add name=$apiUser password=$apiPass group=\"full\"" in script
        assert "/radius" not in script
        assert script.rstrip().endswith('"&name=" . $routerName)')

    def test_render_is_ordered(self, sample_config):
        script = self._generator(sample_config).render(prepared_session(), "https://fleet.example.com")
        stages = ["device-mode-updating", "routeros-upgrade-required", "ip-conflict",
                  "wireguard-interface-ready", "ping-server-ok", "api-access-enabled",
                  "firewall-rules-set", "api-user-ready", "completing"]
        positions = [script.index(stage) for stage in stages]
        assert positions == sorted(positions)

    def test_render_radius_mode(self, sample_config):
        session = prepared_session(
            mode=EnrollmentMode.RADIUS,
            radius_server_ip="198.51.100.5",
            radius_client_secret="abcdef012345",
        )
        script = ScriptGenerator(ScriptSettings.from_config(sample_config)).render(session, "https://x")
        assert '/radius/add address="198.51.100.5" secret="abcdef012345"' in script
        assert "/radius/incoming/set accept=yes" in script
        assert "/ppp/aaa/set use-radius=yes" in script

    def test_radius_without_secret_refused(self, sample_config):
        session = prepared_session(mode=EnrollmentMode.RADIUS, radius_server_ip="198.51.100.5")
        with pytest.raises(ProvisioningError, match="Missing RADIUS server IP or client secret"):
            self._generator(sample_config).render(session, "https://x")

    def test_unprepared_session_refused(self, sample_config):
        with pytest.raises(ProvisioningError):
            self._generator(sample_config).render(prepared_session(host=""), "https://x")

    def test_values_are_escaped(self, sample_config):
        session = prepared_session(name='Bad"Name$x')
        script = self._generator(sample_config).render(session, "https://x")
        assert ':local routerName "Bad\\"Name\\$x"' in script
