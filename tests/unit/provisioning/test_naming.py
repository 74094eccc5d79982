"""
Tests for fleetlink.provisioning.naming module.
"""

import re

from fleetlink.provisioning.naming import (
    fallback_device_name,
    generate_api_user,
    generate_radius_client_name,
    generate_session_token,
    generate_webfig_host,
    is_valid_ddns_host,
    is_valid_ip,
    next_free_address,
    sanitize_domain,
    sanitize_name,
    webfig_label,
)


class TestNextFreeAddress:
    """Tests for tunnel address allocation."""

    def test_first_address_skips_server(self):
        assert next_free_address([]) == "10.10.10.2"

    def test_fills_gaps(self):
        assert next_free_address(["10.10.10.2", "10.10.10.4"]) == "10.10.10.3"

    def test_ignores_empty_hosts(self):
        assert next_free_address([None, "", "10.10.10.2"]) == "10.10.10.3"

    def test_exhausted(self):
        used = [f"10.10.10.{i}" for i in range(2, 255)]
        assert next_free_address(used) is None

    def test_other_subnet(self):
        assert next_free_address([], "172.16.5.0/29", reserved=["172.16.5.1"]) == "172.16.5.2"


class TestSanitizers:
    """Tests for name and domain sanitizing."""

    def test_sanitize_name(self):
        assert sanitize_name("  Main Office Router ") == "Main-Office-Router"
        assert sanitize_name("--router<>1..") == "router1"
        assert sanitize_name("a   b---c") == "a-b-c"
        assert sanitize_name(None) == ""

    def test_sanitize_name_slashes_and_punctuation(self):
        assert sanitize_name("a / b // c") == "a-b-c"
        assert sanitize_name("Shop #1 / Floor 2!!") == "Shop-1-Floor-2"
        assert sanitize_name("..//--") == ""

    def test_sanitize_domain(self):
        assert sanitize_domain(" Router.Example.COM ") == "router.example.com"
        assert sanitize_domain("a..b") is None
        assert sanitize_domain("a/b") is None
        assert sanitize_domain("a b") is None
        assert sanitize_domain("a_b.com") is None
        assert sanitize_domain("") is None
        assert sanitize_domain(42) is None

    def test_ip_and_ddns_validation(self):
        assert is_valid_ip("203.0.113.5")
        assert is_valid_ip("2001:db8::1")
        assert not is_valid_ip("203.0.113")
        assert is_valid_ddns_host("abc123.sn.mynetname.net")
        assert not is_valid_ddns_host("localhost")
        assert not is_valid_ddns_host(None)


class TestGenerators:
    """Tests for identifier generators."""

    def test_session_token(self):
        token = generate_session_token()
        assert re.fullmatch(r"[0-9a-f]{32}", token)
        assert token != generate_session_token()

    def test_api_user(self):
        assert re.fullmatch(r"fleet-[0-9a-f]{6}", generate_api_user())
        assert generate_api_user("ops").startswith("ops-")

    def test_radius_client_name_is_sanitized(self):
        name = generate_radius_client_name("Tenant One Ltd")
        assert re.fullmatch(r"rad-Tenant-[0-9a-f]{6}", name)
        assert sanitize_name(name) == name

    def test_webfig_host(self):
        assert webfig_label("Main Office 2") == "mainoffice"
        assert webfig_label("1234") == "router"
        assert webfig_label("abcdefghijklmnop") == "abcdefghijkl"
        assert re.fullmatch(r"mainoffice[a-z]{4}\.example\.com", generate_webfig_host("Main Office", "example.com"))

    def test_fallback_device_name(self):
        assert re.fullmatch(r"Router-\d{1,3}", fallback_device_name())
