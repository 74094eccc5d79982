"""
Pytest configuration and shared fixtures for fleetlink tests.
"""

import os
import sys
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Optional

import pytest
import pytest_asyncio

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from fleetlink.core.config import Config
from fleetlink.device.gateway import DeviceConnectionError, DeviceError
from fleetlink.store.memory import MemoryStationStore
from fleetlink.store.models import StationRecord, TenantConfig
from fleetlink.system.commands import CommandError, CommandResult, PrivilegedRunner


# ============================================================================
# Temporary Directory Fixtures
# ============================================================================

@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_config_file(temp_dir: Path) -> Path:
    """Create a temporary config file."""
    config_path = temp_dir / "config.yaml"
    config_path.write_text("""
version: 1
server:
  port: 9090
  public_url: https://fleet.example.com
tunnel:
  endpoint_address: 203.0.113.10
  server_public_key: c2VydmVyLXB1YmxpYy1rZXktZm9yLXRlc3RzLTEyMzQ=
provisioning:
  base_domain: example.com
""")
    return config_path


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def sample_config(temp_dir: Path) -> Config:
    """Configuration pointing every host-side path into a temp directory."""
    wg_dir = temp_dir / "wireguard"
    sites_available = temp_dir / "sites-available"
    sites_enabled = temp_dir / "sites-enabled"
    for path in (wg_dir, sites_available, sites_enabled):
        path.mkdir()

    return Config.from_dict({
        "server": {"public_url": "https://fleet.example.com"},
        "tunnel": {
            "endpoint_address": "203.0.113.10",
            "server_public_key": "c2VydmVyLXB1YmxpYy1rZXktZm9yLXRlc3RzLTEyMzQ=",
            "config_dir": str(wg_dir),
        },
        "provisioning": {"base_domain": "example.com"},
        "radius": {
            "server_address": "198.51.100.5",
            "clients_conf_paths": [str(temp_dir / "clients.conf")],
        },
        "proxy": {
            "sites_available": str(sites_available),
            "sites_enabled": str(sites_enabled),
            "nginx_binary": "nginx",
        },
        "system": {"use_sudo": False, "temp_dir": str(temp_dir)},
        "security": {
            "encryption_key": "test-secret",
            "operators": [
                {"token": "admin-token", "tenant_id": "t1", "operator_id": "alice", "role": "superuser"},
                {"token": "staff-token", "tenant_id": "t1", "operator_id": "bob"},
            ],
        },
    })


@pytest.fixture
def wg_conf(sample_config: Config) -> Path:
    """A server WireGuard file with an [Interface] block and no peers."""
    path = Path(sample_config.tunnel.config_path)
    path.write_text(
        "[Interface]\n"
        "Address = 10.10.10.1/24\n"
        "ListenPort = 51820\n"
        "PrivateKey = c2VydmVyLXByaXZhdGUta2V5LWZvci10ZXN0cy0xMjM=\n"
    )
    return path


# ============================================================================
# Store Fixtures
# ============================================================================

@pytest.fixture
def memory_store() -> MemoryStationStore:
    return MemoryStationStore()


@pytest_asyncio.fixture
async def seeded_store(memory_store: MemoryStationStore) -> MemoryStationStore:
    """Store with one active tenant and one API-mode station at 10.10.10.2."""
    await memory_store.save_tenant(TenantConfig(tenant_id="t1", name="Tenant One"))
    await memory_store.create_station(StationRecord(
        tenant_id="t1",
        name="Router1",
        host="10.10.10.2",
        public_key="cHViLWtleS0x",
        username="fleet-api",
        password="secret",
        ddns="abc123.sn.mynetname.net",
    ))
    return memory_store


# ============================================================================
# Fake Device Fixtures
# ============================================================================

class FakeChannel:
    """
    Scripted stand-in for DeviceChannel.

    ``responses`` maps a command path to the rows it returns, or to an
    exception instance to raise.
    """

    def __init__(self, host: str, responses: Optional[Dict[str, object]] = None):
        self.host = host
        self.responses = dict(responses or {})
        self.calls: List[tuple] = []
        self.closed = False
        self.close_count = 0

    async def execute(self, command_path: str, args=None):
        if self.closed:
            raise DeviceError(f"Channel to {self.host} is closed")
        self.calls.append((command_path, list(args or [])))
        reply = self.responses.get(command_path, [])
        if isinstance(reply, Exception):
            raise reply
        return [dict(row) for row in reply]

    async def close(self) -> None:
        self.closed = True
        self.close_count += 1

    def commands(self) -> List[str]:
        return [path for path, _ in self.calls]


class FakeGateway:
    """Stand-in for DeviceGateway that hands out FakeChannels."""

    def __init__(self, responses: Optional[Dict[str, object]] = None):
        self.responses = responses or {}
        self.fail = False
        self.connects: List[tuple] = []
        self.channels: List[FakeChannel] = []

    async def connect(self, host: str, username: str, password: str) -> FakeChannel:
        self.connects.append((host, username, password))
        if self.fail:
            raise DeviceConnectionError(f"Timed out connecting to {host}:8728")
        channel = FakeChannel(host, self.responses)
        self.channels.append(channel)
        return channel


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def make_channel():
    """Factory for scripted channels: make_channel(host, responses)."""
    return FakeChannel


# ============================================================================
# Fake Privileged Runner
# ============================================================================

class FakeRunner(PrivilegedRunner):
    """
    Runs file commands for real (without sudo) against temp paths and
    records service commands instead of executing them.

    ``failures`` holds "<command> <first arg>" strings that should fail,
    e.g. "systemctl restart" or "nginx -t".
    """

    INTERCEPTED = ("systemctl", "nginx", "certbot")

    def __init__(self, temp_dir: str):
        super().__init__(use_sudo=False, temp_dir=temp_dir, timeout=10.0)
        self.commands: List[List[str]] = []
        self.failures: set = set()
        self.failure_counts: Dict[str, int] = {}

    def fail(self, signature: str, times: Optional[int] = None) -> None:
        self.failures.add(signature)
        if times is not None:
            self.failure_counts[signature] = times

    def _should_fail(self, args) -> bool:
        signature = " ".join(args[:2])
        if signature not in self.failures:
            return False
        remaining = self.failure_counts.get(signature)
        if remaining is not None:
            if remaining <= 0:
                return False
            self.failure_counts[signature] = remaining - 1
        return True

    async def run(self, *args, input_text=None, check=True) -> CommandResult:
        args = list(args)
        self.commands.append(args)

        if args[0] == "install":
            stripped = []
            skip = False
            for arg in args:
                if skip:
                    skip = False
                    continue
                if arg in ("-o", "-g"):
                    skip = True
                    continue
                stripped.append(arg)
            args = stripped

        if args[0] in self.INTERCEPTED:
            if self._should_fail(args):
                if check:
                    raise CommandError(f"{args[0]} exited with 1: simulated", returncode=1)
                return CommandResult(args=args, returncode=1, stdout="", stderr="simulated")
            return CommandResult(args=args, returncode=0, stdout="", stderr="")

        return await super().run(*args, input_text=input_text, check=check)

    def ran(self, *prefix: str) -> bool:
        return any(cmd[:len(prefix)] == list(prefix) for cmd in self.commands)


@pytest.fixture
def fake_runner(temp_dir: Path) -> FakeRunner:
    return FakeRunner(str(temp_dir))


# ============================================================================
# Clean Environment Fixture
# ============================================================================

@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Ensure clean environment for each test."""
    for key in list(os.environ.keys()):
        if key.startswith("FLEETLINK_"):
            monkeypatch.delenv(key, raising=False)
