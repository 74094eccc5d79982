"""
Tests for fleetlink.system.radius module.
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from fleetlink.system.radius import RadiusRegistrar, build_client_block, find_client_block, has_ip

EXISTING = """client localhost {
    ipaddr = 127.0.0.1
    secret = testing123
}
"""


@pytest.fixture
def clients_conf(sample_config) -> Path:
    path = Path(sample_config.radius.clients_conf_paths[0])
    path.write_text(EXISTING)
    return path


class TestClientBlocks:
    """Tests for clients.conf helpers."""

    def test_build_block(self):
        block = build_client_block("rad-t1-abc", "203.0.113.5", "s3cret",
                                   shortname="Router 1", description="fleetlink client")
        assert block.startswith("client rad-t1-abc {")
        assert "ipaddr = 203.0.113.5" in block
        assert "shortname = Router-1" in block
        assert block.endswith("}")

    def test_find_and_has_ip(self):
        found = find_client_block(EXISTING, "localhost")
        assert found.ipaddr == "127.0.0.1"
        assert find_client_block(EXISTING, "other") is None
        assert has_ip(EXISTING, "127.0.0.1")
        assert not has_ip(EXISTING, "127.0.0.10")


class TestRadiusRegistrar:
    """Tests for RadiusRegistrar."""

    @pytest.mark.asyncio
    async def test_ensure_client_adds(self, sample_config, fake_runner, clients_conf):
        registrar = RadiusRegistrar(fake_runner, sample_config.radius)
        result = await registrar.ensure_client("rad-t1-abc", "203.0.113.5", "s3cret")

        assert result.success and result.changed
        content = clients_conf.read_text()
        assert "client localhost {" in content
        assert "client rad-t1-abc {" in content
        assert fake_runner.ran("systemctl", "reload", "freeradius")

    @pytest.mark.asyncio
    async def test_ensure_client_idempotent(self, sample_config, fake_runner, clients_conf):
        registrar = RadiusRegistrar(fake_runner, sample_config.radius)
        await registrar.ensure_client("rad-t1-abc", "203.0.113.5", "s3cret")
        result = await registrar.ensure_client("rad-t1-abc", "203.0.113.5", "s3cret")

        assert result.success
        assert not result.changed
        assert clients_conf.read_text().count("client rad-t1-abc") == 1

    @pytest.mark.asyncio
    async def test_existing_ip_is_success(self, sample_config, fake_runner, clients_conf):
        registrar = RadiusRegistrar(fake_runner, sample_config.radius)
        result = await registrar.ensure_client("rad-new", "127.0.0.1", "s3cret")
        assert result.success
        assert not result.changed

    @pytest.mark.asyncio
    async def test_moved_client_updated(self, sample_config, fake_runner, clients_conf):
        registrar = RadiusRegistrar(fake_runner, sample_config.radius)
        await registrar.ensure_client("rad-t1-abc", "203.0.113.5", "s3cret")
        result = await registrar.ensure_client("rad-t1-abc", "203.0.113.77", "s3cret")

        assert result.success and result.changed
        content = clients_conf.read_text()
        assert "203.0.113.77" in content
        assert "203.0.113.5\n" not in content

    @pytest.mark.asyncio
    async def test_move_onto_taken_ip_refused(self, sample_config, fake_runner, clients_conf):
        registrar = RadiusRegistrar(fake_runner, sample_config.radius)
        await registrar.ensure_client("rad-a", "203.0.113.1", "s3cret")
        await registrar.ensure_client("rad-b", "203.0.113.2", "s3cret")
        before = clients_conf.read_text()

        result = await registrar.ensure_client("rad-a", "203.0.113.2", "s3cret")

        assert not result.success
        assert result.message == "RADIUS client IP already used by another client"
        assert clients_conf.read_text() == before
        assert before.count("ipaddr = 203.0.113.2") == 1

    @pytest.mark.asyncio
    async def test_validation(self, sample_config, fake_runner, clients_conf):
        registrar = RadiusRegistrar(fake_runner, sample_config.radius)
        assert not (await registrar.ensure_client("bad name", "203.0.113.5", "s")).success
        assert not (await registrar.ensure_client("ok", "not-an-ip", "s")).success
        assert not (await registrar.ensure_client("ok", "203.0.113.5", "bad secret!")).success
        assert fake_runner.commands == []

    @pytest.mark.asyncio
    async def test_unreadable_conf(self, sample_config, fake_runner):
        registrar = RadiusRegistrar(fake_runner, sample_config.radius)
        result = await registrar.ensure_client("rad-t1-abc", "203.0.113.5", "s3cret")
        assert not result.success
        assert result.message == "Failed to read RADIUS clients.conf"

    @pytest.mark.asyncio
    async def test_remove_client(self, sample_config, fake_runner, clients_conf):
        registrar = RadiusRegistrar(fake_runner, sample_config.radius)
        await registrar.ensure_client("rad-t1-abc", "203.0.113.5", "s3cret")

        result = await registrar.remove_client("rad-t1-abc")
        assert result.success and result.changed
        assert "rad-t1-abc" not in clients_conf.read_text()
        assert "client localhost {" in clients_conf.read_text()

        again = await registrar.remove_client("rad-t1-abc")
        assert again.success and not again.changed

    @pytest.mark.asyncio
    async def test_staging_failure(self, sample_config, fake_runner, clients_conf):
        registrar = RadiusRegistrar(fake_runner, sample_config.radius)

        with patch.object(fake_runner, "write_temp", side_effect=OSError("No space left on device")):
            result = await registrar.ensure_client("rad-t1-abc", "203.0.113.5", "s3cret")

        assert not result.success
        assert result.message == "Failed to write RADIUS clients.conf"
        assert clients_conf.read_text() == EXISTING
