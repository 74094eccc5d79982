"""
Router maintenance over the management tunnel.

Repairs the configuration the provisioning script installs, pushes AAA
settings for RADIUS stations and diagnoses connectivity. All device work
runs through RouterAccess, so it is serialized with any other job on the
same router.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from fleetlink.core.config import Config
from fleetlink.device.access import RouterAccess
from fleetlink.device.gateway import DeviceChannel, DeviceError, ping_from
from fleetlink.store.base import StationStore
from fleetlink.store.models import EnrollmentMode, StationRecord

logger = logging.getLogger(__name__)


class RouterStatus(Enum):
    CONNECTED = "Connected"
    OFFLINE = "Offline"
    FAILED = "Failed"


@dataclass
class MaintenanceReport:
    """Problems found and repairs made on a router."""
    issues: List[str] = field(default_factory=list)
    fixes: List[str] = field(default_factory=list)


@dataclass
class DiagnosisResult:
    host: str
    status: RouterStatus
    message: str = ""
    issues: List[str] = field(default_factory=list)
    fixes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "status": self.status.value,
            "message": self.message,
            "issues": list(self.issues),
            "fixes": list(self.fixes),
        }


@dataclass
class MaintenanceResult:
    success: bool
    message: str = ""
    changes: List[str] = field(default_factory=list)
    rejected: bool = False  # refused before contacting the router


class RouterMaintenance:
    """API-level repair and AAA configuration of provisioned routers."""

    def __init__(self, access: RouterAccess, store: StationStore, config: Config):
        self.access = access
        self.store = store
        self.config = config

    async def _ensure_row(self, channel: DeviceChannel, menu: str,
                          present: bool,
                          values: Dict[str, Any], fix: str,
                          report: MaintenanceReport) -> None:
        if present:
            return
        await channel.execute(f"{menu}/add", [f"={k}={v}" for k, v in values.items()])
        report.fixes.append(fix)

    async def check_basics(self, channel: DeviceChannel, host: str) -> MaintenanceReport:
        """Ensure tunnel, API access, firewall, walled garden and DNS."""
        tunnel = self.config.tunnel
        prov = self.config.provisioning
        api_port = str(self.config.device.api_port)
        report = MaintenanceReport()

        try:
            interfaces = await channel.execute("/interface/wireguard/print")
            wg = _first(interfaces, lambda r: r.get("name") == tunnel.device_interface) or _first(interfaces)
            if wg is None:
                await channel.execute("/interface/wireguard/add", [
                    f"=listen-port={tunnel.device_listen_port}",
                    f"=mtu={tunnel.mtu}",
                    f"=name={tunnel.device_interface}",
                ])
                report.fixes.append("wireguard_added")
                wg = {"name": tunnel.device_interface}

            addresses = await channel.execute("/ip/address/print")
            await self._ensure_row(
                channel, "/ip/address",
                any(str(a.get("address", "")).startswith(f"{host}/") for a in addresses),
                {"address": f"{host}/24", "interface": wg["name"]},
                "wireguard_address_added", report,
            )

            peers = await channel.execute("/interface/wireguard/peers/print")
            await self._ensure_row(
                channel, "/interface/wireguard/peers",
                any(p.get("endpoint-address") == tunnel.endpoint_address
                    or p.get("public-key") == tunnel.server_public_key for p in peers),
                {
                    "interface": wg["name"],
                    "name": tunnel.device_peer_name,
                    "public-key": tunnel.server_public_key,
                    "endpoint-address": tunnel.endpoint_address,
                    "endpoint-port": tunnel.endpoint_port,
                    "allowed-address": f"{tunnel.server_address}/32",
                    "persistent-keepalive": tunnel.keepalive,
                },
                "wireguard_peer_added", report,
            )

            services = await channel.execute("/ip/service/print", ["?name=api"])
            api = _first(services)
            if api is not None and tunnel.subnet not in str(api.get("address", "")):
                await channel.execute("/ip/service/set", [
                    f"=.id={api['.id']}",
                    f"=address={tunnel.subnet}",
                ])
                report.fixes.append("api_allowed")

            rules = await channel.execute("/ip/firewall/filter/print")
            await self._ensure_row(
                channel, "/ip/firewall/filter",
                any(r.get("chain") == "input" and r.get("src-address") == tunnel.subnet
                    and r.get("protocol") == "tcp" and api_port in str(r.get("dst-port", ""))
                    for r in rules),
                {"chain": "input", "src-address": tunnel.subnet, "protocol": "tcp",
                 "dst-port": api_port, "action": "accept", "comment": "Allow API from WireGuard"},
                "firewall_api_rule_added", report,
            )
            await self._ensure_row(
                channel, "/ip/firewall/filter",
                any(r.get("chain") == "input" and r.get("protocol") == "udp"
                    and str(tunnel.device_listen_port) in str(r.get("dst-port", ""))
                    for r in rules),
                {"chain": "input", "protocol": "udp", "dst-port": tunnel.device_listen_port,
                 "action": "accept", "comment": "Allow WireGuard"},
                "firewall_udp_rule_added", report,
            )
            await self._ensure_row(
                channel, "/ip/firewall/filter",
                any(r.get("chain") == "input" and r.get("src-address") == tunnel.subnet
                    for r in rules),
                {"chain": "input", "src-address": tunnel.subnet, "action": "accept",
                 "comment": "Allow tunnel subnet"},
                "firewall_subnet_rule_added", report,
            )

            garden = await channel.execute("/ip/hotspot/walled-garden/print")
            garden_hosts = {g.get("dst-host") for g in garden}
            wanted = []
            if prov.base_domain:
                wanted += [(prov.base_domain, "walled_garden_domain_added"),
                           (f"*.{prov.base_domain}", "walled_garden_wildcard_added")]
            if prov.public_ip_lookup_host:
                wanted.append((prov.public_ip_lookup_host, "walled_garden_lookup_added"))
            for dst_host, fix in wanted:
                await self._ensure_row(
                    channel, "/ip/hotspot/walled-garden", dst_host in garden_hosts,
                    {"dst-host": dst_host, "action": "allow"}, fix, report,
                )

            dns = _first(await channel.execute("/ip/dns/print"))
            if dns is not None and not str(dns.get("servers", "")).strip():
                await channel.execute("/ip/dns/set", [
                    f"=servers={prov.dns_servers}",
                    "=allow-remote-requests=yes",
                ])
                report.fixes.append("dns_servers_set")
        except DeviceError as e:
            logger.warning(f"Config check on {host} failed: {e}")
            report.issues.append("config_check_failed")

        if report.fixes:
            logger.info(f"Repaired {host}: {', '.join(report.fixes)}")
        return report

    async def ensure_basics(self, tenant_id: str, host: str) -> Optional[MaintenanceReport]:
        """Run check_basics under the router lock. None if unreachable."""
        result = await self.access.run(
            tenant_id, host, lambda channel: self.check_basics(channel, host)
        )
        return result.value if result.success else None

    async def diagnose(self, tenant_id: str, host: str) -> DiagnosisResult:
        station = await self.store.get_station_by_host(tenant_id, host)
        if station is None or not station.username or not station.password:
            return DiagnosisResult(host=host, status=RouterStatus.FAILED,
                                   message="Missing credentials", issues=["missing_credentials"])

        async def _diagnose(channel: DeviceChannel) -> DiagnosisResult:
            report = await self.check_basics(channel, host)
            try:
                link_up = await ping_from(channel, self.config.tunnel.server_address, count=2)
            except DeviceError as e:
                logger.warning(f"Tunnel ping from {host} failed: {e}")
                link_up = False

            if not link_up:
                return DiagnosisResult(host=host, status=RouterStatus.OFFLINE, message="Link down",
                                       issues=report.issues + ["link_down"], fixes=report.fixes)
            return DiagnosisResult(host=host, status=RouterStatus.CONNECTED, message="OK",
                                   issues=report.issues, fixes=report.fixes)

        result = await self.access.run(tenant_id, host, _diagnose)
        if result.unreachable:
            return DiagnosisResult(host=host, status=RouterStatus.OFFLINE,
                                   message="Link down or connection failed",
                                   issues=["connection_failed"])
        if not result.success:
            return DiagnosisResult(host=host, status=RouterStatus.FAILED,
                                   message=result.message or "Debug failed", issues=["debug_failed"])
        return result.value

    def _radius_server(self, station: StationRecord) -> str:
        return station.radius_server_ip or self.config.radius.server_address

    async def configure_aaa(self, tenant_id: str, host: str) -> MaintenanceResult:
        """Point a RADIUS station at the AAA server."""
        station = await self.store.get_station_by_host(tenant_id, host)
        if station is None:
            return MaintenanceResult(success=False, rejected=True, message="Station not found")
        if station.mode != EnrollmentMode.RADIUS:
            return MaintenanceResult(success=False, rejected=True, message="Station is not in RADIUS mode")

        server_ip = self._radius_server(station)
        secret = station.radius_client_secret
        if not server_ip or not secret:
            return MaintenanceResult(
                success=False,
                rejected=True,
                message="Missing RADIUS server IP or client secret for this station.",
            )

        async def _configure(channel: DeviceChannel) -> List[str]:
            changes = []
            entries = await channel.execute("/radius/print")
            match = _first(entries, lambda r: r.get("address") == server_ip
                           and "ppp" in str(r.get("service", "")).lower())
            if match is None:
                await channel.execute("/radius/add", [
                    f"=address={server_ip}",
                    f"=secret={secret}",
                    "=service=ppp,hotspot",
                    "=timeout=300ms",
                ])
                changes.append("radius_added")
            elif match.get("secret") != secret:
                await channel.execute("/radius/set", [f"=.id={match['.id']}", f"=secret={secret}"])
                changes.append("radius_secret_updated")

            await channel.execute("/radius/incoming/set", ["=accept=yes"])
            await channel.execute("/ppp/aaa/set", [
                "=use-radius=yes", "=accounting=yes", "=interim-update=1m",
            ])
            changes.append("aaa_enabled")
            return changes

        result = await self.access.run(tenant_id, host, _configure)
        if not result.success:
            return MaintenanceResult(success=False, message=result.message)

        logger.info(f"AAA configured on {host}: {', '.join(result.value)}")
        return MaintenanceResult(success=True, message="RADIUS configured.", changes=result.value)


def _first(rows: List[Dict[str, str]], predicate=None) -> Optional[Dict[str, str]]:
    for row in rows:
        if predicate is None or predicate(row):
            return row
    return None
