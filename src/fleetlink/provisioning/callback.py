"""
Provisioning completion.

When the router finishes its script it calls back with what it observed
about itself (tunnel public key, DDNS name, public address, credentials).
The handler resolves that report to a station record, wires up the host
side (proxy site, AAA client, tunnel peer) and publishes the outcome to
the session's listeners.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

from fleetlink.provisioning.events import EVENT_COMPLETE, EVENT_LOG, EVENT_SAVED, SessionEventHub
from fleetlink.provisioning.naming import fallback_device_name, generate_webfig_host, sanitize_name
from fleetlink.provisioning.sessions import ProvisioningSession, SessionStore
from fleetlink.security.encryption import PasswordCipher
from fleetlink.store.base import StationStore
from fleetlink.store.models import EnrollmentMode, StationRecord
from fleetlink.system.nginx import ReverseProxyProvisioner
from fleetlink.system.radius import RadiusRegistrar
from fleetlink.system.wireguard import TunnelSynchronizer

logger = logging.getLogger(__name__)

MAX_WEBFIG_ATTEMPTS = 20


@dataclass
class CompletionReport:
    """Fields reported by the router, normalized."""
    public_key: str = ""
    ddns: str = ""
    public_ip: str = ""
    username: str = ""
    password: str = ""
    host: str = ""
    name: str = ""

    @property
    def endpoint(self) -> str:
        return self.ddns or self.public_ip

    @classmethod
    def from_query(cls, query: Mapping[str, str], session: ProvisioningSession) -> "CompletionReport":
        def normalize(key: str) -> str:
            # '+' in base64 keys arrives as a space after URL decoding
            value = query.get(key)
            return str(value).replace(" ", "+").strip() if value else ""

        return cls(
            public_key=normalize("publicKey"),
            ddns=normalize("ddns"),
            public_ip=normalize("publicIp"),
            username=normalize("user") or session.api_user,
            password=normalize("pass") or session.api_password,
            host=normalize("host") or session.host,
            name=sanitize_name(normalize("name") or session.name),
        )


@dataclass
class CompletionResult:
    """Outcome of a completion callback."""
    success: bool
    message: str = ""
    station: Optional[StationRecord] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "station": self.station.to_public_dict() if self.station else None,
            "warnings": list(self.warnings),
        }


async def ping_host(host: str) -> bool:
    """Ping from this server: 3 probes, 2 s reply timeout."""
    process = await asyncio.create_subprocess_exec(
        "ping", "-c", "3", "-W", "2", host,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
    )
    return await process.wait() == 0


class CallbackHandler:
    """Resolves completion reports to stations."""

    def __init__(
        self,
        store: StationStore,
        sessions: SessionStore,
        cipher: PasswordCipher,
        tunnel: TunnelSynchronizer,
        proxy: ReverseProxyProvisioner,
        radius: RadiusRegistrar,
        events: SessionEventHub,
        base_domain: str = "",
        issue_certificates: bool = False,
        admin_email: str = "",
        pinger: Callable[[str], Awaitable[bool]] = ping_host,
    ):
        self.store = store
        self.sessions = sessions
        self.cipher = cipher
        self.tunnel = tunnel
        self.proxy = proxy
        self.radius = radius
        self.events = events
        self.base_domain = base_domain
        self.issue_certificates = issue_certificates
        self.admin_email = admin_email or (f"admin@{base_domain}" if base_domain else "")
        self.pinger = pinger
        self._background: Set[asyncio.Task] = set()

    async def complete(self, token: str, query: Mapping[str, str]) -> Optional[CompletionResult]:
        """
        Handle a completion callback.

        Returns None for an unknown token; otherwise the result, which is
        also published to the session's listeners.
        """
        session = self.sessions.get(token)
        if session is None:
            return None

        report = CompletionReport.from_query(query, session)
        logger.info(
            f"Completion for {report.name or '(unnamed)'} at {report.host} "
            f"(ddns={report.ddns or '-'}, public_ip={report.public_ip or '-'}, mode={session.mode.value})"
        )

        try:
            result = await self.save_station(session, report)
        except Exception as e:
            logger.error(f"Failed to save station for {report.host}: {e}")
            result = CompletionResult(success=False, message="Failed to save station")

        if result.success:
            self.sessions.update(token, completed_at=time.time())

        self._publish(token, report, result)
        return result

    async def save_station(self, session: ProvisioningSession,
                           report: CompletionReport) -> CompletionResult:
        if session.is_radius and not (session.radius_client_secret and session.radius_server_ip):
            return CompletionResult(
                success=False,
                message="Missing RADIUS server IP or client secret",
            )

        tenant = await self.store.get_tenant(session.tenant_id)
        if tenant is None:
            return CompletionResult(success=False, message="Tenant doesn't exist.")

        name = report.name or fallback_device_name()
        endpoint = report.endpoint
        if not endpoint:
            return CompletionResult(success=False, message="Public router host is required.")
        if not report.host or not report.public_key:
            return CompletionResult(success=False, message="Missing WireGuard peer data.")

        # Tunnel addresses and keys are unique across tenants
        existing = await self.store.get_station_by_identity(None, report.host, report.public_key)
        if existing is not None and existing.tenant_id != session.tenant_id:
            logger.warning(f"Tunnel identity {report.host} already belongs to tenant {existing.tenant_id}")
            return CompletionResult(
                success=False,
                message="Tunnel address or public key is already used by another router.",
            )
        if existing is None and report.ddns:
            claimed = await self.store.get_station_by_ddns(session.tenant_id, report.ddns)
            if claimed is not None:
                return CompletionResult(
                    success=False,
                    message="DDNS name is already being used by another router.",
                )

        password = report.password
        if password and not self.cipher.is_encrypted(password):
            password = self.cipher.encrypt(password)

        warnings: List[str] = []
        is_radius = session.mode == EnrollmentMode.RADIUS

        if existing is None:
            station = await self._create(session, report, name, password, is_radius, warnings)
        else:
            station = await self._update(existing, session, report, name, password, is_radius)

        if is_radius and session.radius_client_name and session.radius_client_secret:
            if not report.public_ip:
                warnings.append("RADIUS client not added: missing public IP/DDNS")
            else:
                added = await self.radius.ensure_client(
                    name=session.radius_client_name,
                    ip=report.public_ip,
                    secret=session.radius_client_secret,
                    shortname=name,
                    description=f"fleetlink RADIUS client for {name}",
                )
                if not added.success:
                    logger.warning(f"RADIUS client for {name} failed: {added.message}")
                    warnings.append(f"RADIUS client add failed: {added.message or 'unknown error'}")

        synced = await self.tunnel.upsert_peer(report.public_key, report.host, endpoint)
        if not synced.success:
            return CompletionResult(success=False, message=synced.message,
                                    station=station, warnings=warnings)

        message = "Station saved."
        if warnings:
            message += f" Warnings: {' | '.join(warnings)}"
        logger.info(f"Station {station.name} ({station.host}) saved")
        return CompletionResult(success=True, message=message, station=station, warnings=warnings)

    async def _create(self, session: ProvisioningSession, report: CompletionReport,
                      name: str, password: str, is_radius: bool,
                      warnings: List[str]) -> StationRecord:
        webfig_host = ""
        if self.base_domain:
            webfig_host = await self._unique_webfig_host(name)

        station = await self.store.create_station(StationRecord(
            tenant_id=session.tenant_id,
            name=name,
            host=report.host,
            public_key=report.public_key,
            username=report.username,
            password=password,
            ddns=report.ddns,
            public_host="" if report.ddns else report.public_ip,
            webfig_host=webfig_host,
            mode=session.mode,
            operator_id=session.operator_id,
            radius_client_name=session.radius_client_name,
            radius_client_secret=session.radius_client_secret,
            radius_client_ip=report.public_ip if is_radius else "",
            radius_server_ip=session.radius_server_ip if is_radius else "",
        ))

        if not webfig_host:
            warnings.append("Reverse proxy skipped: no base domain configured")
            return station

        proxy = await self.proxy.add_site(webfig_host, f"http://{report.host}")
        if not proxy.success:
            warnings.append(proxy.message or "Failed to create reverse proxy site")
        elif self.issue_certificates and self.admin_email:
            cert = await self.proxy.issue_certificate(webfig_host, self.admin_email)
            if not cert.success:
                warnings.append(cert.message)

        return station

    async def _update(self, existing: StationRecord, session: ProvisioningSession,
                      report: CompletionReport, name: str, password: str,
                      is_radius: bool) -> StationRecord:
        changes = {
            "name": name,
            "host": report.host,
            "public_key": report.public_key,
            "username": report.username,
            "password": password,
            "ddns": report.ddns,
            "public_host": "" if report.ddns else report.public_ip,
            "mode": session.mode,
            "radius_client_name": session.radius_client_name or existing.radius_client_name,
            "radius_client_secret": session.radius_client_secret or existing.radius_client_secret,
        }
        if is_radius:
            changes["radius_client_ip"] = report.public_ip or existing.radius_client_ip
            changes["radius_server_ip"] = session.radius_server_ip or existing.radius_server_ip

        logger.info(f"Updating existing station {existing.id} ({existing.host})")
        return await self.store.update_station(existing.id, changes)

    async def _unique_webfig_host(self, name: str) -> str:
        for _ in range(MAX_WEBFIG_ATTEMPTS):
            candidate = generate_webfig_host(name, self.base_domain)
            if not await self.store.webfig_host_exists(candidate):
                return candidate
        raise RuntimeError("Could not allocate a unique management hostname")

    def _publish(self, token: str, report: CompletionReport, result: CompletionResult) -> None:
        station = result.station.to_public_dict() if result.station else None
        self.events.emit(token, EVENT_COMPLETE, {
            "publicKey": report.public_key,
            "ddns": report.ddns,
            "publicIp": report.public_ip,
            "host": report.host,
            "name": report.name,
            "saved": result.success,
            "station": station,
            "saveMessage": result.message,
            "warnings": list(result.warnings),
        })
        if station is not None:
            self.events.emit(token, EVENT_SAVED, {
                "station": station,
                "message": result.message or "Station saved",
            })

        if result.success and report.host:
            task = asyncio.create_task(self._verify_reachability(token, report.host))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _verify_reachability(self, token: str, host: str) -> None:
        try:
            ok = await self.pinger(host)
        except Exception as e:
            logger.debug(f"Reachability check for {host} errored: {e}")
            ok = False
        self.events.emit(token, EVENT_LOG, {"message": "ping-ok" if ok else "ping-failed"})

    async def wait_background(self) -> None:
        """Wait for pending reachability checks."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
