"""
Zero-touch provisioning service for fleetlink.

Flow:
1. An operator starts a session and receives a token
2. The router downloads its script (allocates an address and credentials)
3. The script reports stages to the log endpoint
4. The router calls back with its identity and the station is saved
"""

import logging
from typing import Mapping, Optional

from fleetlink.provisioning.callback import CallbackHandler, CompletionResult
from fleetlink.provisioning.events import EVENT_LOG, SessionEventHub
from fleetlink.provisioning.naming import (
    generate_api_user,
    generate_radius_client_name,
    generate_secret,
    next_free_address,
    sanitize_name,
)
from fleetlink.provisioning.script import ScriptGenerator
from fleetlink.provisioning.sessions import ProvisioningError, ProvisioningSession, SessionStore
from fleetlink.security.operators import Operator
from fleetlink.store.base import StationStore
from fleetlink.store.models import EnrollmentMode

logger = logging.getLogger(__name__)

MAX_CLIENT_NAME_ATTEMPTS = 20


class SessionNotFound(ProvisioningError):
    """The token does not name a live session."""


class ProvisioningService:
    """Drives router enrollment from session start to completion."""

    def __init__(
        self,
        store: StationStore,
        sessions: SessionStore,
        generator: ScriptGenerator,
        callback: CallbackHandler,
        events: SessionEventHub,
        radius_server_address: str = "",
        api_user_prefix: str = "fleet",
    ):
        self.store = store
        self.sessions = sessions
        self.generator = generator
        self.callback = callback
        self.events = events
        self.radius_server_address = radius_server_address
        self.api_user_prefix = api_user_prefix

    def start(self, operator: Operator, name: str = "", mode=None) -> str:
        """Open a session for the operator's tenant. Returns the token."""
        return self.sessions.start(
            tenant_id=operator.tenant_id,
            operator_id=operator.operator_id,
            name=str(name or "").strip(),
            mode=EnrollmentMode.parse(mode),
        )

    def _session(self, token: Optional[str]) -> ProvisioningSession:
        session = self.sessions.get(token)
        if session is None:
            raise SessionNotFound("Invalid session")
        return session

    async def prepare(self, token: str, name: Optional[str] = None,
                      mode=None) -> ProvisioningSession:
        """
        Allocate what the script needs: tunnel address, API credentials
        and, in RADIUS mode, the AAA client identity.

        Raises:
            SessionNotFound: unknown or expired token.
            ProvisioningError: no free address, or RADIUS mode without a
                server address.
        """
        session = self._session(token)
        changes = {}

        if name and name.strip():
            changes["name"] = sanitize_name(name)
        if mode:
            changes["mode"] = EnrollmentMode.parse(mode, default=session.mode)
        if changes:
            session = self.sessions.update(token, **changes)

        # One tunnel subnet serves every tenant, and addresses handed to
        # other open sessions are reserved until they expire
        stations = await self.store.list_stations()
        used = [s.host for s in stations] + self.sessions.hosts_in_use(exclude=token)
        # Re-fetching the script must not hand out a second address
        if session.host and session.host not in used:
            host = session.host
        else:
            tunnel = self.generator.settings
            host = next_free_address(used, tunnel.subnet, reserved=[tunnel.server_address])
            if host is None:
                raise ProvisioningError(f"No available IPs in {tunnel.subnet}")

        session = self.sessions.update(
            token,
            host=host,
            api_user=session.api_user or generate_api_user(self.api_user_prefix),
            api_password=session.api_password or generate_secret(6),
        )

        if session.is_radius:
            await self._prepare_radius(session)

        return session

    async def _prepare_radius(self, session: ProvisioningSession) -> None:
        tenant = await self.store.get_tenant(session.tenant_id)
        server_ip = (tenant.radius_server_ip if tenant else "") or self.radius_server_address

        client_name = session.radius_client_name
        if not client_name:
            for _ in range(MAX_CLIENT_NAME_ATTEMPTS):
                candidate = generate_radius_client_name(session.tenant_id)
                if not await self.store.radius_client_name_exists(candidate):
                    client_name = candidate
                    break
            else:
                raise ProvisioningError("Could not allocate a unique RADIUS client name")

        self.sessions.update(
            session.token,
            radius_client_name=client_name,
            radius_client_secret=session.radius_client_secret or generate_secret(12),
            radius_server_ip=server_ip,
        )

        if not server_ip:
            raise ProvisioningError("Missing RADIUS server IP or client secret")

    async def render_script(self, token: str, server_base_url: str,
                            name: Optional[str] = None, mode=None) -> str:
        session = await self.prepare(token, name=name, mode=mode)
        script = self.generator.render(session, server_base_url)
        logger.info(f"Issued provisioning script for {session.name or '(unnamed)'} -> {session.host}")
        return script

    def log(self, token: str, message: str) -> bool:
        """Forward a script stage to the session's listeners."""
        if self.sessions.get(token) is None:
            return False
        logger.debug(f"Provisioning stage: {message}")
        self.events.emit(token, EVENT_LOG, {"message": message})
        return True

    async def complete(self, token: str, query: Mapping[str, str]) -> Optional[CompletionResult]:
        return await self.callback.complete(token, query)

    async def purge_sessions(self) -> int:
        return self.sessions.purge_expired()
