"""
Provisioning session store.

A session tracks one router enrollment from the moment an operator starts
it until the router reports back. The random token is the only credential
the router holds, so possessing it grants access to the session.
"""

import logging
import time
from dataclasses import dataclass, field, fields
from typing import Callable, Dict, List, Optional

from fleetlink.provisioning.naming import generate_session_token
from fleetlink.store.models import EnrollmentMode

logger = logging.getLogger(__name__)


class ProvisioningError(Exception):
    """A provisioning step cannot proceed with the session as it is."""


@dataclass
class ProvisioningSession:
    """State of an in-progress enrollment."""
    token: str
    tenant_id: str
    operator_id: str = ""
    name: str = ""
    mode: EnrollmentMode = EnrollmentMode.API
    api_user: str = ""
    api_password: str = ""
    host: str = ""
    radius_client_name: str = ""
    radius_client_secret: str = ""
    radius_server_ip: str = ""
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    @property
    def is_radius(self) -> bool:
        return self.mode == EnrollmentMode.RADIUS


class SessionStore:
    """In-memory sessions with a time-to-live."""

    def __init__(self, ttl_seconds: float = 86400, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, ProvisioningSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def start(
        self,
        tenant_id: str,
        operator_id: str = "",
        name: str = "",
        mode: EnrollmentMode = EnrollmentMode.API,
    ) -> str:
        """Create a session and return its token."""
        token = generate_session_token()
        self._sessions[token] = ProvisioningSession(
            token=token,
            tenant_id=tenant_id,
            operator_id=operator_id,
            name=name,
            mode=mode,
            created_at=self._clock(),
        )
        logger.info(f"Started provisioning session for tenant {tenant_id} ({mode.value})")
        return token

    def _expired(self, session: ProvisioningSession) -> bool:
        return self._clock() - session.created_at > self.ttl_seconds

    def get(self, token: Optional[str]) -> Optional[ProvisioningSession]:
        if not token:
            return None
        session = self._sessions.get(token)
        if session is None:
            return None
        if self._expired(session):
            del self._sessions[token]
            logger.info("Dropped expired provisioning session")
            return None
        return session

    def update(self, token: str, **changes) -> Optional[ProvisioningSession]:
        """Set fields on a session. Last write wins."""
        session = self.get(token)
        if session is None:
            return None

        known = {f.name for f in fields(ProvisioningSession)} - {"token"}
        for key, value in changes.items():
            if key not in known:
                raise AttributeError(f"ProvisioningSession has no field {key!r}")
            setattr(session, key, value)
        return session

    def hosts_in_use(self, exclude: Optional[str] = None) -> List[str]:
        """Tunnel addresses held by live sessions other than ``exclude``."""
        return [
            s.host for t, s in self._sessions.items()
            if t != exclude and s.host and not self._expired(s)
        ]

    def remove(self, token: str) -> bool:
        return self._sessions.pop(token, None) is not None

    def purge_expired(self) -> int:
        """Remove expired sessions. Returns how many were dropped."""
        expired = [t for t, s in self._sessions.items() if self._expired(s)]
        for token in expired:
            del self._sessions[token]
        if expired:
            logger.info(f"Purged {len(expired)} expired provisioning session(s)")
        return len(expired)
