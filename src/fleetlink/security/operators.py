"""
Operator authentication for fleetlink.

Operators are tenant staff allowed to start provisioning sessions and
trigger router maintenance. They authenticate with a static bearer token
taken from configuration.
"""

import hmac
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


class OperatorRole(Enum):
    """Operator privilege levels."""
    OPERATOR = "operator"
    SUPERUSER = "superuser"


@dataclass
class Operator:
    """An authenticated tenant operator."""
    tenant_id: str
    operator_id: str
    role: OperatorRole = OperatorRole.OPERATOR

    @property
    def is_superuser(self) -> bool:
        return self.role == OperatorRole.SUPERUSER


class OperatorAuthenticator:
    """Maps operator tokens to operators."""

    def __init__(self, entries: Iterable[Dict[str, Any]] = ()):
        self._entries: List[tuple] = []
        for entry in entries:
            token = str(entry.get("token") or "")
            tenant_id = str(entry.get("tenant_id") or "")
            if not token or not tenant_id:
                logger.warning("Skipping operator entry without token or tenant_id")
                continue

            try:
                role = OperatorRole(entry.get("role", OperatorRole.OPERATOR.value))
            except ValueError:
                logger.warning(f"Unknown role {entry.get('role')!r} for tenant {tenant_id}")
                role = OperatorRole.OPERATOR

            operator = Operator(
                tenant_id=tenant_id,
                operator_id=str(entry.get("operator_id") or tenant_id),
                role=role,
            )
            self._entries.append((token.encode("utf-8"), operator))

    def __len__(self) -> int:
        return len(self._entries)

    def authenticate(self, token: Optional[str]) -> Optional[Operator]:
        """Return the operator owning ``token``, or None."""
        if not token:
            return None

        candidate = token.encode("utf-8")
        found = None
        # Compare against every entry so timing does not depend on position
        for stored, operator in self._entries:
            if hmac.compare_digest(stored, candidate) and found is None:
                found = operator
        return found
