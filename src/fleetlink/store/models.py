"""
Persistent data model for fleetlink.

Stations are managed routers registered through provisioning; tenants own
stations and may override the AAA server address.
"""

import time
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional


class EnrollmentMode(Enum):
    """How end users on a station authenticate."""
    API = "api"
    RADIUS = "radius"

    @classmethod
    def parse(cls, value: Any, default: "EnrollmentMode" = None) -> "EnrollmentMode":
        """Parse a mode from user input, case-insensitively."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for mode in cls:
            if mode.value == text:
                return mode
        return default if default is not None else cls.API


class TenantStatus(Enum):
    """Tenant platform status."""
    ACTIVE = "Active"
    INACTIVE = "Inactive"


@dataclass
class TenantConfig:
    """Per-tenant settings relevant to device access."""
    tenant_id: str
    name: str = ""
    status: TenantStatus = TenantStatus.ACTIVE
    radius_server_ip: str = ""

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TenantConfig":
        status = data.get("status", TenantStatus.ACTIVE.value)
        return cls(
            tenant_id=str(data["tenant_id"]),
            name=data.get("name", ""),
            status=TenantStatus(status) if not isinstance(status, TenantStatus) else status,
            radius_server_ip=data.get("radius_server_ip", "") or "",
        )


@dataclass
class StationRecord:
    """A router registered to a tenant."""
    tenant_id: str
    name: str
    host: str  # tunnel address
    id: str = ""
    public_key: str = ""
    username: str = ""
    password: str = ""  # encrypted at rest
    ddns: str = ""
    public_host: str = ""
    webfig_host: str = ""
    mode: EnrollmentMode = EnrollmentMode.API
    operator_id: str = ""
    radius_client_name: str = ""
    radius_client_secret: str = ""
    radius_client_ip: str = ""
    radius_server_ip: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data

    def to_public_dict(self) -> Dict[str, Any]:
        """Dictionary without secrets, for API responses."""
        data = self.to_dict()
        data.pop("password", None)
        data.pop("radius_client_secret", None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StationRecord":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["mode"] = EnrollmentMode.parse(values.get("mode"))
        return cls(**values)

    def matches_identity(self, host: Optional[str], public_key: Optional[str]) -> bool:
        """True when this record owns the tunnel address or the public key."""
        return bool(
            (host and self.host == host)
            or (public_key and self.public_key == public_key)
        )
