"""
Naming, addressing and credential helpers for provisioning.
"""

import ipaddress
import random
import re
import secrets
import string
from typing import Iterable, Optional

DEFAULT_SUBNET = "10.10.10.0/24"
DEFAULT_SERVER_ADDRESS = "10.10.10.1"

_DDNS_RE = re.compile(r"^([a-zA-Z0-9-]+\.)+[a-zA-Z]{2,}$")
_DOMAIN_CHARS_RE = re.compile(r"^[a-z0-9.-]+$")


def next_free_address(
    used_hosts: Iterable[Optional[str]],
    subnet: str = DEFAULT_SUBNET,
    reserved: Iterable[str] = (DEFAULT_SERVER_ADDRESS,),
) -> Optional[str]:
    """
    Lowest host address of ``subnet`` not in use and not reserved.

    For the default subnet this is searched in 10.10.10.2..10.10.10.254.
    Returns None when every address is taken.
    """
    network = ipaddress.ip_network(subnet, strict=False)
    taken = {str(h).strip() for h in used_hosts if h}
    taken.update(str(r).strip() for r in reserved if r)

    for address in network.hosts():
        candidate = str(address)
        if candidate not in taken:
            return candidate
    return None


def sanitize_name(value) -> str:
    """Reduce a device name to [A-Za-z0-9._-] without edge separators."""
    text = str(value or "").strip()
    text = re.sub(r"\s+", "-", text)
    text = re.sub(r"[^a-zA-Z0-9._-]", "", text)
    text = re.sub(r"-+", "-", text)
    return re.sub(r"^[-.]+|[-.]+$", "", text)


def sanitize_domain(value) -> Optional[str]:
    """Lowercased hostname, or None when it is unsafe to use."""
    if not isinstance(value, str):
        return None
    safe = value.strip().lower()
    if not safe or ".." in safe or "/" in safe or any(c.isspace() for c in safe):
        return None
    if not _DOMAIN_CHARS_RE.match(safe):
        return None
    return safe


def is_valid_ip(value) -> bool:
    try:
        ipaddress.ip_address(str(value).strip())
    except ValueError:
        return False
    return True


def is_valid_ddns_host(value) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    return _DDNS_RE.match(value.strip()) is not None


def random_label(length: int = 4) -> str:
    """Random lowercase letters."""
    return "".join(random.choice(string.ascii_lowercase) for _ in range(length))


def webfig_label(name: str) -> str:
    """Letters of the device name, lowercased, at most 12 (default 'router')."""
    letters = re.sub(r"[^a-z]", "", str(name or "").lower())
    return letters[:12] or "router"


def generate_webfig_host(name: str, base_domain: str) -> str:
    return f"{webfig_label(name)}{random_label(4)}.{base_domain}"


def generate_session_token() -> str:
    return secrets.token_hex(16)


def generate_api_user(prefix: str = "fleet") -> str:
    return f"{prefix}-{secrets.token_hex(3)}"


def generate_secret(nbytes: int = 6) -> str:
    return secrets.token_hex(nbytes)


def generate_radius_client_name(tenant_id: str) -> str:
    return f"rad-{sanitize_name(tenant_id)[:6]}-{secrets.token_hex(3)}"


def fallback_device_name() -> str:
    return f"Router-{random.randint(1, 999)}"
