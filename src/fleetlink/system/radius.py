"""
FreeRADIUS client registration.

Routers in RADIUS mode must be declared as clients (NAS) of the AAA
server. Entries live in clients.conf; the first readable candidate path
is used.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Tuple

from fleetlink.core.config import RadiusConfig
from fleetlink.provisioning.naming import is_valid_ip, sanitize_name
from fleetlink.system.commands import CommandError, PrivilegedRunner
from fleetlink.system.wireguard import SyncResult

logger = logging.getLogger(__name__)

_SECRET_RE = re.compile(r"^[A-Za-z0-9._~+-]+$")
_IPADDR_RE = re.compile(r"ipaddr\s*=\s*([^\s#]+)", re.IGNORECASE)


@dataclass
class ClientBlock:
    """Location of a client block inside clients.conf."""
    text: str
    start: int
    end: int

    @property
    def ipaddr(self) -> Optional[str]:
        match = _IPADDR_RE.search(self.text)
        return match.group(1).strip() if match else None


def build_client_block(name: str, ip: str, secret: str,
                       shortname: str = "", description: str = "") -> str:
    lines = [
        f"client {sanitize_name(name)} {{",
        f"    ipaddr = {ip}",
        f"    secret = {secret}",
        "    require_message_authenticator = yes",
    ]
    if shortname and sanitize_name(shortname):
        lines.append(f"    shortname = {sanitize_name(shortname)}")
    if description and sanitize_name(description):
        lines.append(f"    description = {sanitize_name(description)}")
    lines.append("}")
    return "\n".join(lines)


def find_client_block(content: str, name: str) -> Optional[ClientBlock]:
    match = re.search(rf"client\s+{re.escape(name)}\s*\{{[\s\S]*?\}}", content, re.IGNORECASE)
    if not match:
        return None
    return ClientBlock(text=match.group(0), start=match.start(), end=match.end())


def has_ip(content: str, ip: str) -> bool:
    return re.search(rf"\bipaddr\s*=\s*{re.escape(ip)}\b", content, re.IGNORECASE) is not None


class RadiusRegistrar:
    """Adds, refreshes and removes AAA client entries."""

    def __init__(self, runner: PrivilegedRunner, config: RadiusConfig):
        self.runner = runner
        self.config = config

    async def _read(self) -> Tuple[Optional[str], str, str]:
        """Return (path, content, error) for the first readable clients.conf."""
        last_error = "no candidate paths configured"
        for path in self.config.clients_conf_paths:
            try:
                return path, await self.runner.read_file(path), ""
            except CommandError as e:
                last_error = str(e)
        return None, "", last_error

    async def _write(self, path: str, content: str) -> None:
        tmp_path = self.runner.write_temp(content, prefix="clients-")
        try:
            try:
                await self.runner.install(tmp_path, path, "640")
            except CommandError as e:
                logger.warning(f"install into {path} failed, copying instead: {e}")
                await self.runner.copy(tmp_path, path)
        finally:
            self.runner.remove_temp(tmp_path)
        await self.runner.systemctl("reload", self.config.service_name)

    async def ensure_client(
        self,
        name: str,
        ip: str,
        secret: str,
        shortname: str = "",
        description: str = "",
    ) -> SyncResult:
        """Register a client. An existing name or IP is success without change,
        except that an existing name with a different IP is refreshed when
        no other client holds that IP."""
        safe_name = sanitize_name(name)
        if not safe_name or not ip or not secret:
            return SyncResult(success=False, message="Missing RADIUS client data")
        if safe_name != name:
            return SyncResult(success=False, message=f"Invalid RADIUS client name: {name!r}")
        if not is_valid_ip(ip):
            return SyncResult(success=False, message=f"Invalid RADIUS client IP: {ip!r}")
        if not _SECRET_RE.match(secret):
            return SyncResult(success=False, message="Invalid RADIUS client secret")

        path, content, error = await self._read()
        if path is None:
            logger.error(f"Failed to read RADIUS clients.conf: {error}")
            return SyncResult(success=False, message="Failed to read RADIUS clients.conf")

        existing = find_client_block(content, name)
        if existing is not None:
            if existing.ipaddr != ip:
                return await self.update_client_ip(name, ip)
            return SyncResult(success=True, message="RADIUS client already exists")
        if has_ip(content, ip):
            return SyncResult(success=True, message="RADIUS client already exists")

        block = build_client_block(name, ip, secret, shortname, description)
        try:
            await self._write(path, f"{content.strip()}\n\n{block}\n")
        except (CommandError, OSError) as e:
            logger.error(f"Failed to add RADIUS client {name}: {e}")
            return SyncResult(success=False, message="Failed to write RADIUS clients.conf")

        logger.info(f"Added RADIUS client {name} ({ip})")
        return SyncResult(success=True, changed=True, message="RADIUS client added")

    async def update_client_ip(self, name: str, ip: str) -> SyncResult:
        if not name or not ip:
            return SyncResult(success=False, message="Missing client name or ip")
        if not is_valid_ip(ip):
            return SyncResult(success=False, message=f"Invalid RADIUS client IP: {ip!r}")

        path, content, error = await self._read()
        if path is None:
            logger.error(f"Failed to read RADIUS clients.conf: {error}")
            return SyncResult(success=False, message="Failed to read RADIUS clients.conf")

        found = find_client_block(content, name)
        if found is None:
            return SyncResult(success=False, message="RADIUS client not found")
        if found.ipaddr == ip:
            return SyncResult(success=True, message="RADIUS client IP unchanged")
        if has_ip(content[:found.start] + content[found.end:], ip):
            logger.warning(f"Not moving RADIUS client {name} to {ip}: address belongs to another client")
            return SyncResult(success=False, message="RADIUS client IP already used by another client")

        block = _IPADDR_RE.sub(f"ipaddr = {ip}", found.text, count=1)
        updated = content[:found.start] + block + content[found.end:]
        try:
            await self._write(path, updated)
        except (CommandError, OSError) as e:
            logger.error(f"Failed to update RADIUS client {name}: {e}")
            return SyncResult(success=False, message="Failed to update RADIUS clients.conf")

        logger.info(f"RADIUS client {name} moved from {found.ipaddr} to {ip}")
        return SyncResult(success=True, changed=True, message="RADIUS client IP updated")

    async def remove_client(self, name: str) -> SyncResult:
        if not name:
            return SyncResult(success=False, message="Missing client name")

        path, content, error = await self._read()
        if path is None:
            logger.error(f"Failed to read RADIUS clients.conf: {error}")
            return SyncResult(success=False, message="Failed to read RADIUS clients.conf")

        found = find_client_block(content, name)
        if found is None:
            return SyncResult(success=True, message="RADIUS client not found")

        before = content[:found.start].rstrip()
        after = content[found.end:].lstrip()
        updated = re.sub(r"\n{3,}", "\n\n", f"{before}\n\n{after}\n").strip() + "\n"
        try:
            await self._write(path, updated)
        except (CommandError, OSError) as e:
            logger.error(f"Failed to remove RADIUS client {name}: {e}")
            return SyncResult(success=False, message="Failed to update RADIUS clients.conf")

        logger.info(f"Removed RADIUS client {name}")
        return SyncResult(success=True, changed=True, message="RADIUS client removed")
