"""
WireGuard server configuration for fleetlink.

Registers a router as a peer of the server tunnel interface. The config
file is parsed into its [Interface] block and [Peer] blocks, duplicates are
collapsed, the router's block is replaced and the interface restarted.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from fleetlink.core.config import TunnelConfig
from fleetlink.system.commands import CommandError, PrivilegedRunner

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of a host configuration change."""
    success: bool
    message: str = ""
    changed: bool = False
    backup_path: Optional[str] = None


@dataclass
class TunnelFile:
    """Parsed tunnel config."""
    interface_block: str = ""
    peer_blocks: List[str] = field(default_factory=list)

    def render(self) -> str:
        blocks = [self.interface_block.strip()] + [b.strip() for b in self.peer_blocks]
        text = "\n\n".join(b for b in blocks if b)
        return re.sub(r"\n{3,}", "\n\n", text).strip() + "\n"


def parse_config(text: str) -> TunnelFile:
    """Split a config into the [Interface] block and the [Peer] blocks."""
    lines = text.replace("\r\n", "\n").split("\n")
    i = 0

    while i < len(lines) and lines[i].strip() != "[Interface]":
        i += 1
    if i == len(lines):
        return TunnelFile()

    start = i
    i += 1
    while i < len(lines) and lines[i].strip() != "[Peer]":
        i += 1
    parsed = TunnelFile(interface_block="\n".join(lines[start:i]).strip())

    while i < len(lines):
        if lines[i].strip() != "[Peer]":
            i += 1
            continue
        start = i
        i += 1
        while i < len(lines) and lines[i].strip() != "[Peer]":
            i += 1
        block = "\n".join(lines[start:i]).strip()
        if block:
            parsed.peer_blocks.append(block)

    return parsed


def get_field(block: str, key: str) -> Optional[str]:
    match = re.search(rf"^\s*{re.escape(key)}\s*=\s*(.+)$", block, re.MULTILINE | re.IGNORECASE)
    return match.group(1).strip() if match else None


def _normalize_allowed(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return ", ".join(part.strip() for part in value.split(","))


def dedupe_peers(blocks: List[str]) -> List[str]:
    """Drop peers repeating an earlier AllowedIPs or PublicKey."""
    seen_allowed = set()
    seen_keys = set()
    kept = []

    for block in blocks:
        allowed = _normalize_allowed(get_field(block, "AllowedIPs"))
        public_key = get_field(block, "PublicKey")

        if allowed and allowed in seen_allowed:
            continue
        if public_key and public_key in seen_keys:
            continue

        if allowed:
            seen_allowed.add(allowed)
        if public_key:
            seen_keys.add(public_key)
        kept.append(block.strip())

    return kept


def build_peer_block(public_key: str, allowed_address: str, endpoint_host: str,
                     endpoint_port: int, keepalive: int) -> str:
    return "\n".join([
        "[Peer]",
        f"PublicKey = {public_key}",
        f"Endpoint = {endpoint_host}:{endpoint_port}",
        f"AllowedIPs = {allowed_address}/32",
        f"PersistentKeepalive = {keepalive}",
    ])


def upsert_peer_text(text: str, public_key: str, allowed_address: str,
                     endpoint_host: str, endpoint_port: int = 13231,
                     keepalive: int = 10) -> Tuple[Optional[str], int]:
    """
    Return the new config text and the number of peers, or (None, 0) when
    the config has no [Interface] block.
    """
    parsed = parse_config(text)
    if not parsed.interface_block:
        return None, 0

    allowed = f"{allowed_address}/32"
    peers = [
        block for block in dedupe_peers(parsed.peer_blocks)
        if get_field(block, "PublicKey") != public_key
        and get_field(block, "AllowedIPs") != allowed
    ]
    peers.append(build_peer_block(public_key, allowed_address, endpoint_host,
                                  endpoint_port, keepalive))
    parsed.peer_blocks = peers
    return parsed.render(), len(peers)


class TunnelSynchronizer:
    """Keeps the server's WireGuard peer list in step with stations."""

    def __init__(self, runner: PrivilegedRunner, config: TunnelConfig):
        self.runner = runner
        self.config = config

    async def upsert_peer(self, public_key: str, allowed_address: str,
                          endpoint_host: str) -> SyncResult:
        """
        Add or replace the peer for a router and restart the interface.

        If the restart fails the previous file is reinstalled and the
        interface restarted again; the result is still a failure.
        """
        if not public_key or not allowed_address or not endpoint_host:
            return SyncResult(success=False, message="Missing WireGuard peer data.")

        path = self.config.config_path
        name = self.config.interface_name
        service = self.config.service_name
        logger.info(f"Updating {name} peer for {allowed_address} (endpoint {endpoint_host})")

        try:
            current = await self.runner.read_file(path)
        except CommandError as e:
            logger.error(f"Cannot read {path}: {e}")
            return SyncResult(success=False, message=f"WireGuard update failed: {e}")

        new_text, peer_count = upsert_peer_text(
            current, public_key, allowed_address, endpoint_host,
            endpoint_port=self.config.device_listen_port,
            keepalive=self.config.keepalive,
        )
        if new_text is None:
            return SyncResult(success=False, message=f"{name}.conf missing [Interface] block.")

        backup_path = f"{path}.bak-{int(time.time() * 1000)}"
        try:
            await self.runner.copy(path, backup_path, preserve=True)
        except CommandError as e:
            logger.error(f"Cannot back up {path}: {e}")
            return SyncResult(success=False, message=f"WireGuard update failed: {e}")

        try:
            tmp_path = self.runner.write_temp(new_text, prefix=f"{name}-")
        except OSError as e:
            logger.error(f"Cannot stage {path}: {e}")
            return SyncResult(success=False, message=f"WireGuard update failed: {e}",
                              backup_path=backup_path)
        try:
            await self.runner.install(tmp_path, path, "600", owner="root", group="root")
        except CommandError as e:
            logger.error(f"Cannot install {path}: {e}")
            return SyncResult(success=False, message=f"WireGuard update failed: {e}",
                              backup_path=backup_path)
        finally:
            self.runner.remove_temp(tmp_path)

        try:
            await self.runner.systemctl("restart", service)
        except CommandError as e:
            logger.error(f"Restart of {service} failed, restoring {backup_path}: {e}")
            await self._rollback(backup_path, path, service)
            return SyncResult(
                success=False,
                message=f"WireGuard update failed: {e}",
                changed=False,
                backup_path=backup_path,
            )

        logger.info(f"{name} now has {peer_count} peer(s)")
        return SyncResult(
            success=True,
            message="WireGuard updated and restarted.",
            changed=True,
            backup_path=backup_path,
        )

    async def _rollback(self, backup_path: str, path: str, service: str) -> None:
        try:
            await self.runner.install(backup_path, path, "600", owner="root", group="root")
            await self.runner.systemctl("restart", service)
            logger.info(f"Restored previous {path}")
        except CommandError as e:
            logger.error(f"Rollback of {path} failed: {e}")
