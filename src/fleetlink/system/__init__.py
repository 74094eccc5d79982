"""
Host configuration for fleetlink.

Provides:
- Privileged command execution (sudo)
- WireGuard peer synchronization
- nginx reverse proxy sites
- FreeRADIUS client registration
"""

from fleetlink.system.commands import CommandError, CommandResult, PrivilegedRunner
from fleetlink.system.nginx import ReverseProxyProvisioner
from fleetlink.system.radius import RadiusRegistrar
from fleetlink.system.wireguard import SyncResult, TunnelSynchronizer

__all__ = [
    "CommandError",
    "CommandResult",
    "PrivilegedRunner",
    "ReverseProxyProvisioner",
    "RadiusRegistrar",
    "SyncResult",
    "TunnelSynchronizer",
]
