"""
fleetlink - Zero-touch provisioning for MikroTik router fleets

Enrolls routers over a WireGuard management tunnel and keeps a
connection-pooled, per-router serialized API channel to each of them.

Supports:
- RouterOS 7 devices
- Plain API enrollment or RADIUS (AAA client) enrollment
"""

__version__ = "0.1.0"

from fleetlink.core.agent import FleetAgent
from fleetlink.core.config import Config

__all__ = [
    "FleetAgent",
    "Config",
    "__version__",
]
