"""
Core fleetlink components.

This module contains the agent, configuration, and service management.
"""

from fleetlink.core.agent import FleetAgent
from fleetlink.core.config import Config, load_config
from fleetlink.core.service import ServiceManager

__all__ = [
    "FleetAgent",
    "Config",
    "load_config",
    "ServiceManager",
]
