"""
Zero-touch router provisioning for fleetlink.

Provides:
- Provisioning sessions keyed by a one-time token
- RouterOS auto-configuration script generation
- Completion callback handling (station registration)
- Session progress events

The orchestration modules (service, callback, maintenance) depend on the
host configuration layer and are imported from their own modules.
"""

from fleetlink.provisioning.events import SessionEventHub
from fleetlink.provisioning.script import EnsureObject, ScriptGenerator, ScriptSettings
from fleetlink.provisioning.sessions import (
    ProvisioningError,
    ProvisioningSession,
    SessionStore,
)

__all__ = [
    "SessionEventHub",
    "EnsureObject",
    "ScriptGenerator",
    "ScriptSettings",
    "ProvisioningError",
    "ProvisioningSession",
    "SessionStore",
]
