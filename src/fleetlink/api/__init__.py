"""
HTTP API for fleetlink.
"""

from fleetlink.api.server import ApiServer

__all__ = ["ApiServer"]
