"""
Device channel gateway for fleetlink.

Opens authenticated RouterOS API sessions to routers over the tunnel.
The routeros_api client is blocking, so every call runs in the event
loop's default executor.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import routeros_api
from routeros_api.exceptions import RouterOsApiError

logger = logging.getLogger(__name__)


class DeviceError(Exception):
    """A device command failed or the channel broke."""


class DeviceConnectionError(DeviceError):
    """Connecting or authenticating to a device failed."""


def parse_command(command_path: str) -> Tuple[str, str]:
    """
    Split a command path into resource path and command.

    "/ip/address/print" -> ("/ip/address", "print")
    "/ping" -> ("/", "ping")
    """
    path = "/" + command_path.strip().strip("/")
    resource, _, command = path.rpartition("/")
    if not command:
        raise ValueError(f"Invalid command path: {command_path!r}")
    return resource or "/", command


def parse_words(args: Optional[Sequence[str]]) -> Tuple[Dict[str, str], Dict[str, str]]:
    """
    Split API words into attribute and query dictionaries.

    "=name=x" is an attribute, "?name=x" a query.
    """
    arguments: Dict[str, str] = {}
    queries: Dict[str, str] = {}

    for word in args or ():
        if word.startswith("="):
            key, _, value = word[1:].partition("=")
            arguments[key] = value
        elif word.startswith("?"):
            key, _, value = word[1:].partition("=")
            queries[key] = value
        else:
            raise ValueError(f"Invalid API word: {word!r}")

    return arguments, queries


class DeviceChannel:
    """
    An authenticated API session to one router.

    A transport failure closes the channel; closed channels must not be
    reused.
    """

    def __init__(self, host: str, pool: Any, api: Any):
        self.host = host
        self._pool = pool
        self._api = api
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def execute(
        self,
        command_path: str,
        args: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, str]]:
        """
        Run a command and return its reply rows.

        Rows keep the RouterOS ``.id`` key; it is also exposed as ``id``.

        Raises:
            DeviceError: the channel is closed or the command failed.
        """
        if self._closed:
            raise DeviceError(f"Channel to {self.host} is closed")

        resource_path, command = parse_command(command_path)
        arguments, queries = parse_words(args)
        logger.debug(f"{self.host}: {resource_path}/{command}")

        def _call():
            resource = self._api.get_resource(resource_path)
            return resource.call(command, arguments, queries)

        loop = asyncio.get_event_loop()
        try:
            response = await loop.run_in_executor(None, _call)
        except RouterOsApiError as e:
            raise DeviceError(f"{command_path} failed on {self.host}: {e}")
        except (OSError, EOFError) as e:
            self._closed = True
            raise DeviceError(f"Connection to {self.host} lost: {e}")

        rows = []
        for row in response or []:
            row = dict(row)
            if ".id" in row:
                row.setdefault("id", row[".id"])
            rows.append(row)
        return rows

    async def close(self) -> None:
        """Close the session. Never raises."""
        if self._closed:
            return
        self._closed = True

        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, self._pool.disconnect)
        except Exception as e:
            logger.debug(f"Ignoring close error for {self.host}: {e}")


class DeviceGateway:
    """Opens device channels with a bounded connect timeout."""

    def __init__(self, port: int = 8728, timeout: float = 3.0, use_ssl: bool = False):
        self.port = port
        self.timeout = timeout
        self.use_ssl = use_ssl

    def _open(self, host: str, username: str, password: str):
        pool = routeros_api.RouterOsApiPool(
            host,
            username=username,
            password=password,
            port=self.port,
            use_ssl=self.use_ssl,
            plaintext_login=True,
        )
        return pool, pool.get_api()

    async def connect(self, host: str, username: str, password: str) -> DeviceChannel:
        """
        Open a channel to ``host``.

        Raises:
            DeviceConnectionError: connect/auth failed or timed out.
        """
        loop = asyncio.get_event_loop()
        future = loop.run_in_executor(None, self._open, host, username, password)

        try:
            pool, api = await asyncio.wait_for(asyncio.shield(future), timeout=self.timeout)
        except asyncio.TimeoutError:
            # The login thread may still finish; drop its session when it does
            future.add_done_callback(_disconnect_late)
            raise DeviceConnectionError(f"Timed out connecting to {host}:{self.port}")
        except (RouterOsApiError, OSError) as e:
            raise DeviceConnectionError(f"Failed to connect to {host}:{self.port}: {e}")

        logger.debug(f"Connected to {host}:{self.port}")
        return DeviceChannel(host, pool, api)


def _disconnect_late(future: "asyncio.Future") -> None:
    if future.cancelled() or future.exception() is not None:
        return
    pool, _ = future.result()
    try:
        pool.disconnect()
    except Exception as e:
        logger.debug(f"Ignoring late disconnect error: {e}")


async def ping_from(channel: DeviceChannel, address: str, count: int = 3) -> bool:
    """Ping ``address`` from the device. True if any reply came back."""
    rows = await channel.execute("/ping", [f"=address={address}", f"=count={count}"])
    for row in rows:
        received = row.get("received", "0")
        if received.isdigit() and int(received) > 0:
            return True
        if row.get("time"):
            return True
    return False
