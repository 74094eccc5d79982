"""
Service lifecycle for fleetlink.

Background loops (pool sweep, session purge) and the HTTP API run as
services started in registration order and stopped in reverse.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class ServiceState(Enum):
    """Service lifecycle states."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStatus:
    """Status information for a service."""
    name: str
    state: ServiceState
    error: Optional[str] = None
    uptime_seconds: float = 0


class Service(ABC):
    """Abstract base class for all fleetlink services."""

    def __init__(self, name: str):
        self.name = name
        self._state = ServiceState.STOPPED
        self._error: Optional[str] = None
        self._start_time: Optional[float] = None

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    @abstractmethod
    async def start(self) -> None:
        """Start the service."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop the service."""

    def get_status(self) -> ServiceStatus:
        """Get current service status."""
        uptime = 0.0
        if self._start_time and self._state == ServiceState.RUNNING:
            uptime = time.time() - self._start_time

        return ServiceStatus(
            name=self.name,
            state=self._state,
            error=self._error,
            uptime_seconds=uptime,
        )

    def _set_state(self, state: ServiceState, error: Optional[str] = None):
        """Update service state."""
        self._state = state
        self._error = error
        if state == ServiceState.RUNNING:
            self._start_time = time.time()
        elif state == ServiceState.STOPPED:
            self._start_time = None


class PeriodicService(Service):
    """
    Runs an async callable on a fixed interval until stopped.

    A failing tick is logged and the loop keeps going.
    """

    def __init__(self, name: str, interval: float, tick: Callable[[], Awaitable[object]]):
        super().__init__(name)
        self.interval = interval
        self._tick = tick
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self._tick()
            except Exception as e:
                logger.error(f"{self.name} tick failed: {e}")


class ServiceManager:
    """Starts, stops and reports on registered services."""

    def __init__(self):
        self._services: Dict[str, Service] = {}
        self._start_order: List[str] = []
        self._shutdown_event = asyncio.Event()

    def register(self, service: Service) -> None:
        """Register a service; services start in registration order."""
        if service.name in self._services:
            raise ValueError(f"Service '{service.name}' already registered")

        self._services[service.name] = service
        self._start_order.append(service.name)
        logger.info(f"Registered service: {service.name}")

    def get_service(self, name: str) -> Optional[Service]:
        """Get a registered service by name."""
        return self._services.get(name)

    async def start_all(self) -> bool:
        """
        Start all registered services in order.

        Returns:
            True if all services started successfully.
        """
        self._shutdown_event.clear()

        for name in self._start_order:
            service = self._services[name]
            try:
                logger.info(f"Starting service: {name}")
                service._set_state(ServiceState.STARTING)
                await service.start()
                service._set_state(ServiceState.RUNNING)
            except Exception as e:
                logger.error(f"Failed to start service '{name}': {e}")
                service._set_state(ServiceState.ERROR, str(e))
                await self.stop_all()
                return False

        logger.info("All services started")
        return True

    async def stop_all(self) -> None:
        """Stop all registered services in reverse order."""
        self._shutdown_event.set()

        for name in reversed(self._start_order):
            service = self._services[name]
            if service.state == ServiceState.STOPPED:
                continue

            try:
                logger.info(f"Stopping service: {name}")
                service._set_state(ServiceState.STOPPING)
                await service.stop()
                service._set_state(ServiceState.STOPPED)
            except Exception as e:
                logger.error(f"Error stopping service '{name}': {e}")
                service._set_state(ServiceState.ERROR, str(e))

    def get_status(self) -> Dict[str, ServiceStatus]:
        """Get status of all services."""
        return {name: svc.get_status() for name, svc in self._services.items()}

    async def wait_for_shutdown(self) -> None:
        """Wait for shutdown signal."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()
