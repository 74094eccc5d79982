"""
fleetlink Agent - Main coordinator for the provisioning server.

The agent wires the components together, runs them as services and
handles the main event loop.
"""

import asyncio
import logging
import signal
import sys
from typing import Any, Dict, Optional

from fleetlink.api.server import ApiServer
from fleetlink.core.config import Config, load_config
from fleetlink.core.service import PeriodicService, ServiceManager
from fleetlink.device.access import RouterAccess
from fleetlink.device.gateway import DeviceGateway
from fleetlink.device.locks import RouterLockManager
from fleetlink.device.pool import ConnectionPool
from fleetlink.provisioning.callback import CallbackHandler
from fleetlink.provisioning.events import SessionEventHub
from fleetlink.provisioning.maintenance import RouterMaintenance
from fleetlink.provisioning.script import ScriptGenerator, ScriptSettings
from fleetlink.provisioning.service import ProvisioningService
from fleetlink.provisioning.sessions import SessionStore
from fleetlink.security.encryption import EncryptionService, PasswordCipher
from fleetlink.security.operators import OperatorAuthenticator
from fleetlink.store import create_store
from fleetlink.store.models import TenantConfig
from fleetlink.system.commands import PrivilegedRunner
from fleetlink.system.nginx import ReverseProxyProvisioner
from fleetlink.system.radius import RadiusRegistrar
from fleetlink.system.wireguard import TunnelSynchronizer

logger = logging.getLogger(__name__)


class FleetAgent:
    """
    Main fleetlink agent that coordinates all components.

    The agent is responsible for:
    - Loading configuration
    - Building the store, device layer and host synchronizers
    - Managing service lifecycle
    - Handling system signals
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[Config] = None):
        """
        Initialize the agent.

        Args:
            config_path: Optional path to configuration file.
            config: Already-loaded configuration (takes precedence).
        """
        self.config: Config = config or load_config(config_path)
        self.service_manager = ServiceManager()

        self._running = False
        self._build()

    def _build(self) -> None:
        config = self.config

        self.store = create_store(config.storage.backend, config.storage.path)
        self.cipher = self._create_cipher()

        self.gateway = DeviceGateway(
            port=config.device.api_port,
            timeout=config.device.connect_timeout,
            use_ssl=config.device.use_ssl,
        )
        self.pool = ConnectionPool(
            self.store, self.gateway, self.cipher,
            idle_seconds=config.device.pool_idle_seconds,
            sweep_interval=config.device.sweep_interval_seconds,
        )
        self.locks = RouterLockManager()
        self.access = RouterAccess(self.pool, self.locks)

        self.sessions = SessionStore(ttl_seconds=config.provisioning.session_ttl_seconds)
        self.events = SessionEventHub()

        runner = PrivilegedRunner(
            use_sudo=config.system.use_sudo,
            temp_dir=config.system.temp_dir,
            timeout=config.system.command_timeout,
        )
        callback = CallbackHandler(
            self.store,
            self.sessions,
            self.cipher,
            tunnel=TunnelSynchronizer(runner, config.tunnel),
            proxy=ReverseProxyProvisioner(runner, config.proxy),
            radius=RadiusRegistrar(runner, config.radius),
            events=self.events,
            base_domain=config.provisioning.base_domain,
            issue_certificates=config.provisioning.issue_certificates,
            admin_email=config.provisioning.admin_email,
        )
        self.provisioning = ProvisioningService(
            self.store,
            self.sessions,
            ScriptGenerator(ScriptSettings.from_config(config)),
            callback,
            self.events,
            radius_server_address=config.radius.server_address,
            api_user_prefix=config.provisioning.api_user_prefix,
        )
        self.maintenance = RouterMaintenance(self.access, self.store, config)
        self.authenticator = OperatorAuthenticator(config.security.operators)

        self.api = ApiServer(
            self.provisioning,
            self.maintenance,
            self.authenticator,
            host=config.server.host,
            port=config.server.port,
            public_url=config.server.public_url,
            packages_dir=config.server.packages_dir,
            health_info=self.get_status,
        )

        if not config.tunnel.server_public_key:
            logger.warning("No WireGuard server public key configured; scripts will not connect")
        if not len(self.authenticator):
            logger.warning("No operator tokens configured; provisioning cannot be started")

    def _create_cipher(self) -> PasswordCipher:
        secret = self.config.security.encryption_key
        if secret:
            return PasswordCipher.from_secret(secret)
        logger.warning("No encryption key configured; stored passwords will not survive a restart")
        return PasswordCipher(EncryptionService())

    async def _ensure_tenants(self) -> None:
        """Create an active tenant for every operator tenant the store lacks."""
        for entry in self.config.security.operators:
            tenant_id = str(entry.get("tenant_id") or "")
            if not tenant_id or await self.store.get_tenant(tenant_id) is not None:
                continue
            await self.store.save_tenant(TenantConfig(tenant_id=tenant_id, name=tenant_id))
            logger.info(f"Created tenant {tenant_id}")

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}, initiating shutdown...")
        self.service_manager.request_shutdown()

    def _initialize_services(self) -> None:
        """Register services in start order."""
        self.service_manager.register(self.pool)
        self.service_manager.register(PeriodicService(
            "session-janitor",
            self.config.provisioning.purge_interval_seconds,
            self.provisioning.purge_sessions,
        ))
        self.service_manager.register(self.api)

    async def start(self) -> None:
        """Start the agent and block until shutdown."""
        if self._running:
            logger.warning("Agent already running")
            return

        logger.info("Starting fleetlink agent...")
        self._running = True

        try:
            self._setup_signal_handlers()
            await self._ensure_tenants()
            self._initialize_services()

            success = await self.service_manager.start_all()
            if not success:
                logger.error("Failed to start all services")
                self._running = False
                return

            logger.info("fleetlink agent started successfully")
            await self.service_manager.wait_for_shutdown()

        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the agent and all services."""
        if not self._running:
            return

        logger.info("Stopping fleetlink agent...")
        self._running = False

        await self.service_manager.stop_all()
        await self.provisioning.callback.wait_background()

        logger.info("fleetlink agent stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "sessions": len(self.sessions),
            "pooled_connections": len(self.pool),
            "locked_routers": len(self.locks),
            "services": {
                name: status.state.value
                for name, status in self.service_manager.get_status().items()
            },
        }


async def run_agent(config_path: Optional[str] = None) -> None:
    agent = FleetAgent(config_path)
    await agent.start()


def main() -> None:
    """Main entry point for the fleetlink server."""
    import argparse

    parser = argparse.ArgumentParser(description="fleetlink provisioning server")
    parser.add_argument(
        "-c", "--config",
        help="Path to configuration file",
        default=None
    )
    parser.add_argument(
        "-v", "--verbose",
        help="Enable verbose logging",
        action="store_true"
    )
    parser.add_argument(
        "--debug",
        help="Enable debug logging",
        action="store_true"
    )

    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else (logging.INFO if args.verbose else logging.WARNING)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    try:
        asyncio.run(run_agent(args.config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Agent failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
