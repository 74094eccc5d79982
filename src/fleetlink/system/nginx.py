"""
Reverse proxy sites for router web management.

Each station gets an nginx server block mapping its public management
hostname to the router's tunnel address.
"""

import logging
from pathlib import Path

from fleetlink.core.config import ProxyConfig
from fleetlink.provisioning.naming import sanitize_domain
from fleetlink.system.commands import CommandError, PrivilegedRunner
from fleetlink.system.wireguard import SyncResult

logger = logging.getLogger(__name__)


def build_site_config(domain: str, target_url: str) -> str:
    return "\n".join([
        "server {",
        "    listen 80;",
        f"    server_name {domain};",
        "",
        "    location / {",
        f"        proxy_pass {target_url};",
        "        proxy_http_version 1.1;",
        "",
        "        proxy_set_header Host $host;",
        "        proxy_set_header X-Real-IP $remote_addr;",
        "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
        "        proxy_set_header X-Forwarded-Proto $scheme;",
        "",
        "        proxy_set_header Upgrade $http_upgrade;",
        "        proxy_set_header Connection \"upgrade\";",
        "    }",
        "}",
        "",
    ])


class ReverseProxyProvisioner:
    """Adds nginx sites and optional certificates."""

    def __init__(self, runner: PrivilegedRunner, config: ProxyConfig):
        self.runner = runner
        self.config = config

    async def add_site(self, domain: str, target_url: str) -> SyncResult:
        """Create and enable a proxy site. An existing site is left alone."""
        safe_domain = sanitize_domain(domain)
        if not safe_domain:
            return SyncResult(success=False, message="Invalid domain provided.")

        available = str(Path(self.config.sites_available) / safe_domain)
        enabled = str(Path(self.config.sites_enabled) / safe_domain)

        try:
            if await self.runner.exists(available):
                logger.info(f"Proxy site {safe_domain} already exists")
                return SyncResult(success=True, message=f"Nginx site already exists for {safe_domain}")
        except CommandError as e:
            return SyncResult(success=False, message=f"Failed to configure nginx for {safe_domain}: {e}")

        try:
            tmp_path = self.runner.write_temp(build_site_config(safe_domain, target_url),
                                              prefix=f"nginx-{safe_domain}-")
        except OSError as e:
            logger.error(f"Failed to stage proxy site {safe_domain}: {e}")
            return SyncResult(success=False, message=f"Failed to configure nginx for {safe_domain}: {e}")
        try:
            await self.runner.install(tmp_path, available, "644")
            await self.runner.link(available, enabled)
        except CommandError as e:
            logger.error(f"Failed to install proxy site {safe_domain}: {e}")
            return SyncResult(success=False, message=f"Failed to configure nginx for {safe_domain}: {e}")
        finally:
            self.runner.remove_temp(tmp_path)

        try:
            await self.runner.run(self.config.nginx_binary, "-t")
        except CommandError as e:
            logger.error(f"nginx rejected site {safe_domain}, removing it: {e}")
            await self._remove_site(available, enabled)
            return SyncResult(success=False, message=f"Failed to configure nginx for {safe_domain}: {e}")

        try:
            await self.runner.systemctl("reload", self.config.service_name)
        except CommandError as e:
            logger.error(f"nginx reload failed: {e}")
            return SyncResult(success=False, changed=True,
                              message=f"Failed to configure nginx for {safe_domain}: {e}")

        logger.info(f"Proxy site {safe_domain} -> {target_url}")
        return SyncResult(success=True, changed=True,
                          message=f"Nginx reverse proxy configured for {safe_domain}")

    async def issue_certificate(self, domain: str, email: str) -> SyncResult:
        """Obtain a Let's Encrypt certificate through certbot's nginx plugin."""
        safe_domain = sanitize_domain(domain)
        if not safe_domain:
            return SyncResult(success=False, message="Invalid domain provided.")

        try:
            await self.runner.run(
                "certbot", "--nginx", "-d", safe_domain,
                "--non-interactive", "--agree-tos", "-m", email,
            )
        except CommandError as e:
            logger.warning(f"Certificate for {safe_domain} failed: {e}")
            return SyncResult(success=False, message=f"SSL installation failed for {safe_domain}")

        return SyncResult(success=True, changed=True, message=f"SSL installed for {safe_domain}")

    async def _remove_site(self, available: str, enabled: str) -> None:
        for path in (enabled, available):
            try:
                await self.runner.remove(path)
            except CommandError as e:
                logger.error(f"Could not remove {path}: {e}")
