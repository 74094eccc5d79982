"""
HTTP API for fleetlink.

Operator endpoints start provisioning sessions and trigger maintenance;
router endpoints serve the provisioning script and accept its progress
logs and completion callback. Session progress is streamed to operators
over a websocket.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from aiohttp import WSMsgType, web

from fleetlink.core.service import Service
from fleetlink.provisioning.maintenance import RouterMaintenance, RouterStatus
from fleetlink.provisioning.service import ProvisioningService, SessionNotFound
from fleetlink.provisioning.sessions import ProvisioningError
from fleetlink.security.operators import Operator, OperatorAuthenticator

logger = logging.getLogger(__name__)


class ApiServer(Service):
    """aiohttp server exposing provisioning and maintenance."""

    def __init__(
        self,
        provisioning: ProvisioningService,
        maintenance: RouterMaintenance,
        authenticator: OperatorAuthenticator,
        host: str = "0.0.0.0",
        port: int = 8080,
        public_url: str = "",
        packages_dir: str = "",
        health_info=None,
    ):
        super().__init__("api-server")
        self.provisioning = provisioning
        self.maintenance = maintenance
        self.authenticator = authenticator
        self.host = host
        self.port = port
        self.public_url = public_url.rstrip("/")
        self.packages_dir = packages_dir
        self._health_info = health_info
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def create_app(self) -> web.Application:
        app = web.Application()
        self._setup_routes(app)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()
        logger.info(f"API server listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        self._site = None
        logger.info("API server stopped")

    def _setup_routes(self, app: web.Application) -> None:
        app.router.add_post('/provisioning/start', self._handle_start)
        app.router.add_get('/provisioning/script', self._handle_script)
        app.router.add_get('/provisioning/log', self._handle_log)
        app.router.add_get('/provisioning/complete', self._handle_complete)
        app.router.add_get('/provisioning/events', self._handle_events)
        app.router.add_post('/routers/diagnose', self._handle_diagnose)
        app.router.add_post('/routers/configure-aaa', self._handle_configure_aaa)
        app.router.add_get('/health', self._handle_health)
        if self.packages_dir:
            app.router.add_static('/routeros', self.packages_dir, show_index=False)

    async def _read_json(self, request: web.Request) -> Dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            data = await request.json()
        except ValueError:
            raise web.HTTPBadRequest(
                text='{"success": false, "message": "Invalid JSON body"}',
                content_type='application/json',
            )
        return data if isinstance(data, dict) else {}

    def _operator(self, request: web.Request, data: Dict[str, Any]) -> Optional[Operator]:
        token = data.get("token")
        if not token:
            auth = request.headers.get("Authorization", "")
            if auth.lower().startswith("bearer "):
                token = auth[7:].strip()
        return self.authenticator.authenticate(token)

    async def _handle_start(self, request: web.Request) -> web.Response:
        """Start a provisioning session (superusers only)."""
        data = await self._read_json(request)
        if not data.get("token") and "Authorization" not in request.headers:
            return web.json_response({"success": False, "message": "Missing token"}, status=400)

        operator = self._operator(request, data)
        if operator is None:
            return web.json_response({"success": False, "message": "Unauthorised"}, status=401)
        if not operator.is_superuser:
            return web.json_response({"success": False, "message": "Unauthorised!"}, status=403)

        try:
            token = self.provisioning.start(operator, data.get("name", ""), data.get("mode"))
        except Exception as e:
            logger.error(f"Failed to start provisioning session: {e}")
            return web.json_response(
                {"success": False, "message": "Failed to start provisioning session"}, status=500
            )
        return web.json_response({"success": True, "token": token})

    async def _handle_script(self, request: web.Request) -> web.Response:
        """Serve the RouterOS script for a session."""
        query = request.query
        token = query.get("token")
        if not token:
            return web.Response(text="Missing token", status=400)

        server = (query.get("server") or self.public_url or f"{request.scheme}://{request.host}")
        try:
            script = await self.provisioning.render_script(
                token, server.rstrip("/"), name=query.get("name"), mode=query.get("mode"),
            )
        except SessionNotFound:
            return web.Response(text="Invalid session", status=404)
        except ProvisioningError as e:
            logger.warning(f"Script refused: {e}")
            return web.Response(text=str(e), status=400)
        except Exception as e:
            logger.error(f"Failed to generate script: {e}")
            return web.Response(text="Failed to generate script", status=500)

        return web.Response(text=script, content_type='text/plain')

    async def _handle_log(self, request: web.Request) -> web.Response:
        token = request.query.get("token")
        if not token:
            return web.json_response({"success": False, "message": "Missing token"}, status=400)
        if not self.provisioning.log(token, request.query.get("msg", "")):
            return web.json_response({"success": False, "message": "Invalid session"}, status=404)
        return web.json_response({"success": True})

    async def _handle_complete(self, request: web.Request) -> web.Response:
        """Router completion callback."""
        token = request.query.get("token")
        if not token:
            return web.json_response({"success": False, "message": "Missing token"}, status=400)

        result = await self.provisioning.complete(token, request.query)
        if result is None:
            return web.json_response({"success": False, "message": "Invalid session"}, status=404)

        return web.json_response({
            "success": True,
            "saved": result.success,
            "message": result.message,
            "warnings": result.warnings,
        })

    async def _handle_events(self, request: web.Request) -> web.StreamResponse:
        """Stream a session's events over a websocket."""
        token = request.query.get("token")
        if not token:
            return web.json_response({"success": False, "message": "Missing token"}, status=400)
        if self.provisioning.sessions.get(token) is None:
            return web.json_response({"success": False, "message": "Invalid session"}, status=404)

        events = self.provisioning.events
        queue = events.subscribe(token)

        ws = web.WebSocketResponse(heartbeat=30)
        try:
            await ws.prepare(request)
        except Exception:
            events.unsubscribe(token, queue)
            raise

        async def _forward():
            while True:
                message = await queue.get()
                await ws.send_json(message)

        sender = asyncio.create_task(_forward())
        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    logger.debug(f"Event websocket error: {ws.exception()}")
                    break
        finally:
            sender.cancel()
            try:
                await sender
            except (asyncio.CancelledError, ConnectionError):
                pass
            events.unsubscribe(token, queue)

        return ws

    async def _handle_diagnose(self, request: web.Request) -> web.Response:
        data = await self._read_json(request)
        operator = self._operator(request, data)
        if operator is None:
            return web.json_response({"success": False, "message": "Unauthorised"}, status=401)

        host = data.get("host")
        if not host:
            return web.json_response({"success": False, "message": "Missing host"}, status=400)

        diagnosis = await self.maintenance.diagnose(operator.tenant_id, host)
        return web.json_response({
            "success": diagnosis.status == RouterStatus.CONNECTED,
            **diagnosis.to_dict(),
        })

    async def _handle_configure_aaa(self, request: web.Request) -> web.Response:
        data = await self._read_json(request)
        operator = self._operator(request, data)
        if operator is None or not operator.is_superuser:
            return web.json_response({"success": False, "message": "Unauthorized!"}, status=401)

        host = data.get("host")
        if not host:
            return web.json_response({"success": False, "message": "Missing host"}, status=400)

        result = await self.maintenance.configure_aaa(operator.tenant_id, host)
        return web.json_response(
            {"success": result.success, "message": result.message, "changes": result.changes},
            status=400 if result.rejected else 200,
        )

    async def _handle_health(self, request: web.Request) -> web.Response:
        info = self._health_info() if self._health_info else {}
        return web.json_response({"status": "ok", **info})
