"""
Bridge Server - HTTP relay between command producers and the design plugin

Routes:
- GET    /commands                  pending commands + fileKey (polled by the plugin)
- POST   /commands                  enqueue one command or a batch
- DELETE /commands                  clear the queue
- GET    /commands/all              full diagnostic dump
- POST   /commands/claim            lease pending commands to one executor
- POST   /commands/{id}/complete    report result or error
- GET    /health                    reachability probe used before polling
- GET    /plugin[/ui.html|/manifest.json]  generated plugin package

Every response carries open CORS headers because the plugin runs inside
the design tool's sandboxed iframe.
"""

import json
import errno
import logging
from typing import Any, Dict, Optional

from aiohttp import web

import plugin_bundle
from command_queue import CommandQueue, CommandSpecError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3847

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


class BridgePortError(RuntimeError):
    """No free port was found within the configured number of attempts."""


@web.middleware
async def cors_middleware(request: web.Request, handler) -> web.StreamResponse:
    if request.method == "OPTIONS":
        response = web.Response(status=200)
    else:
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            # Unmatched paths and methods both answer 404
            if exc.status in (404, 405):
                response = web.json_response({"error": "Not found"}, status=404)
            else:
                response = web.json_response({"error": exc.reason}, status=exc.status)
        except Exception as e:
            logger.exception(f"❌ Unhandled error serving {request.method} {request.path}: {e}")
            response = web.json_response({"error": "Internal server error"}, status=500)
    response.headers.update(CORS_HEADERS)
    return response


async def _read_json_object(request: web.Request) -> Dict[str, Any]:
    """Parse the request body; empty bodies count as ``{}``."""
    raw = await request.text()
    if not raw.strip():
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("JSON body must be an object")
    return data


class CommandBridge:
    """
    Owns one CommandQueue and exposes it over HTTP.

    Lifecycle: construct -> ``await start(port)`` -> ``await stop()``.
    Several bridges can live in one process; nothing is shared between them.
    """

    def __init__(
        self,
        queue: Optional[CommandQueue] = None,
        host: str = "localhost",
        max_port_attempts: int = 10,
        lease_seconds: float = 30.0,
        plugin_use_leases: bool = False,
    ):
        self.queue = queue or CommandQueue()
        self.host = host
        self.max_port_attempts = max(1, max_port_attempts)
        self.lease_seconds = lease_seconds
        self.plugin_use_leases = plugin_use_leases
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._port: Optional[int] = None
        self.app = self._build_app()

    def _build_app(self) -> web.Application:
        app = web.Application(middlewares=[cors_middleware])
        app.router.add_get("/commands", self.handle_list_pending)
        app.router.add_post("/commands", self.handle_enqueue)
        app.router.add_delete("/commands", self.handle_clear)
        app.router.add_get("/commands/all", self.handle_list_all)
        app.router.add_post("/commands/claim", self.handle_claim)
        app.router.add_post("/commands/{command_id}/complete", self.handle_complete)
        app.router.add_get("/health", self.handle_health)
        app.router.add_get("/plugin", self.handle_plugin_code)
        app.router.add_get("/plugin/ui.html", self.handle_plugin_ui)
        app.router.add_get("/plugin/manifest.json", self.handle_plugin_manifest)
        return app

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def current_port(self) -> Optional[int]:
        return self._port if self._site is not None else None

    @property
    def is_running(self) -> bool:
        return self._site is not None

    async def start(self, port: int = DEFAULT_PORT) -> int:
        """Bind the relay, moving to the next port while the current one is taken."""
        if self._site is not None:
            return self._port

        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()

        for attempt in range(self.max_port_attempts):
            candidate = port + attempt
            site = web.TCPSite(self._runner, self.host, candidate)
            try:
                await site.start()
            except OSError as e:
                if e.errno != errno.EADDRINUSE:
                    await self._runner.cleanup()
                    self._runner = None
                    raise
                logger.warning(f"🚧 Port {candidate} in use, trying {candidate + 1}")
                continue
            self._site = site
            self._port = candidate if candidate else self._runner.addresses[0][1]
            logger.info(f"🌉 Command bridge server started on http://{self.host}:{self._port}")
            return self._port

        await self._runner.cleanup()
        self._runner = None
        raise BridgePortError(
            f"No free port for the command bridge in {port}-{port + self.max_port_attempts - 1}"
        )

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        self._site = None
        logger.info("🛑 Command bridge server stopped")

    # ------------------------------------------------------------------
    # Route handlers
    # ------------------------------------------------------------------

    async def handle_list_pending(self, request: web.Request) -> web.Response:
        pending = self.queue.list_pending()
        logger.debug(f"📤 Serving {len(pending)} pending command(s)")
        return web.json_response({
            "fileKey": self.queue.file_key,
            "commands": [c.to_dict() for c in pending],
        })

    async def handle_list_all(self, request: web.Request) -> web.Response:
        return web.json_response(self.queue.list_all())

    async def handle_enqueue(self, request: web.Request) -> web.Response:
        try:
            data = await _read_json_object(request)
        except ValueError:
            return web.json_response({"success": False, "error": "Invalid JSON"}, status=400)

        try:
            if "commands" in data:
                specs = data.get("commands")
                if not isinstance(specs, list):
                    raise CommandSpecError("'commands' must be a list")
                commands = self.queue.enqueue_batch(data.get("fileKey"), specs)
            else:
                commands = [self.queue.enqueue(data)]
        except CommandSpecError as e:
            return web.json_response({"success": False, "error": str(e)}, status=400)

        return web.json_response(
            {"success": True, "commands": [c.to_dict() for c in commands]},
            status=201,
        )

    async def handle_claim(self, request: web.Request) -> web.Response:
        try:
            data = await _read_json_object(request)
        except ValueError:
            return web.json_response({"success": False, "error": "Invalid JSON"}, status=400)

        lease_seconds = data.get("leaseSeconds", self.lease_seconds)
        limit = data.get("limit")
        if not isinstance(lease_seconds, (int, float)) or isinstance(lease_seconds, bool) or lease_seconds <= 0:
            return web.json_response({"success": False, "error": "'leaseSeconds' must be a positive number"}, status=400)
        if limit is not None and (not isinstance(limit, int) or isinstance(limit, bool) or limit < 0):
            return web.json_response({"success": False, "error": "'limit' must be a non-negative integer"}, status=400)

        claimed = self.queue.claim(lease_seconds=lease_seconds, limit=limit)
        return web.json_response({
            "fileKey": self.queue.file_key,
            "leaseId": claimed[0].lease_id if claimed else None,
            "commands": [c.to_dict() for c in claimed],
        })

    async def handle_complete(self, request: web.Request) -> web.Response:
        command_id = request.match_info["command_id"]
        try:
            data = await _read_json_object(request)
        except ValueError:
            logger.warning(f"⚠️ Malformed completion report for {command_id}")
            return web.json_response({"success": False, "error": "Invalid JSON"}, status=400)

        existing = self.queue.get(command_id)
        already_completed = existing is not None and existing.is_terminal

        found = self.queue.complete(command_id, data.get("result"), data.get("error"))
        if not found:
            return web.json_response({"success": False}, status=404)
        if already_completed:
            return web.json_response({"success": True, "alreadyCompleted": True})
        return web.json_response({"success": True})

    async def handle_clear(self, request: web.Request) -> web.Response:
        self.queue.clear()
        return web.json_response({"success": True})

    async def handle_health(self, request: web.Request) -> web.Response:
        counts = self.queue.counts()
        return web.json_response({
            "status": "ok",
            "pendingCommands": counts["pending"],
            "totalCommands": len(self.queue),
        })

    def _plugin_port(self, request: web.Request) -> int:
        return self.current_port or request.url.port or DEFAULT_PORT

    async def handle_plugin_code(self, request: web.Request) -> web.Response:
        code = plugin_bundle.generate_plugin_code(self._plugin_port(request), use_leases=self.plugin_use_leases)
        return web.Response(text=code, content_type="application/javascript")

    async def handle_plugin_ui(self, request: web.Request) -> web.Response:
        return web.Response(text=plugin_bundle.generate_plugin_ui(self._plugin_port(request)), content_type="text/html")

    async def handle_plugin_manifest(self, request: web.Request) -> web.Response:
        return web.Response(text=plugin_bundle.generate_manifest(), content_type="application/json")


# Process-wide bridge used by the agent tools (set by main.py)
_bridge: Optional[CommandBridge] = None


def set_bridge(bridge: Optional[CommandBridge]) -> None:
    """Set the process-wide bridge instance."""
    global _bridge
    _bridge = bridge


def get_bridge() -> CommandBridge:
    """Get the process-wide bridge instance."""
    if _bridge is None:
        raise RuntimeError("Command bridge not initialized. Call set_bridge() first.")
    return _bridge
