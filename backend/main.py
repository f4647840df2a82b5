import os
import sys
import signal
import logging
import asyncio
from dataclasses import dataclass
from typing import List, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

import design_tools
import plugin_bundle
from bridge_server import CommandBridge, DEFAULT_PORT, set_bridge
from command_queue import CommandQueue, RetentionPolicy
from design_document import DesignDocument
from design_executor import DesignExecutor, ExecutorConfig
from design_handlers import DesignHandlers

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='[%(asctime)s] [bridge] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%dT%H:%M:%S'
)
logger = logging.getLogger(__name__)

MODE_BRIDGE = "bridge"
MODE_EXECUTOR = "executor"
MODE_ALL = "all"
MODES = (MODE_BRIDGE, MODE_EXECUTOR, MODE_ALL)


@dataclass
class BridgeSettings:
    host: str = "localhost"
    port: int = DEFAULT_PORT
    max_port_attempts: int = 10
    bridge_url: Optional[str] = None
    mode: str = MODE_BRIDGE
    retention_seconds: Optional[float] = 600.0
    retention_max: Optional[int] = 1000
    lease_seconds: float = 30.0
    poll_interval: float = 1.0
    forget_delay: float = 5.0
    use_leases: bool = False
    export_plugin: Optional[str] = None

    @property
    def executor_url(self) -> str:
        if self.bridge_url:
            return self.bridge_url
        # Wildcard binds are still reachable on loopback
        host = "localhost" if self.host in ("", "0.0.0.0", "::") else self.host
        return f"http://{host}:{self.port}"


def _env_number(name: str, default, cast=float):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid {name}={raw!r}, using {default}")
        return default


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _optional_limit(value):
    # Zero or negative disables that retention limit
    return value if value and value > 0 else None


def get_config(argv: Optional[List[str]] = None) -> BridgeSettings:
    """Get configuration from environment variables or CLI args"""
    settings = BridgeSettings(
        host=os.getenv("BRIDGE_HOST", "localhost"),
        port=_env_number("BRIDGE_PORT", DEFAULT_PORT, int),
        max_port_attempts=_env_number("BRIDGE_MAX_PORT_ATTEMPTS", 10, int),
        bridge_url=os.getenv("BRIDGE_URL") or None,
        mode=os.getenv("BRIDGE_MODE", MODE_BRIDGE),
        retention_seconds=_optional_limit(_env_number("COMMAND_RETENTION_SECONDS", 600.0)),
        retention_max=_optional_limit(_env_number("COMMAND_RETENTION_MAX", 1000, int)),
        lease_seconds=_env_number("COMMAND_LEASE_SECONDS", 30.0),
        poll_interval=_env_number("EXECUTOR_POLL_INTERVAL", 1.0),
        forget_delay=_env_number("EXECUTOR_FORGET_DELAY", 5.0),
        use_leases=_env_flag("EXECUTOR_USE_LEASES", False),
    )

    # Parse CLI args for overrides
    args = sys.argv[1:] if argv is None else argv
    for arg in args:
        if arg.startswith("--host="):
            settings.host = arg.split("=", 1)[1]
        elif arg.startswith("--port="):
            settings.port = int(arg.split("=", 1)[1])
        elif arg.startswith("--bridge-url="):
            settings.bridge_url = arg.split("=", 1)[1]
        elif arg.startswith("--mode="):
            settings.mode = arg.split("=", 1)[1]
        elif arg.startswith("--export-plugin="):
            settings.export_plugin = arg.split("=", 1)[1]
        elif arg == "--use-leases":
            settings.use_leases = True
        else:
            logger.warning(f"Ignoring unknown argument: {arg}")

    if settings.mode not in MODES:
        logger.error(f"Unknown mode {settings.mode!r}, expected one of {', '.join(MODES)}")
        sys.exit(1)

    return settings


def discover_tools() -> list:
    """Collect the agent tool objects defined in design_tools."""
    tools = []
    seen = set()
    for attr_name in dir(design_tools):
        if attr_name.startswith("_") or attr_name == "logger":
            continue
        attr = getattr(design_tools, attr_name)
        # Tool objects carry a name and a JSON schema for their parameters
        if isinstance(attr, type) or not hasattr(attr, "params_json_schema"):
            continue
        name = getattr(attr, "name", None)
        if isinstance(name, str) and name not in seen:
            tools.append(attr)
            seen.add(name)
    return tools


class BridgeService:
    """Runs the relay, a headless executor, or both, until shutdown."""

    def __init__(self, settings: BridgeSettings):
        self.settings = settings
        self.running = True
        self.reconnect_delay = 1  # Start with 1 second
        self.max_reconnect_delay = 30  # Max 30 seconds
        self.bridge: Optional[CommandBridge] = None
        self.executor: Optional[DesignExecutor] = None
        self.document: Optional[DesignDocument] = None
        self.tools = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        if not self.running:
            return
        try:
            if self.settings.mode in (MODE_BRIDGE, MODE_ALL):
                await self.start_bridge()
            if self.settings.mode in (MODE_EXECUTOR, MODE_ALL):
                await self.start_executor()
            await self._stop_event.wait()
        finally:
            await self.stop()

    async def start_bridge(self) -> int:
        queue = CommandQueue(RetentionPolicy(
            max_age_seconds=self.settings.retention_seconds,
            max_commands=self.settings.retention_max,
        ))
        self.bridge = CommandBridge(
            queue,
            host=self.settings.host,
            max_port_attempts=self.settings.max_port_attempts,
            lease_seconds=self.settings.lease_seconds,
            plugin_use_leases=self.settings.use_leases,
        )
        port = await self.bridge.start(self.settings.port)
        set_bridge(self.bridge)
        if port != self.settings.port and not self.settings.bridge_url:
            self.settings.port = port

        self.tools = discover_tools()
        logger.info(f"🧰 Loaded {len(self.tools)} tools: {', '.join(t.name for t in self.tools)}")
        logger.info(f"📦 Plugin code available at http://localhost:{port}/plugin")
        return port

    async def start_executor(self) -> None:
        self.document = DesignDocument()
        config = ExecutorConfig(
            bridge_url=self.settings.executor_url,
            poll_interval=self.settings.poll_interval,
            forget_delay=self.settings.forget_delay,
            use_leases=self.settings.use_leases,
            lease_seconds=self.settings.lease_seconds,
        )
        self.executor = DesignExecutor(DesignHandlers(self.document), config)
        while self.running:
            if await self.executor.connect():
                self.reconnect_delay = 1
                return
            logger.info(f"Reconnecting in {self.reconnect_delay} seconds...")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.reconnect_delay)
            except asyncio.TimeoutError:
                pass
            # Exponential backoff up to max delay
            self.reconnect_delay = min(self.reconnect_delay * 2, self.max_reconnect_delay)

    async def stop(self) -> None:
        if self.executor is not None:
            await self.executor.disconnect()
        if self.bridge is not None:
            await self.bridge.stop()
            set_bridge(None)

    def shutdown(self) -> None:
        """Graceful shutdown; safe to call from a signal handler."""
        logger.info("Shutting down command bridge service")
        self.running = False
        if self._loop is not None and self._stop_event is not None:
            self._loop.call_soon_threadsafe(self._stop_event.set)


def main():
    settings = get_config()

    if settings.export_plugin:
        plugin_bundle.export_plugin_package(settings.export_plugin, settings.port, use_leases=settings.use_leases)
        return

    logger.info(f"Starting design command bridge")
    logger.info(f"Mode: {settings.mode}")
    logger.info(f"Port: {settings.port}")
    if settings.mode != MODE_BRIDGE:
        logger.info(f"Executor target: {settings.executor_url}")

    service = BridgeService(settings)

    # Handle shutdown signals
    def signal_handler(signum, frame):
        logger.info("Received shutdown signal")
        service.shutdown()

    # Register signal handlers
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        logger.info("Service interrupted")


if __name__ == "__main__":
    main()
