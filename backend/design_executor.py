"""
Design Executor - polls the command bridge and runs commands locally

This module manages:
- The connect handshake (a /health probe before any polling starts)
- A sequential poll loop: fetch, dispatch one command at a time, report, sleep
- At-most-once dispatch within a session through a local in-flight set
- Reports that could not be delivered, retried before the next fetch and
  kept across reconnects so their commands never run twice
- Operator notifications for every completion/failure and connection change

Ids leave the in-flight set a grace period after their report was accepted,
so a relay that is slow to update can serve them once more without a rerun.
With ``use_leases`` the executor claims commands instead of reading the
pending list, and the relay rejects duplicate claims itself.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from design_handlers import DesignHandlers, batch_failures

logger = logging.getLogger(__name__)

Notifier = Callable[[str, bool], None]


class ConnectionState(str, Enum):
    """Executor connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class ExecutorConfig:
    """Configuration for the polling executor."""

    bridge_url: str = "http://localhost:3847"
    poll_interval: float = 1.0
    forget_delay: float = 5.0
    use_leases: bool = False
    lease_seconds: float = 30.0
    request_timeout: float = 10.0


def _log_notification(message: str, error: bool = False) -> None:
    if error:
        logger.error(f"🔔 {message}")
    else:
        logger.info(f"🔔 {message}")


class DesignExecutor:
    """
    Remote end of the command bridge.

    Flow:
    1. ``connect()`` probes /health; polling starts only if it answers
    2. Every ``poll_interval`` seconds, fetch commands and run them in order
    3. Skip any id still in the in-flight set
    4. Report ``{result}`` or ``{error}`` back to the relay
    5. ``disconnect()`` stops the loop; only undelivered reports survive it
    """

    def __init__(
        self,
        handlers: DesignHandlers,
        config: Optional[ExecutorConfig] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.handlers = handlers
        self.config = config or ExecutorConfig()
        self.notifier = notifier or _log_notification

        self._state = ConnectionState.DISCONNECTED
        self._session: Optional[aiohttp.ClientSession] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._halted = False
        self._in_flight: set[str] = set()
        self._forget_handles: Dict[str, asyncio.TimerHandle] = {}
        self._unreported: Dict[str, Tuple[str, Dict[str, Any]]] = {}

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def bridge_url(self) -> str:
        return self.config.bridge_url.rstrip("/")

    @property
    def in_flight(self) -> frozenset:
        return frozenset(self._in_flight)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, bridge_url: Optional[str] = None) -> bool:
        """Probe the bridge and start polling.

        Returns:
            True if the bridge answered /health and polling started
        """
        if self.is_connected:
            return True

        url = (bridge_url or self.config.bridge_url).rstrip("/")
        self._state = ConnectionState.CONNECTING
        logger.info(f"Connecting to command bridge at {url}")

        try:
            session = self._ensure_session()
            async with session.get(f"{url}/health") as response:
                if response.status != 200:
                    raise aiohttp.ClientResponseError(
                        response.request_info, response.history, status=response.status, message="Bad response"
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to reach command bridge: {e}")
            self._state = ConnectionState.DISCONNECTED
            await self._close_session()
            self.notifier(f"❌ Connection refused - is the bridge running on {url}?", True)
            return False

        self.config.bridge_url = url
        self._reset_tracking()
        await self._flush_unreported()
        self._halted = False
        self._stop_event.clear()
        self._state = ConnectionState.CONNECTED
        self._poll_task = asyncio.create_task(self._poll_loop())
        self.notifier(f"🔗 Connected to command bridge at {url}", False)
        return True

    async def disconnect(self) -> None:
        """Stop polling. A command already running finishes; nothing new starts."""
        was_connected = self._state != ConnectionState.DISCONNECTED
        self._halted = True
        self._state = ConnectionState.DISCONNECTED
        self._stop_event.set()

        task = self._poll_task
        self._poll_task = None
        if task is not None and task is not asyncio.current_task():
            await task

        self._reset_tracking()
        await self._close_session()
        if was_connected:
            self.notifier("⏹ Disconnected from command bridge", False)

    async def wait_closed(self) -> None:
        """Block until the poll loop ends."""
        if self._poll_task is not None:
            await asyncio.shield(self._poll_task)

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        logger.info("🎧 Poll loop started")
        while self.is_connected:
            try:
                await self.poll_once()
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                # Bridge not available, retry on the next tick
                logger.debug(f"📡 Poll failed, retrying: {e}")

            if not self.is_connected:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("🛑 Poll loop stopped")

    async def poll_once(self) -> int:
        """Run one poll cycle.

        Returns:
            Number of commands dispatched in this cycle
        """
        await self._flush_unreported()
        commands = await self._fetch_commands()
        if commands:
            logger.debug(f"📥 Poll returned {len(commands)} command(s)")
        return await self.process_commands(commands)

    async def _fetch_commands(self) -> List[Dict[str, Any]]:
        session = self._ensure_session()
        if self.config.use_leases:
            request = session.post(
                f"{self.bridge_url}/commands/claim",
                json={"leaseSeconds": self.config.lease_seconds},
            )
        else:
            request = session.get(f"{self.bridge_url}/commands")
        async with request as response:
            response.raise_for_status()
            data = await response.json()
        commands = data.get("commands") if isinstance(data, dict) else None
        return commands if isinstance(commands, list) else []

    async def process_commands(self, commands: List[Dict[str, Any]]) -> int:
        dispatched = 0
        for command in commands:
            if self._halted:
                break
            if await self.dispatch(command):
                dispatched += 1
        return dispatched

    async def dispatch(self, command: Dict[str, Any]) -> bool:
        """Execute and report one polled command unless it is already in flight.

        Returns:
            True if the command was executed by this call
        """
        command_id = command.get("id") if isinstance(command, dict) else None
        if not command_id:
            logger.warning(f"⚠️ Skipping command without id: {command!r}")
            return False
        if command_id in self._in_flight:
            logger.debug(f"⏭️ Skipping {command_id}, already in flight")
            return False
        # Claimed before the first await so overlapping polls see it
        self._in_flight.add(command_id)

        command_type = command.get("type")
        logger.info(f"⚙️ Executing command: {command_type} ({command_id})")
        result, error = await self.execute_command(command)
        body = {"error": error} if error is not None else {"result": result}

        failures = batch_failures(result) if error is None else 0
        if error is not None:
            self.notifier(f"✗ {command_type}: {error}", True)
        elif failures:
            total = len(result["batchResults"])
            self.notifier(f"✗ {command_type}: {failures} of {total} sub-commands failed", True)
        else:
            self.notifier(f"✓ {command_type}", False)

        if await self._report(command_id, body):
            self._schedule_forget(command_id)
        else:
            self._unreported[command_id] = (str(command_type), body)
        return True

    async def execute_command(self, command: Dict[str, Any]) -> Tuple[Any, Optional[str]]:
        """Run a command through the handler table; failures become error strings."""
        command_type = command.get("type")
        try:
            result = await self.handlers.execute(command_type, command.get("params"))
            return result, None
        except Exception as e:
            logger.error(f"❌ Command {command_type} ({command.get('id')}) failed: {e}")
            return None, str(e) or e.__class__.__name__

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def _report(self, command_id: str, body: Dict[str, Any]) -> bool:
        """POST a completion report. False means retry later."""
        try:
            session = self._ensure_session()
            async with session.post(f"{self.bridge_url}/commands/{command_id}/complete", json=body) as response:
                if response.status >= 500:
                    logger.warning(f"⚠️ Bridge answered {response.status} to report for {command_id}, will retry")
                    return False
                if response.status == 404:
                    logger.warning(f"❓ Bridge no longer knows {command_id}, dropping report")
                elif response.status != 200:
                    logger.warning(f"⚠️ Bridge rejected report for {command_id} with {response.status}")
                return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"📡 Could not report {command_id}, will retry: {e}")
            return False

    async def _flush_unreported(self) -> None:
        for command_id, (command_type, body) in list(self._unreported.items()):
            if await self._report(command_id, body):
                logger.info(f"📨 Delivered delayed report for {command_type} ({command_id})")
                self._unreported.pop(command_id, None)
                self._schedule_forget(command_id)

    def _schedule_forget(self, command_id: str) -> None:
        loop = asyncio.get_running_loop()
        previous = self._forget_handles.pop(command_id, None)
        if previous is not None:
            previous.cancel()
        self._forget_handles[command_id] = loop.call_later(self.config.forget_delay, self._forget, command_id)

    def _forget(self, command_id: str) -> None:
        self._forget_handles.pop(command_id, None)
        self._in_flight.discard(command_id)

    def _reset_tracking(self) -> None:
        for handle in self._forget_handles.values():
            handle.cancel()
        self._forget_handles.clear()
        # Commands whose report never landed stay blocked across sessions
        self._in_flight = set(self._unreported)

    # ------------------------------------------------------------------
    # HTTP session
    # ------------------------------------------------------------------

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def _close_session(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
