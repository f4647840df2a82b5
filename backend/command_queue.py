"""
Command Queue - in-memory store for design mutation commands

Producers (the agent tools, or out-of-process callers through the relay)
enqueue commands here; the polling executor sees them through the relay and
reports completion back. The queue is a plain object owned by the relay's
composition root, there is no module-level state.
"""

import time
import uuid
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)


class CommandType(str, Enum):
    """Dispatch keys understood by the executor's handler table."""

    CREATE_PAGE = "create_page"
    RENAME_PAGE = "rename_page"
    DELETE_PAGE = "delete_page"
    MOVE_NODE = "move_node"
    RENAME_NODE = "rename_node"
    DELETE_NODE = "delete_node"
    CREATE_FRAME = "create_frame"
    CREATE_COMPONENT = "create_component"
    CREATE_STYLE = "create_style"
    GROUP_NODES = "group_nodes"
    UNGROUP_NODE = "ungroup_node"
    SET_PROPERTY = "set_property"
    BATCH = "batch"


COMMAND_TYPES = frozenset(t.value for t in CommandType)


class CommandStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({CommandStatus.COMPLETED, CommandStatus.FAILED})


class CommandSpecError(ValueError):
    """Raised when a producer hands over a malformed command spec."""


def _now_ms(clock: Callable[[], float]) -> int:
    return int(clock() * 1000)


def generate_command_id(clock: Callable[[], float] = time.time) -> str:
    """Timestamp plus random suffix, e.g. ``cmd_1760000000000_3f9c2a7b1d04``."""
    return f"cmd_{_now_ms(clock)}_{uuid.uuid4().hex[:12]}"


@dataclass
class DesignCommand:
    """A single requested mutation and its lifecycle state."""

    id: str
    type: str
    params: Dict[str, Any] = field(default_factory=dict)
    status: CommandStatus = CommandStatus.PENDING
    result: Any = None
    error: Optional[str] = None
    created_at: int = 0
    completed_at: Optional[int] = None
    lease_id: Optional[str] = None
    lease_expires_at: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "params": self.params,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
            "leaseId": self.lease_id,
            "leaseExpiresAt": self.lease_expires_at,
        }


@dataclass
class RetentionPolicy:
    """How long terminal commands are kept around for diagnostics.

    Pending and executing commands are never evicted; only ``clear()`` removes them.
    """

    max_age_seconds: Optional[float] = 600.0
    max_commands: Optional[int] = 1000


def validate_command_spec(spec: Any) -> Dict[str, Any]:
    """Normalize a ``{type, params}`` mapping or raise ``CommandSpecError``."""
    if not isinstance(spec, Mapping):
        raise CommandSpecError(f"Command spec must be an object, got {type(spec).__name__}")
    command_type = spec.get("type")
    if not command_type:
        raise CommandSpecError("Command spec is missing 'type'")
    if command_type not in COMMAND_TYPES:
        raise CommandSpecError(f"Unknown command type: {command_type}")
    params = spec.get("params")
    if params is None:
        params = {}
    if not isinstance(params, Mapping):
        raise CommandSpecError(f"'params' for {command_type} must be an object")
    if command_type == CommandType.BATCH.value:
        sub_commands = params.get("commands")
        if not isinstance(sub_commands, list):
            raise CommandSpecError("'batch' params must contain a 'commands' list")
    return {"type": command_type, "params": dict(params)}


class CommandQueue:
    """Ordered in-memory store of design commands.

    Commands are kept in enqueue order. Read views filter by status; the
    relay serves ``list_pending()`` to the executor and ``list_all()`` for
    diagnostics. Terminal transitions happen once: a second completion
    report for a terminal command is a no-op.
    """

    def __init__(
        self,
        retention: Optional[RetentionPolicy] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.retention = retention or RetentionPolicy()
        self._clock = clock
        self._commands: List[DesignCommand] = []
        self._index: Dict[str, DesignCommand] = {}
        self.file_key: Optional[str] = None

    # Producer API
    def enqueue(self, spec: Mapping[str, Any]) -> DesignCommand:
        normalized = validate_command_spec(spec)
        command_id = generate_command_id(self._clock)
        while command_id in self._index:
            command_id = generate_command_id(self._clock)
        command = DesignCommand(
            id=command_id,
            type=normalized["type"],
            params=normalized["params"],
            created_at=_now_ms(self._clock),
        )
        self._commands.append(command)
        self._index[command.id] = command
        logger.info(f"📥 Command queued: {command.type} ({command.id})")
        self._apply_retention()
        return command

    def enqueue_batch(self, file_key: Optional[str], specs: Iterable[Mapping[str, Any]]) -> List[DesignCommand]:
        """Record ``file_key`` as queue context and enqueue every spec in order.

        All specs are validated before any of them is stored, so a malformed
        entry never leaves half a batch behind.
        """
        specs = list(specs)
        for spec in specs:
            validate_command_spec(spec)
        self.file_key = file_key
        return [self.enqueue(spec) for spec in specs]

    # Read views
    def get(self, command_id: str) -> Optional[DesignCommand]:
        self._release_expired_leases()
        return self._index.get(command_id)

    def list_pending(self) -> List[DesignCommand]:
        self._release_expired_leases()
        return [c for c in self._commands if c.status == CommandStatus.PENDING]

    def list_all(self) -> Dict[str, Any]:
        self._release_expired_leases()
        return {"fileKey": self.file_key, "commands": [c.to_dict() for c in self._commands]}

    def counts(self) -> Dict[str, int]:
        self._release_expired_leases()
        counts = {status.value: 0 for status in CommandStatus}
        for command in self._commands:
            counts[command.status.value] += 1
        return counts

    def __len__(self) -> int:
        return len(self._commands)

    # Executor-side transitions
    def claim(self, lease_seconds: float = 30.0, limit: Optional[int] = None) -> List[DesignCommand]:
        """Lease pending commands to one caller.

        Claimed commands move to ``executing`` and disappear from
        ``list_pending()`` until they are completed or their lease expires.
        """
        pending = self.list_pending()
        if limit is not None:
            pending = pending[: max(0, limit)]
        if not pending:
            return []
        lease_id = f"lease_{uuid.uuid4().hex[:12]}"
        expires_at = _now_ms(self._clock) + int(lease_seconds * 1000)
        for command in pending:
            command.status = CommandStatus.EXECUTING
            command.lease_id = lease_id
            command.lease_expires_at = expires_at
        logger.info(f"🔒 Claimed {len(pending)} command(s) under {lease_id} for {lease_seconds}s")
        return pending

    def complete(self, command_id: str, result: Any = None, error: Any = None) -> bool:
        """Move a command to its terminal state.

        Returns False when the id is unknown. Reports for commands that are
        already terminal are ignored and return True.
        """
        command = self._index.get(command_id)
        if command is None:
            logger.warning(f"❓ Completion report for unknown command: {command_id}")
            return False
        if command.is_terminal:
            logger.warning(
                f"⚠️ Ignoring duplicate completion report for {command.type} ({command_id}), "
                f"already {command.status.value}"
            )
            return True

        # An empty error string counts as success
        if error:
            command.status = CommandStatus.FAILED
            command.error = error if isinstance(error, str) else str(error)
            command.result = None
        else:
            command.status = CommandStatus.COMPLETED
            command.result = result
            command.error = None
        command.completed_at = _now_ms(self._clock)
        command.lease_id = None
        command.lease_expires_at = None

        if command.status == CommandStatus.FAILED:
            logger.info(f"❌ Command failed: {command.type} ({command_id}): {command.error}")
        else:
            logger.info(f"✅ Command completed: {command.type} ({command_id})")
        self._apply_retention()
        return True

    def clear(self) -> None:
        self._commands = []
        self._index = {}
        self.file_key = None
        logger.info("🧹 Command queue cleared")

    # Internal
    def _release_expired_leases(self) -> None:
        now = _now_ms(self._clock)
        for command in self._commands:
            if (
                command.status == CommandStatus.EXECUTING
                and command.lease_expires_at is not None
                and command.lease_expires_at <= now
            ):
                logger.warning(f"⌛ Lease {command.lease_id} expired for {command.type} ({command.id}), back to pending")
                command.status = CommandStatus.PENDING
                command.lease_id = None
                command.lease_expires_at = None

    def _apply_retention(self) -> None:
        policy = self.retention
        evicted = set()

        if policy.max_age_seconds is not None:
            cutoff = _now_ms(self._clock) - int(policy.max_age_seconds * 1000)
            for command in self._commands:
                if command.is_terminal and command.completed_at is not None and command.completed_at <= cutoff:
                    evicted.add(command.id)

        if policy.max_commands is not None:
            overflow = len(self._commands) - len(evicted) - policy.max_commands
            if overflow > 0:
                # Oldest terminal commands go first, by completion time
                terminal = sorted(
                    (c for c in self._commands if c.is_terminal and c.id not in evicted),
                    key=lambda c: c.completed_at or 0,
                )
                for command in terminal[:overflow]:
                    evicted.add(command.id)

        if not evicted:
            return
        self._commands = [c for c in self._commands if c.id not in evicted]
        for command_id in evicted:
            self._index.pop(command_id, None)
        logger.debug(f"🗑️ Evicted {len(evicted)} terminal command(s) by retention policy")
