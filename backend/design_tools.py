"""
Design Tools - OpenAI Agent tools for queueing design mutations

The design tool's REST API cannot create pages, frames or styles. These
tools put such mutations on the command bridge instead; the plugin running
inside the design tool picks them up and reports back. Results are JSON
strings for model reasoning.
"""


import json
import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from agents import function_tool

from bridge_server import get_bridge
from command_queue import CommandSpecError, DesignCommand

logger = logging.getLogger(__name__)


class ToolExecutionError(Exception):
    """
    Tool failure with a structured payload the agent can act on.

    Expected payload shape: { code: str, message: str, details?: dict }
    """

    def __init__(self, payload: Any, tool: Optional[str] = None):
        self.tool = tool

        if isinstance(payload, dict):
            self.code: str = str(payload.get("code", "unknown_tool_error"))
            self.message: str = str(payload.get("message", ""))
            self.details: Dict[str, Any] = payload.get("details", {}) or {}
            normalized_payload = payload
        else:
            self.code = "unknown_tool_error"
            self.message = str(payload)
            self.details = {}
            normalized_payload = {"code": self.code, "message": self.message, "details": self.details}

        self.payload = normalized_payload

        text = self.message if self.message else self.code
        super().__init__(text)


# ============================================
# ============ INTERNAL HELPERS ==============
# ============================================

def _to_json_string(result: Any) -> str:
    """Convert a tool result to a JSON string for model reasoning."""
    try:
        if isinstance(result, str):
            return result
        return json.dumps(result, ensure_ascii=False)
    except Exception:
        return json.dumps({"result": str(result)}, ensure_ascii=False)


def _require_bridge(tool: str):
    try:
        return get_bridge()
    except RuntimeError as e:
        raise ToolExecutionError(
            {"code": "bridge_not_running", "message": str(e), "details": {"tool": tool}},
            tool=tool,
        ) from e


def _command_summary(command: DesignCommand) -> Dict[str, Any]:
    return {"id": command.id, "type": command.type, "status": command.status.value}


def queue_command(command_type: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    bridge = _require_bridge("queue_design_command")
    try:
        command = bridge.queue.enqueue({"type": command_type, "params": params or {}})
    except CommandSpecError as e:
        raise ToolExecutionError(
            {"code": "invalid_command_spec", "message": str(e), "details": {"type": command_type}},
            tool="queue_design_command",
        ) from e
    return {
        "success": True,
        "summary": f"Queued {command.type} as {command.id}",
        "command": _command_summary(command),
        "bridge_port": bridge.current_port,
    }


def queue_batch(commands: List[Dict[str, Any]], file_key: Optional[str] = None) -> Dict[str, Any]:
    bridge = _require_bridge("queue_design_batch")
    try:
        queued = bridge.queue.enqueue_batch(file_key, commands)
    except CommandSpecError as e:
        raise ToolExecutionError(
            {"code": "invalid_command_spec", "message": str(e), "details": {"count": len(commands)}},
            tool="queue_design_batch",
        ) from e
    return {
        "success": True,
        "summary": f"Queued {len(queued)} command(s)",
        "file_key": file_key,
        "commands": [_command_summary(c) for c in queued],
    }


def command_status(command_id: str) -> Dict[str, Any]:
    bridge = _require_bridge("get_design_command_status")
    command = bridge.queue.get(command_id)
    if command is None:
        raise ToolExecutionError(
            {
                "code": "command_not_found",
                "message": f"No command with id {command_id}",
                "details": {"command_id": command_id},
            },
            tool="get_design_command_status",
        )
    return command.to_dict()


def bridge_status() -> Dict[str, Any]:
    bridge = _require_bridge("get_bridge_status")
    port = bridge.current_port
    return {
        "running": bridge.is_running,
        "port": port,
        "plugin_url": f"http://localhost:{port}/plugin" if port else None,
        "file_key": bridge.queue.file_key,
        "counts": bridge.queue.counts(),
    }


# ============================================
# == PYDANTIC MODELS FOR COMPLEX PARAMETERS ==
# ============================================

CommandTypeName = Literal[
    "create_page", "rename_page", "delete_page",
    "move_node", "rename_node", "delete_node",
    "create_frame", "create_component", "create_style",
    "group_nodes", "ungroup_node",
    "set_property", "batch",
]


class DesignCommandSpec(BaseModel):
    model_config = ConfigDict(extra='forbid')
    type: CommandTypeName
    params: Dict[str, Any] = Field(default_factory=dict)


# ============================================
# ===============  TOOLS  ====================
# ============================================

@function_tool(strict_mode=False)
async def queue_design_command(command_type: CommandTypeName, params: Optional[Dict[str, Any]] = None) -> str:
    """Queue one design mutation for the bridge plugin to execute.

    Purpose & Use Case
    --------------------
    The REST API is read-mostly: it cannot create or restructure pages, frames,
    components or styles. This tool records such a mutation on the local command
    bridge. The bridge plugin, running inside the open design file, polls the
    bridge, executes the command and reports the outcome. Execution is
    asynchronous: the command starts as `pending` and becomes `completed` or
    `failed` once the plugin reports back.

    Parameters (Args)
    ------------------
    command_type (str): One of `create_page`, `rename_page`, `delete_page`,
        `move_node`, `rename_node`, `delete_node`, `create_frame`,
        `create_component`, `create_style`, `group_nodes`, `ungroup_node`,
        `set_property`, `batch`.
    params (dict, optional): Command parameters. Common shapes:
        - create_page: { name }
        - rename_page: { pageId | oldName, name }
        - delete_page: { pageId | name }
        - move_node: { nodeId, targetPageId | targetPageName | targetNodeId }
        - rename_node: { nodeId, name }; delete_node: { nodeId }
        - create_frame: { name, width, height, x, y, parentId }
        - create_component: { fromNodeId } or { width, height }, plus { name }
        - create_style: { styleType: paint|fill|text|effect|grid, name, color{r,g,b 0-255}, fontSize, fontFamily, fontStyle }
        - group_nodes: { nodeIds, name }; ungroup_node: { nodeId }
        - set_property: { nodeId, properties } (only layer properties such as
          name, x, y, width, height, opacity, visible, locked, cornerRadius, fills)
        - batch: { commands: [{ type, params }] }

    Returns
    -------
    (str): JSON string `{ success, summary, command: { id, type, status }, bridge_port }`.

    Raises (Errors & Pitfalls)
    --------------------------
    ToolExecutionError:
        - `invalid_command_spec`: unknown type or malformed params. Recovery: fix the arguments.
        - `bridge_not_running`: the command bridge was not started. Recovery: ask the user to restart the server.

    Agent Guidance
    --------------
    When to Use:
        - Any structural change to the file (pages, frames, components, styles, grouping).
    When NOT to Use:
        - Several related changes: prefer `queue_design_batch` so they share one fileKey and stay ordered.
        - Reading data: use the read tools, the bridge only carries mutations.
    """
    try:
        logger.info(f"🧱 Queueing design command: {command_type}")
        return _to_json_string(queue_command(command_type, params))
    except ToolExecutionError as te:
        logger.error(f"❌ Tool queue_design_command failed: {te.message}")
        raise
    except Exception as e:
        logger.error(f"❌ Unexpected error in queue_design_command: {str(e)}")
        raise ToolExecutionError({
            "code": "unknown_tool_error",
            "message": f"Failed to queue command: {str(e)}",
            "details": {"command_type": command_type},
        }, tool="queue_design_command")


@function_tool(strict_mode=False)
async def queue_design_batch(commands: List[DesignCommandSpec], file_key: Optional[str] = None) -> str:
    """Queue several design mutations in order, tagged with the target file key.

    Parameters (Args)
    ------------------
    commands (List[DesignCommandSpec]): Ordered `{ type, params }` entries; see
        `queue_design_command` for the parameter shapes. Each entry becomes its own
        queued command. Nothing is queued if any entry is invalid.
    file_key (str, optional): Key of the design file the commands target. Stored
        as queue context and handed to the plugin on every poll.

    Returns
    -------
    (str): JSON string `{ success, summary, file_key, commands: [{ id, type, status }] }`.
    """
    try:
        logger.info(f"🧱 Queueing batch of {len(commands)} design command(s) for file {file_key}")
        specs = [c.model_dump() for c in commands]
        return _to_json_string(queue_batch(specs, file_key))
    except ToolExecutionError as te:
        logger.error(f"❌ Tool queue_design_batch failed: {te.message}")
        raise


@function_tool
async def get_design_command_status(command_id: str) -> str:
    """Return one queued command with its status, result or error.

    Poll this after queueing to learn whether the plugin executed the command.
    Raises ToolExecutionError `command_not_found` for unknown (or evicted) ids.
    """
    try:
        return _to_json_string(command_status(command_id))
    except ToolExecutionError as te:
        logger.error(f"❌ Tool get_design_command_status failed: {te.message}")
        raise


@function_tool
async def get_pending_design_commands() -> str:
    """List commands still waiting for the plugin, oldest first."""
    bridge = _require_bridge("get_pending_design_commands")
    pending = bridge.queue.list_pending()
    return _to_json_string({
        "file_key": bridge.queue.file_key,
        "count": len(pending),
        "commands": [c.to_dict() for c in pending],
    })


@function_tool
async def get_design_command_queue() -> str:
    """Dump the whole command queue, every status included."""
    bridge = _require_bridge("get_design_command_queue")
    return _to_json_string(bridge.queue.list_all())


@function_tool
async def clear_design_commands() -> str:
    """Drop every queued command, pending ones included. Cannot be undone."""
    bridge = _require_bridge("clear_design_commands")
    removed = len(bridge.queue)
    bridge.queue.clear()
    logger.info(f"🧹 Cleared {removed} command(s) via tool call")
    return _to_json_string({"success": True, "removed": removed})


@function_tool
async def get_bridge_status() -> str:
    """Report whether the command bridge is up, its port and queue counts.

    Use before queueing work to tell the user where to point the plugin
    (`plugin_url` serves the generated plugin code).
    """
    return _to_json_string(bridge_status())


DESIGN_TOOLS = [
    queue_design_command,
    queue_design_batch,
    get_design_command_status,
    get_pending_design_commands,
    get_design_command_queue,
    clear_design_commands,
    get_bridge_status,
]
