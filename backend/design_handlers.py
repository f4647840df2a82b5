"""
Design Handlers - command type -> mutation against a DesignDocument

Each handler takes the command's ``params`` and returns a JSON-serializable
result, or raises ``CommandExecutionError``. The executor owns reporting;
handlers never talk to the relay.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from command_queue import CommandType
from design_document import (
    COMPONENT,
    FRAME,
    DesignDocument,
    DocumentError,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


class CommandExecutionError(Exception):
    """
    A command could not be executed against the document.

    Carries a structured payload: { code: str, message: str, details?: dict }.
    The message alone is what gets reported back to the relay.
    """

    def __init__(self, payload: Any, command_type: Optional[str] = None):
        self.command_type = command_type
        if isinstance(payload, dict):
            self.code: str = str(payload.get("code", "execution_failed"))
            self.message: str = str(payload.get("message", ""))
            self.details: Dict[str, Any] = payload.get("details", {}) or {}
        else:
            self.code = "execution_failed"
            self.message = str(payload)
            self.details = {}
        self.payload = {"code": self.code, "message": self.message, "details": self.details}
        super().__init__(self.message if self.message else self.code)


def _require(params: Dict[str, Any], key: str) -> Any:
    value = params.get(key)
    if value is None or value == "":
        raise CommandExecutionError({"code": "missing_parameter", "message": f"Missing required parameter: {key}"})
    return value


class DesignHandlers:
    """Handler table for every command type the bridge can carry."""

    def __init__(self, document: DesignDocument):
        self.document = document
        self.handlers: Dict[str, Handler] = {
            CommandType.CREATE_PAGE.value: self.create_page,
            CommandType.RENAME_PAGE.value: self.rename_page,
            CommandType.DELETE_PAGE.value: self.delete_page,
            CommandType.MOVE_NODE.value: self.move_node,
            CommandType.RENAME_NODE.value: self.rename_node,
            CommandType.DELETE_NODE.value: self.delete_node,
            CommandType.CREATE_FRAME.value: self.create_frame,
            CommandType.CREATE_COMPONENT.value: self.create_component,
            CommandType.CREATE_STYLE.value: self.create_style,
            CommandType.GROUP_NODES.value: self.group_nodes,
            CommandType.UNGROUP_NODE.value: self.ungroup_node,
            CommandType.SET_PROPERTY.value: self.set_property,
            CommandType.BATCH.value: self.batch,
        }

    async def execute(self, command_type: str, params: Optional[Dict[str, Any]]) -> Any:
        handler = self.handlers.get(command_type)
        if handler is None:
            raise CommandExecutionError(
                {"code": "unknown_command_type", "message": f"Unknown command type: {command_type}"},
                command_type=command_type,
            )
        try:
            return await handler(params or {})
        except DocumentError as e:
            raise CommandExecutionError({"code": "document_error", "message": str(e)}, command_type=command_type) from e

    # Pages
    async def create_page(self, params: Dict[str, Any]) -> Dict[str, Any]:
        page = self.document.create_page(params.get("name") or "New Page")
        return {"pageId": page.id, "name": page.name}

    async def rename_page(self, params: Dict[str, Any]) -> Dict[str, Any]:
        page = self.document.find_page(params.get("pageId"), params.get("oldName"))
        if page is None:
            raise CommandExecutionError({"code": "page_not_found", "message": "Page not found"})
        page.name = _require(params, "name")
        return {"pageId": page.id, "name": page.name}

    async def delete_page(self, params: Dict[str, Any]) -> Dict[str, Any]:
        page = self.document.find_page(params.get("pageId"), params.get("name"))
        if page is None:
            raise CommandExecutionError({"code": "page_not_found", "message": "Page not found"})
        self.document.delete_page(page)
        return {"deleted": True}

    # Nodes
    def _node(self, params: Dict[str, Any], key: str = "nodeId", message: str = "Node not found"):
        node = self.document.get_node(params.get(key))
        if node is None:
            raise CommandExecutionError({"code": "node_not_found", "message": message, "details": {key: params.get(key)}})
        return node

    async def move_node(self, params: Dict[str, Any]) -> Dict[str, Any]:
        node = self._node(params)
        target = None
        if params.get("targetPageId") or params.get("targetPageName"):
            target = self.document.find_page(params.get("targetPageId"), params.get("targetPageName"))
        elif params.get("targetNodeId"):
            target = self.document.get_node(params.get("targetNodeId"))
        if target is None:
            raise CommandExecutionError({"code": "target_not_found", "message": "Target not found"})
        self.document.append_child(target, node)
        return {"moved": True, "newParent": target.id}

    async def rename_node(self, params: Dict[str, Any]) -> Dict[str, Any]:
        node = self._node(params)
        node.name = _require(params, "name")
        return {"nodeId": node.id, "name": node.name}

    async def delete_node(self, params: Dict[str, Any]) -> Dict[str, Any]:
        node = self._node(params)
        self.document.remove_node(node)
        return {"deleted": True}

    async def create_frame(self, params: Dict[str, Any]) -> Dict[str, Any]:
        parent = None
        if params.get("parentId"):
            candidate = self.document.get_node(params["parentId"])
            # Unknown or leaf parents fall back to the current page
            if candidate is not None and candidate.accepts_children:
                parent = candidate
        frame = self.document.create_node(
            FRAME,
            params.get("name") or "Frame",
            parent,
            width=params.get("width") or 100,
            height=params.get("height") or 100,
            x=params.get("x", 0),
            y=params.get("y", 0),
        )
        return {"nodeId": frame.id, "name": frame.name}

    async def create_component(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if params.get("fromNodeId"):
            source = self._node(params, "fromNodeId", "Source node not found")
            component = self.document.convert_to_component(source)
        else:
            component = self.document.create_node(
                COMPONENT,
                "Component",
                width=params.get("width") or 100,
                height=params.get("height") or 100,
            )
        if params.get("name"):
            component.name = params["name"]
        return {"componentId": component.id, "name": component.name}

    async def create_style(self, params: Dict[str, Any]) -> Dict[str, Any]:
        style_type = params.get("styleType")
        name = params.get("name") or "New Style"
        if style_type in ("paint", "fill"):
            style = self.document.create_style("PAINT", name)
            color = params.get("color")
            if isinstance(color, dict):
                style.paints = [{
                    "type": "SOLID",
                    "color": {
                        "r": (color.get("r") or 0) / 255,
                        "g": (color.get("g") or 0) / 255,
                        "b": (color.get("b") or 0) / 255,
                    },
                }]
        elif style_type == "text":
            style = self.document.create_style("TEXT", name)
            if params.get("fontSize"):
                style.font_size = params["fontSize"]
            if params.get("fontFamily"):
                style.font_name = {"family": params["fontFamily"], "style": params.get("fontStyle") or "Regular"}
        elif style_type == "effect":
            style = self.document.create_style("EFFECT", name)
        elif style_type == "grid":
            style = self.document.create_style("GRID", name)
        else:
            raise CommandExecutionError({"code": "invalid_style_type", "message": "Invalid style type"})
        return {"styleId": style.id, "name": style.name}

    async def group_nodes(self, params: Dict[str, Any]) -> Dict[str, Any]:
        node_ids = params.get("nodeIds") or []
        nodes = [n for n in (self.document.get_node(i) for i in node_ids) if n is not None and n.parent is not None]
        if not nodes:
            raise CommandExecutionError({"code": "no_valid_nodes", "message": "No valid nodes to group"})
        group = self.document.group(nodes, params.get("name") or "Group")
        return {"groupId": group.id, "name": group.name}

    async def ungroup_node(self, params: Dict[str, Any]) -> Dict[str, Any]:
        node = self.document.get_node(params.get("nodeId"))
        if node is None:
            raise CommandExecutionError({"code": "not_a_group", "message": "Node is not a group"})
        children = self.document.ungroup(node)
        return {"ungrouped": True, "childCount": len(children)}

    async def set_property(self, params: Dict[str, Any]) -> Dict[str, Any]:
        node = self._node(params)
        properties = params.get("properties") or {}
        if not isinstance(properties, dict):
            raise CommandExecutionError({"code": "invalid_properties", "message": "'properties' must be an object"})
        updated = self.document.set_properties(node, properties)
        return {"nodeId": node.id, "updated": updated}

    async def batch(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Run sub-commands in order; every failure is recorded, none aborts the rest.

        The batch always returns its per-sub-command outcomes, so ids created by
        the sub-commands that succeeded stay visible. ``failed`` counts the rest.
        """
        results: List[Dict[str, Any]] = []
        for sub in params.get("commands") or []:
            sub = sub if isinstance(sub, dict) else {}
            sub_type = sub.get("type")
            try:
                if sub_type == CommandType.BATCH.value:
                    raise CommandExecutionError({"code": "nested_batch", "message": "Nested batch commands are not supported"})
                result = await self.execute(sub_type, sub.get("params"))
                results.append({"type": sub_type, "success": True, "result": result})
            except Exception as e:
                logger.debug(f"Batch sub-command {sub_type} failed: {e}")
                results.append({"type": sub_type, "success": False, "error": str(e) or e.__class__.__name__})
        failed = sum(1 for r in results if not r["success"])
        return {"batchResults": results, "succeeded": len(results) - failed, "failed": failed}


def batch_failures(result: Any) -> int:
    """Number of failed sub-commands in a batch result (0 for anything else)."""
    if isinstance(result, dict) and isinstance(result.get("batchResults"), list):
        return sum(1 for r in result["batchResults"] if not r.get("success"))
    return 0
