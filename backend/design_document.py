"""
Design Document - in-memory stand-in for the live design file

The executor mutates this model when it runs commands outside the design
tool (headless mode, tests). Node and style ids follow the design tool's
``<page>:<n>`` / ``S:<hex>`` shapes so results look like the real thing.

Writes coming from ``set_property`` go through explicit allow-list tables
keyed by node type; nothing reaches an attribute that is not listed there.
"""

import uuid
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


PAGE = "PAGE"
FRAME = "FRAME"
GROUP = "GROUP"
COMPONENT = "COMPONENT"
RECTANGLE = "RECTANGLE"
TEXT = "TEXT"

CONTAINER_TYPES = frozenset({PAGE, FRAME, GROUP, COMPONENT})

STYLE_TYPES = ("PAINT", "TEXT", "EFFECT", "GRID")


class DocumentError(Exception):
    """Raised when a document operation cannot be applied."""


@dataclass
class DesignNode:
    id: str
    type: str
    name: str
    parent: Optional["DesignNode"] = field(default=None, repr=False)
    children: List["DesignNode"] = field(default_factory=list, repr=False)
    x: float = 0.0
    y: float = 0.0
    width: float = 100.0
    height: float = 100.0
    rotation: float = 0.0
    opacity: float = 1.0
    visible: bool = True
    locked: bool = False
    corner_radius: float = 0.0
    clips_content: bool = True
    fills: List[Dict[str, Any]] = field(default_factory=list)
    characters: str = ""
    font_size: float = 16.0
    description: str = ""
    backgrounds: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def accepts_children(self) -> bool:
        return self.type in CONTAINER_TYPES

    def is_ancestor_of(self, other: "DesignNode") -> bool:
        current = other.parent
        while current is not None:
            if current is self:
                return True
            current = current.parent
        return False

    def to_summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "parentId": self.parent.id if self.parent else None,
            "children": [c.id for c in self.children],
        }


@dataclass
class DesignStyle:
    id: str
    style_type: str
    name: str
    paints: List[Dict[str, Any]] = field(default_factory=list)
    font_size: Optional[float] = None
    font_name: Optional[Dict[str, str]] = None


# ---------------------------------------------------------------------------
# Property allow-lists
# ---------------------------------------------------------------------------

def _as_number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DocumentError(f"expected a number, got {value!r}")
    return float(value)


def _as_positive(value: Any) -> float:
    number = _as_number(value)
    if number <= 0:
        raise DocumentError(f"expected a positive number, got {value!r}")
    return number


def _as_unit_interval(value: Any) -> float:
    number = _as_number(value)
    if not 0.0 <= number <= 1.0:
        raise DocumentError(f"expected a number between 0 and 1, got {value!r}")
    return number


def _as_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise DocumentError(f"expected a boolean, got {value!r}")
    return value


def _as_text(value: Any) -> str:
    if not isinstance(value, str):
        raise DocumentError(f"expected a string, got {value!r}")
    return value


def _as_name(value: Any) -> str:
    text = _as_text(value)
    if not text.strip():
        raise DocumentError("name cannot be empty")
    return text


def _as_paints(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list) or not all(isinstance(p, dict) for p in value):
        raise DocumentError(f"expected a list of paint objects, got {value!r}")
    return [dict(p) for p in value]


# Public key -> (attribute, validator)
PropertySpec = Tuple[str, Callable[[Any], Any]]

_LAYER_PROPERTIES: Dict[str, PropertySpec] = {
    "name": ("name", _as_name),
    "x": ("x", _as_number),
    "y": ("y", _as_number),
    "rotation": ("rotation", _as_number),
    "opacity": ("opacity", _as_unit_interval),
    "visible": ("visible", _as_bool),
    "locked": ("locked", _as_bool),
}

_SIZED_PROPERTIES: Dict[str, PropertySpec] = {
    "width": ("width", _as_positive),
    "height": ("height", _as_positive),
}

_FRAME_PROPERTIES: Dict[str, PropertySpec] = {
    **_LAYER_PROPERTIES,
    **_SIZED_PROPERTIES,
    "cornerRadius": ("corner_radius", _as_number),
    "clipsContent": ("clips_content", _as_bool),
    "fills": ("fills", _as_paints),
}

PROPERTY_TABLES: Dict[str, Dict[str, PropertySpec]] = {
    PAGE: {
        "name": ("name", _as_name),
        "backgrounds": ("backgrounds", _as_paints),
    },
    FRAME: _FRAME_PROPERTIES,
    COMPONENT: {**_FRAME_PROPERTIES, "description": ("description", _as_text)},
    GROUP: dict(_LAYER_PROPERTIES),
    RECTANGLE: {
        **_LAYER_PROPERTIES,
        **_SIZED_PROPERTIES,
        "cornerRadius": ("corner_radius", _as_number),
        "fills": ("fills", _as_paints),
    },
    TEXT: {
        **_LAYER_PROPERTIES,
        "characters": ("characters", _as_text),
        "fontSize": ("font_size", _as_positive),
        "fills": ("fills", _as_paints),
    },
}


class DesignDocument:
    """Pages, nodes and local styles of one design file."""

    def __init__(self, first_page_name: str = "Page 1") -> None:
        self.pages: List[DesignNode] = []
        self.styles: Dict[str, DesignStyle] = {}
        self._nodes: Dict[str, DesignNode] = {}
        self._page_counter = 0
        self._node_counter = 0
        self.create_page(first_page_name)

    # Lookup
    def get_node(self, node_id: Optional[str]) -> Optional[DesignNode]:
        if not node_id:
            return None
        return self._nodes.get(node_id)

    def find_page(self, page_id: Optional[str] = None, name: Optional[str] = None) -> Optional[DesignNode]:
        for page in self.pages:
            if (page_id and page.id == page_id) or (name and page.name == name):
                return page
        return None

    @property
    def current_page(self) -> DesignNode:
        return self.pages[0]

    # Pages
    def create_page(self, name: str) -> DesignNode:
        page = DesignNode(id=f"{self._page_counter}:0", type=PAGE, name=name, width=0, height=0)
        self._page_counter += 1
        self.pages.append(page)
        self._nodes[page.id] = page
        return page

    def delete_page(self, page: DesignNode) -> None:
        if len(self.pages) <= 1:
            raise DocumentError("Cannot delete last page")
        self.pages.remove(page)
        self._forget(page)

    # Nodes
    def create_node(self, node_type: str, name: str, parent: Optional[DesignNode] = None, **attrs: Any) -> DesignNode:
        parent = parent or self.current_page
        self._node_counter += 1
        page_index = self._page_of(parent)
        node = DesignNode(id=f"{page_index}:{self._node_counter}", type=node_type, name=name, **attrs)
        self._nodes[node.id] = node
        self.append_child(parent, node)
        return node

    def append_child(self, parent: DesignNode, node: DesignNode, index: Optional[int] = None) -> None:
        if node.type == PAGE:
            raise DocumentError("Pages cannot be moved into other nodes")
        if not parent.accepts_children:
            raise DocumentError("Target cannot contain children")
        if node is parent or node.is_ancestor_of(parent):
            raise DocumentError("Cannot move a node into itself or its descendants")
        if node.parent is not None:
            node.parent.children.remove(node)
        if index is None:
            parent.children.append(node)
        else:
            parent.children.insert(index, node)
        node.parent = parent

    def remove_node(self, node: DesignNode) -> None:
        if node.type == PAGE:
            self.delete_page(node)
            return
        if node.parent is not None:
            node.parent.children.remove(node)
            node.parent = None
        self._forget(node)

    def group(self, nodes: List[DesignNode], name: str = "Group") -> DesignNode:
        if not nodes:
            raise DocumentError("No valid nodes to group")
        parent = nodes[0].parent
        if parent is None:
            raise DocumentError("Nodes must have a parent to be grouped")
        # Nothing is touched unless every member can move into the new group
        for node in nodes:
            if node.type == PAGE:
                raise DocumentError("Pages cannot be grouped")
            if node is parent or node.is_ancestor_of(parent):
                raise DocumentError("Cannot group a node with one of its own descendants")
        index = parent.children.index(nodes[0])
        group = self.create_node(GROUP, name, parent)
        # Keep the group where its first member used to be
        parent.children.remove(group)
        parent.children.insert(index, group)
        for node in nodes:
            self.append_child(group, node)
        self._fit_to_children(group)
        return group

    def ungroup(self, group: DesignNode) -> List[DesignNode]:
        if group.type != GROUP:
            raise DocumentError("Node is not a group")
        parent = group.parent
        children = list(group.children)
        index = parent.children.index(group) if parent is not None else None
        for offset, child in enumerate(children):
            if parent is not None:
                self.append_child(parent, child, None if index is None else index + offset)
        self.remove_node(group)
        return children

    def convert_to_component(self, node: DesignNode) -> DesignNode:
        if node.type not in (FRAME, GROUP):
            raise DocumentError("Can only create component from frame or group")
        parent = node.parent
        index = parent.children.index(node)
        component = self.create_node(
            COMPONENT,
            node.name,
            parent,
            x=node.x,
            y=node.y,
            width=node.width,
            height=node.height,
            fills=list(node.fills),
        )
        parent.children.remove(component)
        parent.children.insert(index, component)
        for child in list(node.children):
            self.append_child(component, child)
        self.remove_node(node)
        return component

    def set_properties(self, node: DesignNode, properties: Dict[str, Any]) -> List[str]:
        """Apply allow-listed properties; all-or-nothing."""
        table = PROPERTY_TABLES.get(node.type, {})
        rejected = sorted(key for key in properties if key not in table)
        if rejected:
            raise DocumentError(f"Properties not writable on {node.type}: {', '.join(rejected)}")
        staged = []
        for key, value in properties.items():
            attribute, validate = table[key]
            try:
                staged.append((attribute, validate(value)))
            except DocumentError as e:
                raise DocumentError(f"Invalid value for {key}: {e}") from e
        for attribute, value in staged:
            setattr(node, attribute, value)
        return list(properties.keys())

    # Styles
    def create_style(self, style_type: str, name: str) -> DesignStyle:
        if style_type not in STYLE_TYPES:
            raise DocumentError("Invalid style type")
        style = DesignStyle(id=f"S:{uuid.uuid4().hex[:16]}", style_type=style_type, name=name)
        self.styles[style.id] = style
        return style

    # Internal
    def _page_of(self, node: DesignNode) -> int:
        current = node
        while current.parent is not None:
            current = current.parent
        return self.pages.index(current) if current in self.pages else 0

    def _forget(self, node: DesignNode) -> None:
        self._nodes.pop(node.id, None)
        for child in node.children:
            self._forget(child)

    @staticmethod
    def _fit_to_children(group: DesignNode) -> None:
        if not group.children:
            return
        left = min(c.x for c in group.children)
        top = min(c.y for c in group.children)
        right = max(c.x + c.width for c in group.children)
        bottom = max(c.y + c.height for c in group.children)
        group.x, group.y = left, top
        group.width, group.height = right - left, bottom - top
