"""
Scene Nodes - Python view of the Figma node tree sent by the plugin.

The plugin serializes the selected subtree as nested dicts:
    {"id", "type", "name", "children"?, "fills"?, "absoluteBoundingBox"?}

A SceneNode is a handle onto the host-owned node identified by `id`; it is
never the source of truth for the node's state.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> tuple[float, float]:
        return (self.x + self.width / 2, self.y + self.height / 2)


@dataclass(eq=False)
class SceneNode:
    """A node of the host document tree.

    `fills` is None when the node exposes no fills attribute at all, and a
    (possibly empty) list when it does.
    """

    id: str
    type: str
    name: str = ""
    children: List["SceneNode"] = field(default_factory=list)
    fills: Optional[List[Dict[str, Any]]] = None
    absolute_bounding_box: Optional[BoundingBox] = None
    parent: Optional["SceneNode"] = field(default=None, repr=False)

    @property
    def has_fills(self) -> bool:
        return self.fills is not None

    def add_child(self, child: "SceneNode") -> "SceneNode":
        child.parent = self
        self.children.append(child)
        return child

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SceneNode":
        """Build a node tree from the plugin's serialized subtree.

        Walks the payload with an explicit stack so arbitrarily deep documents
        do not hit the recursion limit.
        """
        root = cls._from_fields(payload)
        stack = [(root, payload)]
        while stack:
            node, raw = stack.pop()
            for raw_child in raw.get("children") or []:
                child = node.add_child(cls._from_fields(raw_child))
                stack.append((child, raw_child))
        return root

    @classmethod
    def _from_fields(cls, raw: Dict[str, Any]) -> "SceneNode":
        if not isinstance(raw, dict):
            raise ValueError(f"Node payload must be an object, got {type(raw).__name__}")
        box = raw.get("absoluteBoundingBox")
        fills = raw.get("fills")
        if fills is not None and not isinstance(fills, list):
            # figma.mixed and other non-list markers still mean the attribute exists
            fills = []
        return cls(
            id=str(raw.get("id", "")),
            type=str(raw.get("type", "")),
            name=str(raw.get("name") or ""),
            fills=list(fills) if fills is not None else None,
            absolute_bounding_box=BoundingBox(
                x=float(box["x"]),
                y=float(box["y"]),
                width=float(box["width"]),
                height=float(box["height"]),
            ) if isinstance(box, dict) else None,
        )


def find_parent_frame(node: SceneNode) -> Optional[SceneNode]:
    """Return the nearest ancestor of type FRAME, or None."""
    current = node.parent
    while current is not None:
        if current.type == "FRAME":
            return current
        current = current.parent
    return None
