"""
Layer Index - name → candidate layers for image import.

Walks the selected container and buckets every named, fill-capable node under
its normalized name. Buckets keep pre-order document order, so the first entry
of a bucket is always the topmost-first layer in the layers panel.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from figma_scene import SceneNode

logger = logging.getLogger(__name__)

PATH_SEPARATOR = " → "

# Node types that can always carry an IMAGE paint.
FILLABLE_NODE_TYPES = frozenset({
    "RECTANGLE",
    "FRAME",
    "ELLIPSE",
    "POLYGON",
    "STAR",
    "VECTOR",
})

# Node types that can carry one only when the node actually exposes `fills`.
FILLABLE_IF_FILLS_NODE_TYPES = frozenset({"COMPONENT", "INSTANCE"})


def normalize_name(name: str) -> str:
    """Matching key for layer and image names: trimmed and lowercased."""
    return (name or "").strip().lower()


def can_hold_image_fill(node: SceneNode) -> bool:
    if node.type in FILLABLE_NODE_TYPES:
        return True
    if node.type in FILLABLE_IF_FILLS_NODE_TYPES:
        return node.has_fills
    return False


@dataclass(frozen=True)
class LayerDescriptor:
    """Non-owning reference to a fillable layer found while indexing."""

    layer: SceneNode
    path: str
    type: str
    can_fill: bool

    @property
    def name(self) -> str:
        return self.layer.name


class LayerIndex(Mapping[str, Tuple[LayerDescriptor, ...]]):
    """Read-only mapping of normalized layer name → descriptors in traversal order."""

    def __init__(self, buckets: Dict[str, List[LayerDescriptor]], node_count: int = 0, max_depth: int = 0):
        self._buckets = MappingProxyType({key: tuple(value) for key, value in buckets.items()})
        self.node_count = node_count
        self.max_depth = max_depth

    def __getitem__(self, key: str) -> Tuple[LayerDescriptor, ...]:
        return self._buckets[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._buckets)

    def __len__(self) -> int:
        return len(self._buckets)

    def candidates(self, name: str) -> Tuple[LayerDescriptor, ...]:
        """All descriptors whose layer name matches `name` after normalization."""
        return self._buckets.get(normalize_name(name), ())

    def first(self, name: str) -> Optional[LayerDescriptor]:
        """First match in document order; later duplicates are ignored."""
        bucket = self.candidates(name)
        return bucket[0] if bucket else None


def build_layer_index(root: SceneNode) -> LayerIndex:
    """Index every named, fill-capable node in the subtree rooted at `root`.

    Iterative pre-order DFS: children are pushed in reverse so they pop in
    document order. Non-fillable nodes are still descended into.
    """
    logger.info(f"🔍 Indexing named layers in frame: {root.name}")
    buckets: Dict[str, List[LayerDescriptor]] = {}
    node_count = 0
    max_depth = 0

    stack: List[Tuple[SceneNode, List[str], int]] = [(root, [root.name or root.type], 0)]
    while stack:
        node, path, depth = stack.pop()
        node_count += 1
        max_depth = max(max_depth, depth)

        can_fill = can_hold_image_fill(node)
        key = normalize_name(node.name)
        if key and can_fill:
            buckets.setdefault(key, []).append(LayerDescriptor(
                layer=node,
                path=PATH_SEPARATOR.join(path),
                type=node.type,
                can_fill=can_fill,
            ))

        for child in reversed(node.children):
            stack.append((child, path + [child.name or child.type], depth + 1))

    logger.info(f"✅ Indexed {len(buckets)} named layers out of {node_count} total nodes")
    logger.debug(f"📊 Frame structure: max depth {max_depth}, named layers: {len(buckets)}")
    return LayerIndex(buckets, node_count=node_count, max_depth=max_depth)
