"""Node builders and an in-memory FigmaHost for tests."""

from __future__ import annotations

import itertools
from typing import Any

from figma_host import FigmaHost
from figma_scene import BoundingBox, SceneNode

_ids = itertools.count(1)
_DEFAULT = object()

# Types whose Figma nodes expose a `fills` attribute
_TYPES_WITH_FILLS = {
    "RECTANGLE", "FRAME", "ELLIPSE", "POLYGON", "STAR", "VECTOR",
    "COMPONENT", "INSTANCE", "TEXT", "BOOLEAN_OPERATION",
}


def node(
    node_type: str,
    name: str = "",
    children: list[SceneNode] | tuple = (),
    fills: Any = _DEFAULT,
    box: tuple[float, float, float, float] | None = None,
) -> SceneNode:
    if fills is _DEFAULT:
        fills = [] if node_type in _TYPES_WITH_FILLS else None
    result = SceneNode(
        id=f"{next(_ids)}:1",
        type=node_type,
        name=name,
        fills=fills,
        absolute_bounding_box=BoundingBox(*box) if box else None,
    )
    for child in children:
        result.add_child(child)
    return result


def frame(name: str, *children: SceneNode, **kwargs: Any) -> SceneNode:
    return node("FRAME", name, children, **kwargs)


def rect(name: str, **kwargs: Any) -> SceneNode:
    return node("RECTANGLE", name, **kwargs)


def group(name: str, *children: SceneNode) -> SceneNode:
    return node("GROUP", name, children)


def text(name: str) -> SceneNode:
    return node("TEXT", name)


class FakeFigmaHost(FigmaHost):
    """Records every host call as (method, args) in `calls`."""

    def __init__(self, selection: list[SceneNode] | None = None) -> None:
        self.selection = list(selection or [])
        self.calls: list[tuple[str, tuple]] = []
        self.viewport_center = (0.0, 0.0)
        self.failures: dict[str, Exception] = {}
        self.failing_images: dict[bytes, Exception] = {}
        self.failing_scroll_calls: set[int] = set()
        self._hashes = itertools.count(1)
        self._scroll_count = 0

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        if method in self.failures:
            raise self.failures[method]

    def called(self, method: str) -> list[tuple]:
        return [args for name, args in self.calls if name == method]

    async def get_selection(self) -> list[SceneNode]:
        self._record("get_selection")
        return list(self.selection)

    async def create_image(self, data: bytes) -> str:
        self._record("create_image", data)
        if data in self.failing_images:
            raise self.failing_images[data]
        return f"hash-{next(self._hashes)}"

    async def set_fills(self, node: SceneNode, paints: list[dict[str, Any]]) -> None:
        self._record("set_fills", node, paints)
        node.fills = list(paints)

    async def set_selection(self, nodes) -> None:
        self._record("set_selection", list(nodes))

    async def scroll_and_zoom_into_view(self, nodes) -> None:
        self._scroll_count += 1
        self._record("scroll_and_zoom_into_view", list(nodes))
        if self._scroll_count in self.failing_scroll_calls:
            raise RuntimeError(f"viewport busy (call {self._scroll_count})")

    async def get_viewport_center(self) -> tuple[float, float]:
        self._record("get_viewport_center")
        return self.viewport_center

    async def notify(self, message: str, timeout_ms: int = 3000) -> None:
        self._record("notify", message, timeout_ms)
