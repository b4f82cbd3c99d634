"""
Figma Host - the plugin-side operations the import backend relies on.

FigmaHost is the boundary the core logic talks to. BridgeFigmaHost fulfils it
by sending tool_call commands to the plugin through the FigmaCommunicator;
tests substitute an in-memory double.
"""

import base64
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from import_errors import SelectionError
from figma_communicator import FigmaCommunicator
from figma_scene import SceneNode

logger = logging.getLogger(__name__)


class FigmaHost(ABC):
    """Host operations used by import, selection and viewport focusing."""

    @abstractmethod
    async def get_selection(self) -> List[SceneNode]:
        ...

    @abstractmethod
    async def create_image(self, data: bytes) -> str:
        """Register image bytes with the host and return the image hash."""

    @abstractmethod
    async def set_fills(self, node: SceneNode, paints: List[Dict[str, Any]]) -> None:
        ...

    @abstractmethod
    async def set_selection(self, nodes: Sequence[SceneNode]) -> None:
        ...

    @abstractmethod
    async def scroll_and_zoom_into_view(self, nodes: Sequence[SceneNode]) -> None:
        ...

    @abstractmethod
    async def get_viewport_center(self) -> tuple[float, float]:
        ...

    @abstractmethod
    async def notify(self, message: str, timeout_ms: int = 3000) -> None:
        ...


class BridgeFigmaHost(FigmaHost):
    """FigmaHost backed by plugin commands sent over the bridge."""

    def __init__(self, communicator: FigmaCommunicator):
        self.communicator = communicator

    async def get_selection(self) -> List[SceneNode]:
        result = await self.communicator.send_command("get_selection")
        raw_selection = result.get("selection") if isinstance(result, dict) else None
        selection = [SceneNode.from_payload(raw) for raw in (raw_selection or [])]
        logger.debug(f"🧭 Selection received: {[(n.type, n.name) for n in selection]}")
        return selection

    async def create_image(self, data: bytes) -> str:
        result = await self.communicator.send_command(
            "create_image",
            {"bytes_base64": base64.b64encode(data).decode("ascii")},
        )
        image_hash = result.get("hash") if isinstance(result, dict) else None
        if not image_hash:
            raise ValueError("Plugin did not return an image hash")
        return str(image_hash)

    async def set_fills(self, node: SceneNode, paints: List[Dict[str, Any]]) -> None:
        await self.communicator.send_command("set_fills", {"node_ids": [node.id], "paints": paints})
        node.fills = list(paints)

    async def set_selection(self, nodes: Sequence[SceneNode]) -> None:
        await self.communicator.send_command("set_selection", {"node_ids": [n.id for n in nodes]})

    async def scroll_and_zoom_into_view(self, nodes: Sequence[SceneNode]) -> None:
        await self.communicator.send_command("scroll_and_zoom_into_view", {"node_ids": [n.id for n in nodes]})

    async def get_viewport_center(self) -> tuple[float, float]:
        result = await self.communicator.send_command("get_viewport")
        center = result.get("center") if isinstance(result, dict) else None
        if not isinstance(center, dict):
            raise ValueError("Plugin did not return a viewport center")
        return (float(center["x"]), float(center["y"]))

    async def notify(self, message: str, timeout_ms: int = 3000) -> None:
        await self.communicator.send_command("notify", {"message": message, "timeout": timeout_ms})


def validate_single_frame_selection(selection: Sequence[SceneNode]) -> SceneNode:
    """Return the single selected frame or raise SelectionError."""
    logger.info(f"🔍 Validating selection ({len(selection)} item(s))")
    if len(selection) == 0:
        raise SelectionError("Please select a frame to work with")
    if len(selection) > 1:
        raise SelectionError("Please select only one frame at a time")
    selected = selection[0]
    if selected.type != "FRAME":
        raise SelectionError(
            "Selected item must be a Frame. Please select a frame and try again.",
            details={"selected_type": selected.type},
        )
    return selected


def selected_frame(selection: Sequence[SceneNode]) -> Optional[SceneNode]:
    """The selected frame when exactly one frame is selected, else None."""
    if len(selection) == 1 and selection[0].type == "FRAME":
        return selection[0]
    return None
