"""
Layer Focus - find a layer by name after an import and bring it into view.

resolve_layer() is the deterministic part: it re-indexes the currently
selected frame and returns the first matching layer. LayerFocuser drives the
host's selection and viewport around it. Viewport calls are best-effort: each
attempt, immediate or delayed, is guarded on its own so one failure never
cancels the others or the request.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from import_errors import LayerNotFoundError, PluginError, SelectionError
from figma_host import FigmaHost, selected_frame
from layer_index import LayerDescriptor, build_layer_index
from figma_scene import SceneNode, find_parent_frame
from import_session import ImportSession

logger = logging.getLogger(__name__)

# Message types emitted to the plugin UI
MESSAGE_TYPE_SELECTION_SUCCESS = "SELECTION_SUCCESS"
MESSAGE_TYPE_SELECTION_ERROR = "SELECTION_ERROR"
MESSAGE_TYPE_VIEWPORT_FOCUSING = "VIEWPORT_FOCUSING"
MESSAGE_TYPE_VIEWPORT_SUCCESS = "VIEWPORT_SUCCESS"

# Max distance (canvas units, per axis) between node and viewport centers
VIEWPORT_TOLERANCE = 150.0
RAPID_FOCUS_ATTEMPTS = 3

# Delays in seconds
RESELECT_DELAY = 0.1
PARENT_REFOCUS_DELAY = 0.3
FINAL_FOCUS_DELAY = 0.5
SECONDARY_FOCUS_DELAY = 0.2

Emit = Callable[[Dict[str, Any]], Awaitable[None]]


def resolve_layer(name: str, session: ImportSession, selection: Sequence[SceneNode]) -> LayerDescriptor:
    """Return the first layer named `name` in the selected frame.

    Raises NoImportDataError before looking at the selection when no import has
    completed yet, SelectionError unless exactly one frame is selected, and
    LayerNotFoundError when the frame has no fill-capable layer of that name.
    """
    session.require_last_result()

    frame = selected_frame(selection)
    if frame is None:
        raise SelectionError("Please select a target frame first")

    index = build_layer_index(frame)
    descriptor = index.first(name)
    if descriptor is None:
        raise LayerNotFoundError(f'Layer "{name}" not found in the selected frame', details={"layer_name": name})
    return descriptor


class LayerFocuser:
    """Selects and/or scrolls the viewport to a layer found by name."""

    def __init__(self, host: FigmaHost, session: ImportSession, emit: Emit, tolerance: float = VIEWPORT_TOLERANCE):
        self.host = host
        self.session = session
        self.emit = emit
        self.tolerance = tolerance
        self._pending: set[asyncio.Task] = set()

    async def select_layer(self, layer_name: str) -> Optional[LayerDescriptor]:
        """Select the layer, focus the viewport on it and report to the UI.

        Returns the resolved descriptor, or None when the request failed (the
        failure has already been reported as SELECTION_ERROR).
        """
        logger.info(f"🎯 Starting layer selection for: {layer_name}")
        try:
            descriptor = await self._resolve(layer_name)
            node = descriptor.layer

            await self.host.set_selection([node])
            # Re-select once the canvas has settled so the highlight sticks
            self._schedule(RESELECT_DELAY, lambda: self.host.set_selection([node]), "re-selection")

            await self._focus_with_verification(node)

            label = node.name or layer_name
            await self._notify(f'Selected {node.type.lower()}: "{label}" - Check the canvas for the highlighted layer', 3000)
            await self.emit({"type": MESSAGE_TYPE_SELECTION_SUCCESS, "layerName": label})
            logger.info("✅ Layer selection completed successfully")
            return descriptor
        except PluginError as e:
            logger.error(f"❌ Layer selection failed: {e}")
            await self.emit({"type": MESSAGE_TYPE_SELECTION_ERROR, "message": e.message, "error": e.payload})
            return None
        except Exception as e:
            logger.error(f"❌ Layer selection failed: {e}")
            await self.emit({"type": MESSAGE_TYPE_SELECTION_ERROR, "message": str(e)})
            return None

    async def focus_layer(self, layer_name: str) -> Optional[LayerDescriptor]:
        """Bring the layer into view without changing the selection."""
        logger.info(f"🔍 Starting viewport focus for: {layer_name}")
        try:
            descriptor = await self._resolve(layer_name)
            node = descriptor.layer

            await self.emit({"type": MESSAGE_TYPE_VIEWPORT_FOCUSING})
            try:
                await self.host.scroll_and_zoom_into_view([node])
                self._schedule(SECONDARY_FOCUS_DELAY, lambda: self.host.scroll_and_zoom_into_view([node]), "secondary focus")
                self._schedule(FINAL_FOCUS_DELAY, lambda: self._final_focus(node), "final focus")
            except Exception as e:
                logger.warning(f"⚠️ Viewport focusing failed: {e}")
                await self._focus_parent_frame(node, "fallback")

            await self._notify(f"Viewport focused on: {node.name or layer_name}", 2000)
            logger.info("✅ Viewport focusing completed successfully")
            return descriptor
        except PluginError as e:
            logger.error(f"❌ Viewport focusing failed: {e}")
            await self.emit({"type": MESSAGE_TYPE_SELECTION_ERROR, "message": e.message, "error": e.payload})
            return None
        except Exception as e:
            logger.error(f"❌ Viewport focusing failed: {e}")
            await self.emit({"type": MESSAGE_TYPE_SELECTION_ERROR, "message": str(e)})
            return None

    async def drain(self) -> None:
        """Wait for every scheduled focus attempt to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def cancel_pending(self) -> None:
        for task in list(self._pending):
            if not task.done():
                task.cancel()
        self._pending.clear()

    # Internal
    async def _resolve(self, layer_name: str) -> LayerDescriptor:
        self.session.require_last_result()
        selection = await self.host.get_selection()
        return resolve_layer(layer_name, self.session, selection)

    async def _focus_with_verification(self, node: SceneNode) -> None:
        """Focus, check the node landed near the viewport center, retry if not."""
        await self.emit({"type": MESSAGE_TYPE_VIEWPORT_FOCUSING})
        try:
            await self.host.scroll_and_zoom_into_view([node])
            logger.info("✅ Direct viewport focus completed")

            bounds = node.absolute_bounding_box
            if bounds is not None:
                node_x, node_y = bounds.center
                view_x, view_y = await self.host.get_viewport_center()
                logger.debug(f"🎯 Viewport center: ({view_x}, {view_y}), node center: ({node_x}, {node_y})")

                if abs(node_x - view_x) > self.tolerance or abs(node_y - view_y) > self.tolerance:
                    logger.info("🔄 Node is outside viewport tolerance, focusing via parent frame")
                    parent = find_parent_frame(node)
                    if parent is not None and parent is not node:
                        await self._guarded(lambda: self.host.scroll_and_zoom_into_view([parent]), "parent frame focus")
                        self._schedule(PARENT_REFOCUS_DELAY, lambda: self.host.scroll_and_zoom_into_view([node]), "refocus after parent")

                    for attempt in range(1, RAPID_FOCUS_ATTEMPTS + 1):
                        await self._guarded(lambda: self.host.scroll_and_zoom_into_view([node]), f"rapid focus attempt {attempt}")
                else:
                    logger.info("✅ Node is already within viewport tolerance")

            self._schedule(FINAL_FOCUS_DELAY, lambda: self._final_focus(node), "final focus")
        except Exception as e:
            logger.warning(f"⚠️ Primary viewport focusing failed: {e}")
            await self._focus_parent_frame(node, "emergency fallback")

    async def _final_focus(self, node: SceneNode) -> None:
        await self.host.scroll_and_zoom_into_view([node])
        await self.emit({"type": MESSAGE_TYPE_VIEWPORT_SUCCESS})

    async def _focus_parent_frame(self, node: SceneNode, label: str) -> None:
        parent = find_parent_frame(node)
        if parent is not None and parent is not node:
            await self._guarded(lambda: self.host.scroll_and_zoom_into_view([parent]), label)

    async def _notify(self, message: str, timeout_ms: int) -> None:
        await self._guarded(lambda: self.host.notify(message, timeout_ms), "notification")

    async def _guarded(self, action: Callable[[], Awaitable[Any]], label: str) -> bool:
        try:
            await action()
            logger.debug(f"✅ {label} completed")
            return True
        except Exception as e:
            logger.warning(f"⚠️ {label} failed: {e}")
            return False

    def _schedule(self, delay: float, action: Callable[[], Awaitable[Any]], label: str) -> asyncio.Task:
        async def _run_later() -> None:
            await asyncio.sleep(delay)
            await self._guarded(action, label)

        task = asyncio.create_task(_run_later())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task
