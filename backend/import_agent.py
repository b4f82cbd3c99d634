import json
import os
import sys
import signal
import logging
import asyncio
from typing import Dict, Any, List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection, connect

from import_errors import PluginError
from figma_communicator import FigmaCommunicator
from figma_host import BridgeFigmaHost, FigmaHost, selected_frame
from image_import import run_import
from layer_focus import LayerFocuser
from figma_scene import SceneNode
from import_session import ImportSession

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

# Bridge protocol
MESSAGE_TYPE_JOIN = "join"
MESSAGE_TYPE_PING = "ping"
MESSAGE_TYPE_PONG = "pong"
MESSAGE_TYPE_SYSTEM = "system"
MESSAGE_TYPE_TOOL_RESPONSE = "tool_response"
MESSAGE_TYPE_BRIDGE_ERROR = "error"

# Plugin UI requests
MESSAGE_TYPE_IMPORT_IMAGES = "IMPORT_IMAGES"
MESSAGE_TYPE_SELECT_SKIPPED_LAYER = "SELECT_SKIPPED_LAYER"
MESSAGE_TYPE_FOCUS_VIEWPORT_ON_LAYER = "FOCUS_VIEWPORT_ON_LAYER"
MESSAGE_TYPE_SELECTION_CHANGED = "SELECTION_CHANGED"
MESSAGE_TYPE_CLEAR_IMPORT = "CLEAR_IMPORT"

# Plugin UI notifications
MESSAGE_TYPE_PROGRESS = "PROGRESS"
MESSAGE_TYPE_IMPORT_COMPLETE = "IMPORT_COMPLETE"
MESSAGE_TYPE_IMPORT_CLEARED = "IMPORT_CLEARED"
MESSAGE_TYPE_ERROR = "ERROR"
MESSAGE_TYPE_FRAME_SELECTED = "FRAME_SELECTED"
MESSAGE_TYPE_NO_FRAME_SELECTED = "NO_FRAME_SELECTED"


class ImageImportAgent:
    def __init__(self, bridge_url: str, channel: str, tool_timeout: float = 30.0):
        self.bridge_url = bridge_url
        self.channel = channel
        self.tool_timeout = tool_timeout
        self.websocket: Optional[ClientConnection] = None
        self.running = True
        self.reconnect_delay = 1  # Start with 1 second
        self.max_reconnect_delay = 30  # Max 30 seconds
        self._keep_alive_task: Optional[asyncio.Task] = None
        self._background_tasks: set[asyncio.Task] = set()

        self.communicator: Optional[FigmaCommunicator] = None
        self.host: Optional[FigmaHost] = None
        self.focuser: Optional[LayerFocuser] = None
        # Survives reconnects: the plugin may re-join between import and selection
        self.session = ImportSession()

    async def _send_json(self, payload: Dict[str, Any]) -> None:
        """Send a JSON-serializable payload over the websocket if connected."""
        if not self.websocket:
            raise RuntimeError("WebSocket not connected")
        await self.websocket.send(json.dumps(payload))

    async def _send_progress(self, percent: int) -> None:
        await self._send_json({"type": MESSAGE_TYPE_PROGRESS, "percent": percent})

    def attach_host(self, host: FigmaHost) -> None:
        """Wire the host used by import and focus requests."""
        self.host = host
        self.focuser = LayerFocuser(host, self.session, emit=self._send_json)

    async def connect(self) -> bool:
        """Connect to the bridge and join as agent"""
        try:
            logger.info(f"Connecting to bridge at {self.bridge_url}")
            # Image batches are posted as byte arrays; lift the frame size limit
            self.websocket = await connect(self.bridge_url, max_size=None)

            await self._send_json({
                "type": MESSAGE_TYPE_JOIN,
                "role": "agent",
                "channel": self.channel
            })
            logger.info(f"Sent join message for channel: {self.channel}")

            await self._send_json({"type": MESSAGE_TYPE_PING})
            logger.info("🏓 Sent ping message to test WebSocket bidirectional communication")

            self._keep_alive_task = asyncio.create_task(self._websocket_keep_alive())
            logger.info("💓 Started WebSocket keep-alive mechanism")

            self.communicator = FigmaCommunicator(self.websocket, timeout=self.tool_timeout)
            self.attach_host(BridgeFigmaHost(self.communicator))
            logger.info(f"Initialized FigmaCommunicator for plugin commands (timeout: {self.tool_timeout}s)")

            # Reset reconnect delay on successful connection
            self.reconnect_delay = 1
            return True

        except Exception as e:
            logger.error(f"Failed to connect: {e}")
            return False

    async def handle_message(self, message: Dict[str, Any]) -> None:
        """Handle incoming messages from the bridge via a clean async dispatch."""
        msg_type = message.get("type")
        logger.info(f"🔍 Message received - Type: '{msg_type}', Keys: {list(message.keys())}")

        handlers = {
            MESSAGE_TYPE_SYSTEM: self._handle_system,
            MESSAGE_TYPE_PONG: self._handle_pong,
            MESSAGE_TYPE_TOOL_RESPONSE: self._handle_tool_response,
            MESSAGE_TYPE_BRIDGE_ERROR: self._handle_bridge_error,
            MESSAGE_TYPE_IMPORT_IMAGES: self._handle_import_images,
            MESSAGE_TYPE_SELECT_SKIPPED_LAYER: self._handle_select_skipped_layer,
            MESSAGE_TYPE_FOCUS_VIEWPORT_ON_LAYER: self._handle_focus_viewport,
            MESSAGE_TYPE_SELECTION_CHANGED: self._handle_selection_changed,
            MESSAGE_TYPE_CLEAR_IMPORT: self._handle_clear_import,
        }
        handler = handlers.get(msg_type, self._handle_unknown)
        await handler(message)

    async def _handle_system(self, message: Dict[str, Any]) -> None:
        logger.info(f"🔧 System message: {message.get('message')}")

    async def _handle_pong(self, _: Dict[str, Any]) -> None:
        logger.info("🏓 Received pong response - WebSocket bidirectional communication WORKING!")

    async def _handle_tool_response(self, message: Dict[str, Any]) -> None:
        logger.debug(f"📨 Received tool_response: {message.get('id', 'no-id')}")
        if self.communicator:
            self.communicator.handle_tool_response(message)
        else:
            logger.warning("Received tool_response but communicator not initialized")

    async def _handle_bridge_error(self, message: Dict[str, Any]) -> None:
        logger.error(f"Bridge error: {message.get('message', 'Unknown error')}")

    async def _handle_unknown(self, message: Dict[str, Any]) -> None:
        logger.debug(f"Ignoring unknown message type: {message.get('type')}")

    async def _handle_import_images(self, message: Dict[str, Any]) -> None:
        image_files = message.get("imageFiles") or []
        logger.info(f"📸 Handling IMPORT_IMAGES request ({len(image_files)} file(s))")
        # Host calls are answered through this same listen loop; never block it
        self._spawn(self.import_images(image_files))

    async def _handle_select_skipped_layer(self, message: Dict[str, Any]) -> None:
        logger.info(f"🎯 Handling SELECT_SKIPPED_LAYER request (index={message.get('index')})")
        self._spawn(self._require_focuser().select_layer(str(message.get("layerName") or "")))

    async def _handle_focus_viewport(self, message: Dict[str, Any]) -> None:
        logger.info(f"🔍 Handling FOCUS_VIEWPORT_ON_LAYER request (index={message.get('index')})")
        self._spawn(self._require_focuser().focus_layer(str(message.get("layerName") or "")))

    async def _handle_selection_changed(self, message: Dict[str, Any]) -> None:
        raw_selection = message.get("selection") or []
        try:
            selection = [SceneNode.from_payload(raw) for raw in raw_selection]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"⚠️ Ignoring malformed selection payload: {e}")
            return
        await self._send_json(selection_feedback(selection))

    async def _handle_clear_import(self, _: Dict[str, Any]) -> None:
        logger.info("🧹 Handling CLEAR_IMPORT request")
        if self.focuser:
            self.focuser.cancel_pending()
        self.session.clear()
        await self._send_json({"type": MESSAGE_TYPE_IMPORT_CLEARED})

    async def import_images(self,image_files: List[Dict[str, Any]]) -> None:
        """Run one import and report the outcome (or the failure) to the UI."""
        try:
            if self.host is None:
                raise RuntimeError("Plugin host not connected")
            result = await run_import(image_files, self.host, self.session, on_progress=self._send_progress)
            await self._send_json({"type": MESSAGE_TYPE_IMPORT_COMPLETE, "result": result.to_payload()})
            logger.info("✅ Image import completed successfully")
        except PluginError as e:
            logger.error(f"❌ Image import failed: {e}")
            await self._send_json({"type": MESSAGE_TYPE_ERROR, "message": e.message, "error": e.payload})
        except ValidationError as e:
            logger.error(f"❌ Image import received invalid files: {e}")
            await self._send_json({"type": MESSAGE_TYPE_ERROR, "message": f"Invalid image files: {e.error_count()} error(s)"})
        except Exception as e:
            logger.error(f"❌ Image import failed: {e}")
            await self._send_json({"type": MESSAGE_TYPE_ERROR, "message": str(e)})

    def _require_focuser(self) -> LayerFocuser:
        if self.focuser is None:
            raise RuntimeError("Plugin host not connected")
        return self.focuser

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def cancel_active_operations(self, reason: str = "") -> None:
        """Cancel in-flight requests and pending plugin commands."""
        if self._background_tasks:
            logger.info(f"🧹 Cancelling {len(self._background_tasks)} active task(s) ({reason})")
            for task in list(self._background_tasks):
                if not task.done():
                    task.cancel()
            await asyncio.sleep(0)
        if self.focuser:
            self.focuser.cancel_pending()
        if self.communicator:
            self.communicator.cleanup_pending_requests()

    async def listen(self) -> None:
        """Listen for messages from the bridge"""
        logger.info("🎧 Starting to listen for messages from bridge")
        while self.running and self.websocket:
            try:
                raw_message = await self.websocket.recv()
            except asyncio.CancelledError:
                logger.info("🛑 Listen loop cancelled")
                raise
            except Exception as e:
                logger.error(f"❌ Error receiving message: {e}")
                break

            if not raw_message:
                logger.warning("📡 Received empty WebSocket message")
                continue

            try:
                message = json.loads(raw_message)
            except json.JSONDecodeError as e:
                logger.error(f"❌ Failed to decode message: {e}, Raw: {str(raw_message)[:200]}")
                continue

            try:
                await self.handle_message(message)
            except Exception as e:
                logger.error(f"❌ Error handling message: {e}")
                try:
                    await self._send_json({"type": MESSAGE_TYPE_ERROR, "message": str(e)})
                except Exception as send_error:
                    logger.debug(f"Failed to report handler error: {send_error}")

        await self.cancel_active_operations("connection_closed")

    async def _websocket_keep_alive(self, interval: int = 30) -> None:
        """Keep WebSocket connection alive with periodic pings"""
        try:
            while self.running and self.websocket:
                await asyncio.sleep(interval)
                if not self.websocket:
                    break
                try:
                    pong_waiter = await self.websocket.ping()
                    await asyncio.wait_for(pong_waiter, timeout=10)
                    logger.debug("💓 WebSocket keep-alive ping successful")
                except asyncio.TimeoutError:
                    logger.warning("💔 WebSocket keep-alive ping timed out")
                    break
                except Exception as e:
                    logger.error(f"💔 WebSocket keep-alive ping failed: {e}")
                    break
        except asyncio.CancelledError:
            logger.debug("💓 WebSocket keep-alive task cancelled")

    async def run_with_reconnect(self) -> None:
        """Main loop with reconnection logic"""
        while self.running:
            try:
                if await self.connect():
                    logger.info("🌉 Connected to bridge successfully")
                    await self.listen()
                else:
                    logger.warning("Failed to connect to bridge")
            except Exception as e:
                logger.error(f"Unexpected error: {e}")

            if self._keep_alive_task and not self._keep_alive_task.done():
                self._keep_alive_task.cancel()

            if self.running:
                logger.info(f"Reconnecting in {self.reconnect_delay} seconds...")
                await asyncio.sleep(self.reconnect_delay)

                # Exponential backoff up to max delay
                self.reconnect_delay = min(self.reconnect_delay * 2, self.max_reconnect_delay)

    def shutdown(self) -> None:
        """Graceful shutdown"""
        logger.info("Shutting down agent")
        self.running = False

        if self._keep_alive_task and not self._keep_alive_task.done():
            self._keep_alive_task.cancel()
            logger.debug("💓 Cancelled WebSocket keep-alive task")

        if self.focuser:
            self.focuser.cancel_pending()

        if self.communicator:
            self.communicator.cleanup_pending_requests()
            logger.info("Cleaned up pending plugin commands")

        self.websocket = None


def selection_feedback(selection: List[SceneNode]) -> Dict[str, Any]:
    """UI message describing whether the selection is a valid import target."""
    frame = selected_frame(selection)
    if frame is not None:
        return {"type": MESSAGE_TYPE_FRAME_SELECTED, "frameName": frame.name}
    return {"type": MESSAGE_TYPE_NO_FRAME_SELECTED}


def get_config(argv: Optional[List[str]] = None) -> Dict[str, Any]:
    """Get configuration from environment variables or CLI args"""
    config: Dict[str, Any] = {
        "bridge_url": os.getenv("BRIDGE_URL", "ws://localhost:3055"),
        "channel": os.getenv("FIGMA_CHANNEL"),
        "tool_timeout": os.getenv("FIGMA_TOOL_TIMEOUT", "30.0"),
        "log_level": os.getenv("LOG_LEVEL", "INFO"),
    }

    # Parse CLI args for overrides
    for arg in (sys.argv[1:] if argv is None else argv):
        if arg.startswith("--channel="):
            config["channel"] = arg.split("=", 1)[1]
        elif arg.startswith("--bridge-url="):
            config["bridge_url"] = arg.split("=", 1)[1]
        elif arg.startswith("--log-level="):
            config["log_level"] = arg.split("=", 1)[1]

    # Use a fixed default channel for simplicity
    if not config["channel"]:
        config["channel"] = "figma-image-import-default"
        logger.info(f"No channel specified, using default: {config['channel']}")

    try:
        config["tool_timeout"] = float(config["tool_timeout"])
    except (TypeError, ValueError):
        logger.warning(f"Invalid FIGMA_TOOL_TIMEOUT={config['tool_timeout']!r}, using 30.0")
        config["tool_timeout"] = 30.0

    config["log_level"] = str(config["log_level"]).upper()
    return config


def main():
    config = get_config()

    logging.basicConfig(
        level=getattr(logging, config["log_level"], logging.INFO),
        format='[%(asctime)s] [image-import] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%dT%H:%M:%S'
    )

    logger.info("Starting Figma image import agent")
    logger.info(f"Bridge URL: {config['bridge_url']}")
    logger.info(f"Channel: {config['channel']}")

    agent = ImageImportAgent(config["bridge_url"], config["channel"], tool_timeout=config["tool_timeout"])

    # Handle shutdown signals
    def signal_handler(signum, frame):
        logger.info("Received shutdown signal")
        agent.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        asyncio.run(agent.run_with_reconnect())
    except KeyboardInterrupt:
        logger.info("Agent interrupted")
    finally:
        agent.shutdown()


if __name__ == "__main__":
    main()
