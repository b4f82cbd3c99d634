"""
Figma Communicator - request/response layer over the bridge.

Every plugin command travels as a `tool_call` carrying a fresh id; the plugin
answers with a `tool_response` echoing that id. Each in-flight call is kept as
one `PendingRequest` until its response, its timeout or a shutdown settles it.
"""

import asyncio
import json
import uuid
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class ToolExecutionError(Exception):
    """
    A plugin command that the plugin itself reported as failed.

    Carries the structured payload `{code, message, details}` plus the command
    and params that produced it.
    """

    def __init__(self, payload: Any, command: str | None = None, params: Dict[str, Any] | None = None):
        self.command = command
        self.params = params

        if isinstance(payload, dict):
            self.code: str = str(payload.get("code", "unknown_plugin_error"))
            self.message: str = str(payload.get("message", ""))
            self.details: Dict[str, Any] = payload.get("details", {}) or {}
            self.payload = payload
        else:
            self.code = "unknown_plugin_error"
            self.message = str(payload)
            self.details = {}
            self.payload = {"code": self.code, "message": self.message, "details": self.details}

        super().__init__(self.message or self.code)


@dataclass
class PendingRequest:
    """One tool_call awaiting its tool_response."""

    command: str
    params: Dict[str, Any]
    future: asyncio.Future
    started_at: float = field(default_factory=time.monotonic)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def fail(self, payload: Dict[str, Any]) -> None:
        self.future.set_exception(ToolExecutionError(payload, command=self.command, params=self.params))


def _error_payload(error_val: Any) -> Dict[str, Any]:
    """Normalize a `tool_response.error` value (object, JSON text or plain text)."""
    if isinstance(error_val, dict):
        return error_val
    if isinstance(error_val, str):
        try:
            parsed = json.loads(error_val)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed
    return {"code": "unknown_plugin_error", "message": str(error_val)}


class FigmaCommunicator:
    """Sends plugin commands over the websocket and matches their responses."""

    def __init__(self, websocket, timeout: float = 30.0):
        self.websocket = websocket
        self.timeout = timeout
        self.pending_requests: Dict[str, PendingRequest] = {}

    def generate_id(self) -> str:
        return str(uuid.uuid4())

    async def send_command(self, command: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Run one plugin command and return its result.

        Raises:
            asyncio.TimeoutError: no response within `timeout` seconds
            ToolExecutionError: the plugin reported the command as failed
        """
        if not self.websocket:
            raise RuntimeError("WebSocket connection not available")

        request_id = self.generate_id()
        request = PendingRequest(command, params or {}, asyncio.get_running_loop().create_future())
        self.pending_requests[request_id] = request
        logger.debug(f"📝 Tracking request {request_id} ({len(self.pending_requests)} in flight)")

        try:
            logger.info(f"🚀 Sending tool_call: {command} with ID: {request_id}")
            logger.debug(f"🚀 Tool call params keys: {list(request.params.keys())}")
            await self.websocket.send(json.dumps({
                "type": "tool_call",
                "id": request_id,
                "command": command,
                "params": request.params,
            }))
            return await asyncio.wait_for(request.future, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"⏰ Tool call {command} (ID: {request_id}) timed out after {request.elapsed:.3f}s (limit: {self.timeout}s)")
            raise asyncio.TimeoutError(f"Tool call '{command}' timed out after {request.elapsed:.1f} seconds")
        except Exception as e:
            logger.error(f"Tool call {command} (ID: {request_id}) failed: {e}")
            raise
        finally:
            self.pending_requests.pop(request_id, None)

    def handle_tool_response(self, message: Dict[str, Any]) -> None:
        """Settle the pending request that `message` answers."""
        request_id = message.get("id")
        logger.debug(f"🔄 Processing tool_response for ID: {request_id}")

        if not request_id:
            logger.warning("❌ Received tool_response without ID")
            return

        request = self.pending_requests.pop(request_id, None)
        if request is None:
            logger.warning(f"❌ Received tool_response for unknown ID: {request_id}")
            return
        if request.future.done():
            logger.debug(f"⚠️ Received tool_response for finished request: {request_id}")
            return

        structured = message.get("error_structured")
        if isinstance(structured, dict):
            logger.error(f"❌ Tool call {request.command} ({request_id}) failed after {request.elapsed:.3f}s: code={structured.get('code')}, message={structured.get('message')}")
            request.fail(structured)
            return

        if "error" in message:
            logger.error(f"❌ Tool call {request.command} ({request_id}) failed after {request.elapsed:.3f}s: {message['error']}")
            request.fail(_error_payload(message["error"]))
            return

        result = message.get("result", {})
        # A result of {success: false} is a failure the plugin caught itself
        if isinstance(result, dict) and result.get("success") is False:
            err_text = result.get("message") or "Tool reported failure"
            logger.error(f"❌ Tool call {request.command} ({request_id}) reported failure after {request.elapsed:.3f}s: {err_text}")
            request.fail({"code": "plugin_reported_failure", "message": str(err_text), "details": {"result": result}})
            return

        logger.info(f"✅ Tool call {request.command} ({request_id}) completed after {request.elapsed:.3f}s")
        request.future.set_result(result)

    def cleanup_pending_requests(self) -> None:
        """Cancel every in-flight command (connection closed or shutting down)."""
        for request_id, request in self.pending_requests.items():
            if not request.future.done():
                request.future.cancel()
                logger.info(f"Cancelled pending {request.command} request: {request_id}")
        self.pending_requests.clear()
