"""
Plugin Errors - user-facing failures of an import or selection request.

Each error carries a stable `code` and a human-readable `message`, mirroring
the structured payload shape of ToolExecutionError so the UI can treat both
the same way.
"""

from typing import Any, Dict


class PluginError(Exception):
    """Base class for request-level failures reported to the plugin UI."""

    code: str = "plugin_error"

    def __init__(self, message: str, details: Dict[str, Any] | None = None):
        self.message = message
        self.details: Dict[str, Any] = details or {}
        super().__init__(message)

    @property
    def payload(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class SelectionError(PluginError):
    """The current canvas selection does not satisfy the request's precondition."""

    code = "invalid_selection"


class NoImportDataError(PluginError):
    """A layer lookup was requested before any import completed."""

    code = "no_import_data"

    def __init__(self, message: str = "No import data available", details: Dict[str, Any] | None = None):
        super().__init__(message, details)


class LayerNotFoundError(PluginError):
    code = "layer_not_found"
