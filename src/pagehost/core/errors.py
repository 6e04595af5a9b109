"""Error taxonomy for the deployment manager.

Every error that crosses the API boundary is a ``DeploymentError`` carrying a
stable ``kind``, a human readable message and a ``details`` mapping.
"""

from __future__ import annotations

from typing import Any


class DeploymentError(Exception):
    """Base class for structured deployment failures."""

    kind = "DeploymentError"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "error": self.message, "details": self.details}


class InvalidInput(DeploymentError):
    """Malformed file list; raised before any resource is allocated."""

    kind = "InvalidInput"
    status_code = 400


class BindError(DeploymentError):
    """The port was taken between probing and binding."""

    kind = "BindError"
    status_code = 503

    def __init__(self, port: int, message: str | None = None) -> None:
        super().__init__(message or f"Port {port} is already in use", {"port": port})
        self.port = port


class ExhaustedRange(DeploymentError):
    kind = "ExhaustedRange"
    status_code = 503


class ServerStartError(DeploymentError):
    kind = "ServerStartError"
    status_code = 500


class TunnelUnavailable(DeploymentError):
    """No public URL could be obtained. Never fails a deploy."""

    kind = "TunnelUnavailable"
    status_code = 502


class ProjectNotFound(DeploymentError):
    kind = "NotFound"
    status_code = 404

    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project not found: {project_id}", {"projectId": project_id})
        self.project_id = project_id
