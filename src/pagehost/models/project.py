"""Project domain models."""

from __future__ import annotations

import secrets
import time
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


class ProjectStatus(str, Enum):
    """Lifecycle status for a deployed project. Only ever moves forward."""

    PROVISIONING = "provisioning"
    LIVE = "live"
    TEARING_DOWN = "tearing-down"
    GONE = "gone"


_STATUS_ORDER = {status: index for index, status in enumerate(ProjectStatus)}


class TunnelStatus(str, Enum):
    """Public exposure state of a project."""

    DISABLED = "disabled"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    INFERRED = "inferred"
    UNAVAILABLE = "unavailable"


class DeployFile(BaseModel):
    """One generated file as handed over by the generation pipeline."""

    name: str | None = None
    content: str | None = None
    language: str | None = None

    @property
    def normalized_name(self) -> str:
        return (self.name or "").strip().lower()


def new_project_id() -> str:
    return f"project_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


class Project(BaseModel):
    """Deployed project metadata."""

    id: str = Field(default_factory=new_project_id)
    files: list[str] = Field(default_factory=list)
    directory: Path
    port: int | None = None
    public_url: str | None = None
    tunnel_status: TunnelStatus = TunnelStatus.DISABLED
    tunnel_error: str | None = None
    status: ProjectStatus = ProjectStatus.PROVISIONING
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def advance(self, status: ProjectStatus) -> None:
        """Move to ``status``; raises ``ValueError`` on a backwards transition."""
        if _STATUS_ORDER[status] < _STATUS_ORDER[self.status]:
            msg = f"Cannot move project {self.id} from {self.status.value} to {status.value}"
            raise ValueError(msg)
        self.status = status

    @property
    def public_url_confirmed(self) -> bool:
        return self.tunnel_status is TunnelStatus.CONFIRMED
