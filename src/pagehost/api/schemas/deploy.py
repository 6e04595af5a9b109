"""Deploy API schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field

from pagehost.models.project import DeployFile


class DeployRequest(BaseModel):
    """Deploy payload as produced by the generation pipeline."""

    files: list[DeployFile] = Field(default_factory=list)

    def file_names(self) -> list[str | None]:
        return [file.name for file in self.files]
