"""On-disk workspaces, one directory per deployed project."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path, PurePosixPath
from typing import Sequence

from pagehost.core.errors import InvalidInput, ServerStartError
from pagehost.models.project import DeployFile

logger = logging.getLogger(__name__)


class WorkspaceStore:
    """Create, fill and remove project workspace directories."""

    def __init__(self, root: Path, *, entry_document: str = "index.html") -> None:
        self._root = root
        self._entry_document = entry_document.lower()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def entry_document(self) -> str:
        return self._entry_document

    def path_for(self, project_id: str) -> Path:
        return self._root / project_id

    def validate(self, files: Sequence[DeployFile]) -> list[DeployFile]:
        """Check a file list without touching the disk.

        Returns copies whose names are normalized to lower case.
        """
        if not files:
            raise InvalidInput("No files provided")

        normalized: list[DeployFile] = []
        seen: set[str] = set()
        for index, file in enumerate(files):
            name = file.normalized_name
            if not name or not file.content:
                raise InvalidInput(
                    "Invalid file object: missing name or content",
                    {"index": index, "name": file.name},
                )
            relative = PurePosixPath(name.replace("\\", "/"))
            if not relative.parts or relative.is_absolute() or ".." in relative.parts:
                raise InvalidInput(
                    f"File name escapes the project directory: {file.name}",
                    {"index": index, "name": file.name},
                )
            name = relative.as_posix()
            if name in seen:
                raise InvalidInput(f"Duplicate file name: {name}", {"name": name})
            seen.add(name)
            normalized.append(DeployFile(name=name, content=file.content, language=file.language))

        if self._entry_document not in seen:
            raise InvalidInput(
                f"{self._entry_document} is required",
                {"entryDocument": self._entry_document},
            )
        return normalized

    def materialize(self, project_id: str, files: Sequence[DeployFile]) -> Path:
        """Write ``files`` into a fresh directory for ``project_id``."""
        validated = self.validate(files)
        directory = self.path_for(project_id)
        logger.info("Creating project directory: %s", directory)
        try:
            directory.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            raise ServerStartError(
                f"Could not create project directory: {exc}",
                {"directory": str(directory)},
            ) from exc

        for file in validated:
            target = directory / str(file.name)
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(str(file.content), encoding="utf-8", newline="")
            except OSError as exc:
                shutil.rmtree(directory, ignore_errors=True)
                raise ServerStartError(
                    f"Could not write {file.name}: {exc}",
                    {"directory": str(directory), "file": file.name},
                ) from exc
            logger.debug("Wrote %s", target)
        return directory

    def release(self, directory: Path) -> None:
        if not directory.exists():
            logger.info("Project directory already removed: %s", directory)
            return
        shutil.rmtree(directory)
        logger.info("Removed project directory: %s", directory)
