"""In-memory table of deployed projects."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, TypeVar

from pagehost.core.errors import ProjectNotFound
from pagehost.core.static_server import ListenerHandle
from pagehost.models.project import Project

T = TypeVar("T")


@dataclass(slots=True)
class Deployment:
    """A project plus the live resources it owns."""

    project: Project
    listener: ListenerHandle | None = None


class DeploymentRegistry:
    """Thread-safe map of project id to deployment.

    Entries are only mutated through ``update`` so every change happens under
    the registry lock.
    """

    def __init__(self) -> None:
        self._entries: dict[str, Deployment] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, project_id: object) -> bool:
        with self._lock:
            return project_id in self._entries

    def register(self, deployment: Deployment) -> None:
        project_id = deployment.project.id
        with self._lock:
            if project_id in self._entries:
                msg = f"Project already registered: {project_id}"
                raise ValueError(msg)
            self._entries[project_id] = deployment

    def get(self, project_id: str) -> Deployment | None:
        with self._lock:
            return self._entries.get(project_id)

    def lookup(self, project_id: str) -> Deployment:
        deployment = self.get(project_id)
        if deployment is None:
            raise ProjectNotFound(project_id)
        return deployment

    def list(self) -> list[Deployment]:
        with self._lock:
            entries = list(self._entries.values())
        return sorted(entries, key=lambda entry: entry.project.created_at)

    def update(self, project_id: str, mutate: Callable[[Deployment], T]) -> T:
        """Apply ``mutate`` to an entry while holding the lock."""
        with self._lock:
            deployment = self._entries.get(project_id)
            if deployment is None:
                raise ProjectNotFound(project_id)
            return mutate(deployment)

    def unregister(self, project_id: str) -> Deployment | None:
        with self._lock:
            return self._entries.pop(project_id, None)
