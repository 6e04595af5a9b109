"""Deployment orchestration."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from pagehost.config import Settings
from pagehost.core.errors import BindError, ExhaustedRange, ProjectNotFound, ServerStartError
from pagehost.core.port_allocator import PortAllocator
from pagehost.core.registry import Deployment, DeploymentRegistry
from pagehost.core.static_server import ListenerHandle, StaticServer
from pagehost.core.tunnel_manager import (
    SubprocessTunnelProvider,
    TunnelManager,
    TunnelOutcome,
)
from pagehost.core.workspace_store import WorkspaceStore
from pagehost.models.project import (
    DeployFile,
    Project,
    ProjectStatus,
    TunnelStatus,
    new_project_id,
)

logger = logging.getLogger(__name__)

_ID_ATTEMPTS = 5


@dataclass(slots=True)
class DeploymentReport:
    """Point-in-time view of a deployed project."""

    project_id: str
    status: ProjectStatus
    port: int | None
    url: str | None
    public_url: str | None
    public_url_confirmed: bool
    tunnel_status: TunnelStatus
    tunnel_error: str | None
    created_at: datetime
    files: list[str]

    def to_payload(self) -> dict[str, Any]:
        return {
            "projectId": self.project_id,
            "status": self.status.value,
            "port": self.port,
            "url": self.url,
            "publicUrl": self.public_url,
            "publicUrlConfirmed": self.public_url_confirmed,
            "tunnelStatus": self.tunnel_status.value,
            "tunnelError": self.tunnel_error,
            "createdAt": self.created_at.isoformat(),
            "files": list(self.files),
        }


class DeploymentManager:
    """Deploy generated file sets as static sites and tear them down again."""

    def __init__(
        self,
        *,
        workspace: WorkspaceStore,
        ports: PortAllocator,
        server: StaticServer,
        tunnels: TunnelManager,
        registry: DeploymentRegistry,
        public_host: str = "localhost",
        bind_retries: int = 10,
    ) -> None:
        self._workspace = workspace
        self._ports = ports
        self._server = server
        self._tunnels = tunnels
        self._registry = registry
        self._public_host = public_host
        self._bind_retries = bind_retries

    @classmethod
    def from_settings(cls, settings: Settings) -> DeploymentManager:
        provider = SubprocessTunnelProvider(
            settings.tunnel_command,
            fallback_url=settings.tunnel_fallback_url,
            timeout_seconds=settings.tunnel_timeout,
        )
        return cls(
            workspace=WorkspaceStore(settings.projects_dir, entry_document=settings.entry_document),
            ports=PortAllocator(
                host=settings.bind_host,
                floor=settings.port_floor,
                ceiling=settings.port_ceiling,
                max_attempts=settings.max_port_attempts,
            ),
            server=StaticServer(
                host=settings.bind_host,
                entry_document=settings.entry_document,
                start_timeout=settings.server_start_timeout,
            ),
            tunnels=TunnelManager(
                provider,
                enabled=settings.tunnel_enabled,
                attempts=settings.tunnel_attempts,
                retry_delay=settings.tunnel_retry_delay,
            ),
            registry=DeploymentRegistry(),
            public_host=settings.public_host,
            bind_retries=settings.bind_retries,
        )

    @property
    def registry(self) -> DeploymentRegistry:
        return self._registry

    def local_url(self, port: int) -> str:
        return f"http://{self._public_host}:{port}"

    def deploy(self, files: Sequence[DeployFile]) -> DeploymentReport:
        validated = self._workspace.validate(files)
        project = self._register_project([str(file.name) for file in validated])
        logger.info("Deploying %s with files %s", project.id, project.files)

        listener: ListenerHandle | None = None
        try:
            self._workspace.materialize(project.id, validated)
            listener = self._start_listener(project)
            self._registry.update(project.id, lambda entry: self._go_live(entry, listener))
        except BaseException:
            self._rollback(project, listener)
            raise

        if self._tunnels.open(project.id, listener.port, self._record_tunnel):
            # A teardown that ran before the session existed could not cancel it.
            try:
                live = self._registry.update(project.id, self._mark_tunnel_pending)
            except ProjectNotFound:
                live = False
            if not live:
                self._tunnels.terminate(project.id)
                raise ProjectNotFound(project.id)
        logger.info("Project deployed: %s", self.local_url(listener.port))
        return self.status(project.id)

    def status(self, project_id: str) -> DeploymentReport:
        return self._registry.update(project_id, lambda entry: self._report(entry.project))

    def list(self) -> list[DeploymentReport]:
        reports = []
        for entry in self._registry.list():
            try:
                reports.append(self.status(entry.project.id))
            except ProjectNotFound:
                continue
        return reports

    def teardown(self, project_id: str, *, timeout: float = 5.0) -> bool:
        """Release every resource of a project. Returns False if there was nothing to do."""
        try:
            deployment = self._registry.update(project_id, self._begin_teardown)
        except ProjectNotFound:
            return False
        if deployment is None:
            return False

        project = deployment.project
        listener = deployment.listener
        if listener is not None:
            try:
                listener.close(timeout)
            except Exception:
                logger.exception("Failed to close listener for %s", project_id)
        try:
            self._tunnels.terminate(project_id, timeout)
        except Exception:
            logger.exception("Failed to terminate tunnel for %s", project_id)
        try:
            self._workspace.release(project.directory)
        except OSError:
            logger.exception("Failed to remove directory for %s", project_id)

        removed = self._registry.unregister(project_id)
        if removed is not None:
            removed.project.advance(ProjectStatus.GONE)
        logger.info("Cleaned up project %s", project_id)
        return True

    def teardown_all(self, timeout: float = 10.0) -> int:
        """Tear down every project in parallel, waiting at most ``timeout`` seconds."""
        project_ids = [entry.project.id for entry in self._registry.list()]
        per_step = max(timeout / 2, 0.1)
        if not project_ids:
            self._terminate_orphan_tunnels(per_step)
            return 0
        logger.info("Cleaning up %s project(s)", len(project_ids))
        workers = [
            threading.Thread(
                target=self.teardown,
                args=(project_id,),
                kwargs={"timeout": per_step},
                name=f"teardown-{project_id}",
                daemon=True,
            )
            for project_id in project_ids
        ]
        for worker in workers:
            worker.start()
        deadline = time.monotonic() + timeout
        for worker in workers:
            worker.join(max(deadline - time.monotonic(), 0))
        finished = sum(1 for worker in workers if not worker.is_alive())
        if finished < len(workers):
            logger.error(
                "Shutdown budget of %.1fs exhausted, %s project(s) still tearing down",
                timeout,
                len(workers) - finished,
            )
        else:
            self._terminate_orphan_tunnels(per_step)
        return finished

    def _terminate_orphan_tunnels(self, timeout: float) -> None:
        """Stop tunnel sessions whose project is no longer registered."""
        for project_id in self._tunnels.active():
            if project_id in self._registry:
                continue
            logger.warning("Terminating orphaned tunnel session for %s", project_id)
            try:
                self._tunnels.terminate(project_id, timeout)
            except Exception:
                logger.exception("Failed to terminate tunnel for %s", project_id)

    def _register_project(self, files: list[str]) -> Project:
        for _ in range(_ID_ATTEMPTS):
            project_id = new_project_id()
            project = Project(
                id=project_id,
                directory=self._workspace.path_for(project_id),
                files=files,
            )
            try:
                self._registry.register(Deployment(project=project))
            except ValueError:
                logger.warning("Project id %s already in use, generating another", project_id)
                continue
            return project
        raise ServerStartError(
            f"Could not allocate a unique project id after {_ID_ATTEMPTS} attempts"
        )

    def _start_listener(self, project: Project) -> ListenerHandle:
        start_from = self._ports.floor
        tried: list[int] = []
        for _ in range(self._bind_retries):
            port = self._ports.next_available(start_from)
            try:
                return self._server.start(project.directory, port, project_id=project.id)
            except BindError:
                logger.info("Port %s was taken before bind, retrying", port)
                tried.append(port)
                start_from = port + 1
        raise ExhaustedRange(
            f"Every port lost the bind race after {self._bind_retries} attempt(s)",
            {"triedPorts": tried, "bindRetries": self._bind_retries},
        )

    def _go_live(self, entry: Deployment, listener: ListenerHandle) -> None:
        project = entry.project
        if project.status is not ProjectStatus.PROVISIONING:
            raise ProjectNotFound(project.id)
        entry.listener = listener
        project.port = listener.port
        project.advance(ProjectStatus.LIVE)

    def _rollback(self, project: Project, listener: ListenerHandle | None) -> None:
        if listener is not None:
            listener.close()
        try:
            self._workspace.release(project.directory)
        except OSError:
            logger.exception("Failed to remove directory for %s during rollback", project.id)
        self._registry.unregister(project.id)
        logger.info("Rolled back failed deployment %s", project.id)

    @staticmethod
    def _begin_teardown(entry: Deployment) -> Deployment | None:
        project = entry.project
        if project.status in (ProjectStatus.TEARING_DOWN, ProjectStatus.GONE):
            return None
        project.advance(ProjectStatus.TEARING_DOWN)
        return entry

    @staticmethod
    def _mark_tunnel_pending(entry: Deployment) -> bool:
        project = entry.project
        if project.status is not ProjectStatus.LIVE:
            return False
        if project.tunnel_status is TunnelStatus.DISABLED:
            project.tunnel_status = TunnelStatus.PENDING
        return True

    def _record_tunnel(self, project_id: str, outcome: TunnelOutcome) -> None:
        def apply(entry: Deployment) -> None:
            project = entry.project
            if project.status is not ProjectStatus.LIVE:
                return
            project.tunnel_status = outcome.status
            project.public_url = outcome.url
            project.tunnel_error = outcome.error

        try:
            self._registry.update(project_id, apply)
        except ProjectNotFound:
            logger.debug("Dropping tunnel result for departed project %s", project_id)
            return
        if outcome.url:
            logger.info("Public URL for %s: %s (%s)", project_id, outcome.url, outcome.status.value)
        else:
            logger.warning("Tunnel unavailable for %s: %s", project_id, outcome.error)

    def _report(self, project: Project) -> DeploymentReport:
        return DeploymentReport(
            project_id=project.id,
            status=project.status,
            port=project.port,
            url=self.local_url(project.port) if project.port is not None else None,
            public_url=project.public_url,
            public_url_confirmed=project.public_url_confirmed,
            tunnel_status=project.tunnel_status,
            tunnel_error=project.tunnel_error,
            created_at=project.created_at,
            files=list(project.files),
        )

