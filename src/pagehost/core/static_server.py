"""Per-project static HTTP listeners.

Each deployed project gets its own uvicorn server running on a daemon thread.
The listening socket is bound here rather than by uvicorn so that a lost port
race surfaces as ``BindError`` and the caller can move on to the next port.
"""

from __future__ import annotations

import errno
import logging
import socket
import threading
import time
from pathlib import Path

import httpx
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException
from starlette.types import Scope

from pagehost.core.errors import BindError, ServerStartError
from pagehost.core.port_allocator import bind_socket

logger = logging.getLogger(__name__)

SITE_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "X-Frame-Options": "ALLOWALL",
    "Content-Security-Policy": "frame-ancestors *",
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "Surrogate-Control": "no-store",
}

_VALIDATOR_HEADERS = ("etag", "last-modified")
_BIND_ERRNOS = {errno.EADDRINUSE, errno.EACCES}


class SiteFiles(StaticFiles):
    """Static files with a single-page-app fallback to the entry document."""

    def __init__(self, *, directory: Path, entry_document: str) -> None:
        super().__init__(directory=directory, html=True)
        self._entry_path = directory / entry_document

    async def get_response(self, path: str, scope: Scope) -> Response:
        try:
            return await super().get_response(path, scope)
        except HTTPException as exc:
            if exc.status_code != 404:
                raise
        if self._entry_path.is_file():
            return FileResponse(self._entry_path)
        raise HTTPException(status_code=404)


def build_site_app(directory: Path, *, entry_document: str, project_id: str) -> FastAPI:
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    @app.middleware("http")
    async def site_headers(request: Request, call_next) -> Response:  # type: ignore[no-untyped-def]
        logger.debug("[%s] %s %s", project_id, request.method, request.url.path)
        response: Response = await call_next(request)
        for header in _VALIDATOR_HEADERS:
            if header in response.headers:
                del response.headers[header]
        response.headers.update(SITE_HEADERS)
        return response

    app.mount("/", SiteFiles(directory=directory, entry_document=entry_document), name="site")
    return app


class ListenerHandle:
    """A running project listener. ``close`` is idempotent."""

    def __init__(
        self,
        *,
        project_id: str,
        port: int,
        sock: socket.socket,
        server: uvicorn.Server,
        thread: threading.Thread,
    ) -> None:
        self.project_id = project_id
        self.port = port
        self._socket = sock
        self._server = server
        self._thread = thread
        self._closed = False
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return not self._closed and self._thread.is_alive()

    def close(self, timeout: float = 5.0) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._server.should_exit = True
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("Listener for %s did not stop in %.1fs, forcing", self.project_id, timeout)
            self._server.force_exit = True
        self._socket.close()
        logger.info("Stopped listener for %s on port %s", self.project_id, self.port)


class StaticServer:
    """Start and stop project listeners."""

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        entry_document: str = "index.html",
        start_timeout: float = 5.0,
    ) -> None:
        self._host = host
        self._entry_document = entry_document
        self._start_timeout = start_timeout

    @property
    def probe_host(self) -> str:
        return "127.0.0.1" if self._host in ("0.0.0.0", "") else self._host

    def start(self, directory: Path, port: int, *, project_id: str) -> ListenerHandle:
        try:
            sock = bind_socket(self._host, port)
        except OSError as exc:
            if exc.errno in _BIND_ERRNOS:
                raise BindError(port) from exc
            raise ServerStartError(
                f"Could not bind port {port}: {exc}", {"port": port}
            ) from exc

        app = build_site_app(directory, entry_document=self._entry_document, project_id=project_id)
        config = uvicorn.Config(
            app,
            log_config=None,
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=1,
        )
        server = uvicorn.Server(config)
        thread = threading.Thread(
            target=server.run,
            kwargs={"sockets": [sock]},
            name=f"site-{project_id}",
            daemon=True,
        )
        handle = ListenerHandle(
            project_id=project_id, port=port, sock=sock, server=server, thread=thread
        )
        logger.info("Starting server for %s on port %s", project_id, port)
        thread.start()
        try:
            self._wait_until_serving(handle, server)
        except ServerStartError:
            handle.close(timeout=1.0)
            raise
        logger.info("Server for %s listening on port %s", project_id, port)
        return handle

    def stop(self, handle: ListenerHandle) -> None:
        handle.close()

    def _wait_until_serving(self, handle: ListenerHandle, server: uvicorn.Server) -> None:
        deadline = time.monotonic() + self._start_timeout
        while not server.started:
            if not handle.running:
                raise ServerStartError(
                    f"Server thread for port {handle.port} exited during startup",
                    {"port": handle.port},
                )
            if time.monotonic() > deadline:
                raise ServerStartError(
                    f"Server on port {handle.port} did not start within {self._start_timeout}s",
                    {"port": handle.port},
                )
            time.sleep(0.01)

        url = f"http://{self.probe_host}:{handle.port}/"
        remaining = max(deadline - time.monotonic(), 0.5)
        try:
            with httpx.Client(trust_env=False, timeout=remaining) as client:
                response = client.head(url)
        except httpx.HTTPError as exc:
            raise ServerStartError(
                f"Readiness probe failed for {url}: {exc.__class__.__name__}",
                {"port": handle.port},
            ) from exc
        if response.status_code >= 500:
            raise ServerStartError(
                f"Readiness probe for {url} returned {response.status_code}",
                {"port": handle.port, "httpStatus": response.status_code},
            )
