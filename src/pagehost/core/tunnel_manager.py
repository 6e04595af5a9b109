"""Public tunnels for locally served projects.

``TunnelProvider`` is the narrow seam: ``create(port) -> Tunnel``. The default
``SubprocessTunnelProvider`` runs an external tunnel client and scrapes its
merged stdout/stderr for a public URL. ``TunnelManager`` runs providers on
worker threads so a deploy never waits for a tunnel.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Protocol, Sequence

from pagehost.config import DEFAULT_TUNNEL_COMMAND
from pagehost.core.errors import TunnelUnavailable
from pagehost.models.project import TunnelStatus

logger = logging.getLogger(__name__)

URL_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"https://[a-z0-9-]+\.loca\.lt",
        r"https://[a-z0-9-]+\.trycloudflare\.com",
        r"https://[a-z0-9-]+\.ngrok(?:-free)?\.(?:app|io|dev)",
        r"https://[a-z0-9-]+\.serveo(?:usercontent)?\.(?:net|com)",
        r"https://[a-z0-9-]+\.lhr\.life",
    )
)

ESTABLISHED_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"tunnel (?:is )?(?:established|connected|ready)",
        r"registered tunnel connection",
        r"connection established",
    )
)

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]|\x1b\].*?\x07|\r")
_NAME_RE = re.compile(r"[^a-z0-9]+")


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def find_public_url(line: str) -> str | None:
    clean = strip_ansi(line)
    for pattern in URL_PATTERNS:
        match = pattern.search(clean)
        if match:
            return match.group(0)
    return None


def is_established(line: str) -> bool:
    clean = strip_ansi(line)
    return any(pattern.search(clean) for pattern in ESTABLISHED_PATTERNS)


def tunnel_name(project_id: str, prefix: str = "pagehost") -> str:
    """DNS-safe tunnel name derived from the project id."""
    slug = _NAME_RE.sub("-", f"{prefix}-{project_id}".lower()).strip("-")
    return slug[:63].rstrip("-")


def stop_process(process: subprocess.Popen[str], timeout: float = 5.0) -> int | None:
    if process.poll() is not None:
        return process.poll()
    process.terminate()
    try:
        return process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()
        try:
            return process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.error("Tunnel process %s ignored kill", process.pid)
            return None


@dataclass(slots=True)
class Tunnel:
    """An established tunnel.

    ``confirmed`` is False when the URL was synthesized from the tunnel name
    because the client reported a connection without printing its URL.
    """

    url: str
    confirmed: bool
    process: subprocess.Popen[str] | None = None

    def close(self, timeout: float = 5.0) -> None:
        if self.process is not None:
            stop_process(self.process, timeout)


class TunnelProvider(Protocol):
    def create(self, port: int, *, name: str, cancelled: threading.Event) -> Tunnel: ...


class _OutputBuffer:
    """Bounded line buffer with monotonically increasing cursors."""

    def __init__(self, max_lines: int) -> None:
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._next_cursor = 0
        self._lock = threading.Lock()
        self._eof = False

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)
            self._next_cursor += 1

    def close(self) -> None:
        with self._lock:
            self._eof = True

    def read(self, cursor: int) -> tuple[list[str], int, bool]:
        with self._lock:
            entries = list(self._lines)
            end_cursor = self._next_cursor
            eof = self._eof
        first_cursor = end_cursor - len(entries)
        start = min(max(cursor, first_cursor), end_cursor)
        return entries[start - first_cursor :], end_cursor, eof


class SubprocessTunnelProvider:
    """Run a tunnel client and scrape its output for the public URL."""

    def __init__(
        self,
        command: Sequence[str] = DEFAULT_TUNNEL_COMMAND,
        *,
        fallback_url: str = "https://{name}.loca.lt",
        timeout_seconds: float = 15.0,
        established_grace_seconds: float = 2.0,
        poll_interval: float = 0.1,
        max_output_lines: int = 200,
    ) -> None:
        self._command = tuple(command)
        self._fallback_url = fallback_url
        self._timeout_seconds = timeout_seconds
        self._established_grace_seconds = established_grace_seconds
        self._poll_interval = poll_interval
        self._max_output_lines = max_output_lines

    def executable_available(self) -> bool:
        return bool(self._command) and shutil.which(self._command[0]) is not None

    def create(self, port: int, *, name: str, cancelled: threading.Event) -> Tunnel:
        argv = [part.format(port=port, name=name) for part in self._command]
        logger.info("Starting tunnel %s for port %s: %s", name, port, " ".join(argv))
        try:
            process = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except OSError as exc:
            raise TunnelUnavailable(
                f"Could not start tunnel client: {exc}", {"command": argv[0] if argv else ""}
            ) from exc

        output = _OutputBuffer(self._max_output_lines)
        reader = threading.Thread(
            target=self._drain_output,
            args=(process, output),
            name=f"tunnel-{name}",
            daemon=True,
        )
        reader.start()
        try:
            return self._await_url(process, output, name=name, cancelled=cancelled)
        except BaseException:
            stop_process(process)
            raise

    def _await_url(
        self,
        process: subprocess.Popen[str],
        output: _OutputBuffer,
        *,
        name: str,
        cancelled: threading.Event,
    ) -> Tunnel:
        deadline = time.monotonic() + self._timeout_seconds
        established_at: float | None = None
        cursor = 0
        while True:
            lines, cursor, eof = output.read(cursor)
            for line in lines:
                logger.debug("[tunnel %s] %s", name, line)
                url = find_public_url(line)
                if url is not None:
                    logger.info("Tunnel %s is public at %s", name, url)
                    return Tunnel(url=url, confirmed=True, process=process)
                if established_at is None and is_established(line):
                    established_at = time.monotonic()

            now = time.monotonic()
            if established_at is not None and (
                now - established_at >= self._established_grace_seconds or now >= deadline
            ):
                url = self._fallback_url.format(name=name)
                logger.warning("Tunnel %s connected without printing a URL, assuming %s", name, url)
                return Tunnel(url=url, confirmed=False, process=process)

            returncode = process.poll()
            if returncode is not None and eof:
                raise TunnelUnavailable(
                    f"Tunnel client exited with code {returncode} before reporting a URL",
                    {"returncode": returncode},
                )
            if now >= deadline:
                raise TunnelUnavailable(
                    f"No tunnel URL within {self._timeout_seconds}s",
                    {"timeoutSeconds": self._timeout_seconds},
                )
            if cancelled.wait(self._poll_interval):
                raise TunnelUnavailable("Tunnel creation cancelled")

    @staticmethod
    def _drain_output(process: subprocess.Popen[str], output: _OutputBuffer) -> None:
        stream = process.stdout
        if stream is None:
            output.close()
            return
        try:
            for line in stream:
                output.append(line.rstrip("\n"))
        finally:
            stream.close()
            output.close()


@dataclass(slots=True)
class TunnelOutcome:
    status: TunnelStatus
    url: str | None = None
    error: str | None = None


TunnelCallback = Callable[[str, TunnelOutcome], None]


@dataclass(slots=True)
class _Session:
    cancelled: threading.Event = field(default_factory=threading.Event)
    thread: threading.Thread | None = None
    tunnel: Tunnel | None = None


class TunnelManager:
    """Resolve tunnels in the background, one session per project."""

    def __init__(
        self,
        provider: TunnelProvider | None,
        *,
        enabled: bool = True,
        attempts: int = 2,
        retry_delay: float = 5.0,
        name_prefix: str = "pagehost",
    ) -> None:
        self._provider = provider
        self._enabled = enabled
        self._attempts = max(1, attempts)
        self._retry_delay = retry_delay
        self._name_prefix = name_prefix
        self._sessions: dict[str, _Session] = {}
        self._lock = threading.Lock()

    @property
    def available(self) -> bool:
        if not self._enabled or self._provider is None:
            return False
        probe = getattr(self._provider, "executable_available", None)
        return probe() if callable(probe) else True

    def active(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def open(self, project_id: str, port: int, on_update: TunnelCallback) -> bool:
        """Start resolving a tunnel for ``port``; returns False when tunnels are unavailable."""
        if not self.available:
            return False
        session = _Session()
        with self._lock:
            if project_id in self._sessions:
                return True
            self._sessions[project_id] = session
        session.thread = threading.Thread(
            target=self._run,
            args=(project_id, port, session, on_update),
            name=f"tunnel-worker-{project_id}",
            daemon=True,
        )
        session.thread.start()
        return True

    def terminate(self, project_id: str, timeout: float = 5.0) -> None:
        with self._lock:
            session = self._sessions.pop(project_id, None)
            if session is None:
                return
            session.cancelled.set()
            tunnel = session.tunnel
        if tunnel is not None:
            tunnel.close(timeout)
        thread = session.thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("Terminated tunnel session for %s", project_id)

    def _run(
        self,
        project_id: str,
        port: int,
        session: _Session,
        on_update: TunnelCallback,
    ) -> None:
        assert self._provider is not None
        name = tunnel_name(project_id, self._name_prefix)
        last_error = "tunnel not attempted"
        for attempt in range(1, self._attempts + 1):
            if session.cancelled.is_set():
                return
            try:
                tunnel = self._provider.create(port, name=name, cancelled=session.cancelled)
            except TunnelUnavailable as exc:
                last_error = exc.message
                logger.warning(
                    "Tunnel attempt %s/%s for %s failed: %s",
                    attempt,
                    self._attempts,
                    project_id,
                    exc.message,
                )
                if attempt < self._attempts and session.cancelled.wait(self._retry_delay):
                    return
                continue
            except Exception as exc:
                logger.exception("Tunnel provider crashed for %s", project_id)
                last_error = f"{exc.__class__.__name__}: {exc}"
                break

            with self._lock:
                stale = session.cancelled.is_set()
                if not stale:
                    session.tunnel = tunnel
            if stale:
                tunnel.close()
                return
            status = TunnelStatus.CONFIRMED if tunnel.confirmed else TunnelStatus.INFERRED
            on_update(project_id, TunnelOutcome(status=status, url=tunnel.url))
            return

        with self._lock:
            if self._sessions.get(project_id) is session:
                del self._sessions[project_id]
        if not session.cancelled.is_set():
            on_update(project_id, TunnelOutcome(status=TunnelStatus.UNAVAILABLE, error=last_error))
