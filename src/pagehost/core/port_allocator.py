"""Serial port probing."""

from __future__ import annotations

import logging
import socket
import threading

from pagehost.core.errors import ExhaustedRange

logger = logging.getLogger(__name__)


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind and listen on ``(host, port)``; raises ``OSError`` when taken."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
    except OSError:
        sock.close()
        raise
    return sock


class PortAllocator:
    """Find the lowest bindable port at or above a floor.

    Probing and the real bind are separate steps, so a returned port can still
    be lost to a concurrent binder. Callers treat the real bind as authoritative.
    """

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        floor: int = 3003,
        ceiling: int = 65535,
        max_attempts: int = 1000,
    ) -> None:
        if floor > ceiling:
            msg = f"Port floor {floor} is above ceiling {ceiling}"
            raise ValueError(msg)
        self._host = host
        self._floor = floor
        self._ceiling = ceiling
        self._max_attempts = max_attempts
        self._lock = threading.Lock()

    @property
    def floor(self) -> int:
        return self._floor

    @property
    def ceiling(self) -> int:
        return self._ceiling

    def is_available(self, port: int) -> bool:
        try:
            probe = bind_socket(self._host, port)
        except OSError:
            return False
        probe.close()
        return True

    def next_available(self, starting_from: int | None = None) -> int:
        start = max(self._floor, starting_from if starting_from is not None else self._floor)
        with self._lock:
            port = start
            for _ in range(self._max_attempts):
                if port > self._ceiling:
                    break
                if self.is_available(port):
                    logger.debug("Found available port: %s", port)
                    return port
                port += 1
        raise ExhaustedRange(
            f"No free port between {start} and {min(port, self._ceiling)}",
            {"start": start, "ceiling": self._ceiling, "maxAttempts": self._max_attempts},
        )
