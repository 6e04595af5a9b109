from __future__ import annotations

import socket

import pytest

from pagehost.core.errors import ExhaustedRange
from pagehost.core.port_allocator import PortAllocator, bind_socket

FLOOR = 47600


def test_next_available_skips_bound_port() -> None:
    allocator = PortAllocator(floor=FLOOR)
    first = allocator.next_available()
    holder = bind_socket("127.0.0.1", first)
    try:
        assert allocator.is_available(first) is False
        assert allocator.next_available(first) > first
    finally:
        holder.close()
    assert allocator.is_available(first) is True


def test_next_available_respects_floor() -> None:
    allocator = PortAllocator(floor=FLOOR)
    assert allocator.next_available(1) >= FLOOR


def test_exhausted_range_when_ceiling_reached() -> None:
    allocator = PortAllocator(floor=FLOOR, ceiling=FLOOR)
    holder = bind_socket("127.0.0.1", FLOOR)
    try:
        with pytest.raises(ExhaustedRange):
            allocator.next_available()
    finally:
        holder.close()


def test_exhausted_range_when_attempts_run_out(monkeypatch: pytest.MonkeyPatch) -> None:
    allocator = PortAllocator(floor=FLOOR, max_attempts=3)
    probed: list[int] = []

    def fake_is_available(port: int) -> bool:
        probed.append(port)
        return False

    monkeypatch.setattr(allocator, "is_available", fake_is_available)

    with pytest.raises(ExhaustedRange) as info:
        allocator.next_available()
    assert probed == [FLOOR, FLOOR + 1, FLOOR + 2]
    assert info.value.details["maxAttempts"] == 3


def test_floor_above_ceiling_is_rejected() -> None:
    with pytest.raises(ValueError, match="above ceiling"):
        PortAllocator(floor=5000, ceiling=4000)


def test_bind_socket_raises_when_taken() -> None:
    holder = bind_socket("127.0.0.1", FLOOR + 10)
    try:
        with pytest.raises(OSError):
            bind_socket("127.0.0.1", FLOOR + 10)
    finally:
        holder.close()
    assert holder.fileno() == -1
    with socket.socket() as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("127.0.0.1", FLOOR + 10))
