"""Host port allocation for sandbox endpoints."""

from __future__ import annotations

import socket
from itertools import chain
from threading import Lock
from typing import Callable, Iterator

# Ports below this are privileged
MIN_SAFE_PORT = 1024
MAX_PORT = 65535

PortProbe = Callable[[int, str], bool]


def check_port(port: int, host: str = "0.0.0.0") -> bool:
    """True when nothing on the host is bound to ``port``."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind((host, port))
    except OSError:
        return False
    return True


def format_endpoint(host: str, port: int) -> str:
    return f"{host}:{int(port)}"


def split_endpoint(endpoint: str) -> tuple[str, int]:
    """Split ``host:port`` (optionally prefixed with a scheme)."""
    value = endpoint.split("://", 1)[-1].rstrip("/")
    host, _, port = value.rpartition(":")
    if not host or not port.isdigit():
        raise ValueError(f"invalid endpoint: {endpoint}")
    return host, int(port)


class PortAllocator:
    """Hands out host ports for sandbox bindings from ``[start_port, end_port)``.

    A handed-out port stays reserved in-process until released, so concurrent
    creates never ask the runtime for the same binding. The search starts
    after the last port handed out; a port freed by a sandbox that is still
    shutting down is therefore the last candidate, not the first.
    """

    def __init__(
        self,
        start_port: int = 20000,
        end_port: int = 21000,
        bind_host: str = "0.0.0.0",
        probe: PortProbe = check_port,
    ):
        self.start_port = max(start_port, MIN_SAFE_PORT)
        self.end_port = min(end_port, MAX_PORT)
        if self.end_port <= self.start_port:
            raise ValueError(f"empty port range {start_port}-{end_port}")
        self.bind_host = bind_host
        self._probe = probe
        self._reserved: set[int] = set()
        self._next = self.start_port
        self._lock = Lock()

    def __len__(self) -> int:
        return self.end_port - self.start_port

    def _candidates(self) -> Iterator[int]:
        return chain(range(self._next, self.end_port), range(self.start_port, self._next))

    def allocate(self) -> int:
        with self._lock:
            for port in self._candidates():
                if port in self._reserved or not self._probe(port, self.bind_host):
                    continue
                self._reserved.add(port)
                self._next = port + 1 if port + 1 < self.end_port else self.start_port
                return port
        raise RuntimeError(f"No free host port in {self.start_port}-{self.end_port - 1}")

    def reserve(self, port: int) -> None:
        """Mark a port as taken, e.g. a binding the runtime chose itself."""
        with self._lock:
            self._reserved.add(port)

    def release(self, port: int) -> None:
        with self._lock:
            self._reserved.discard(port)

    @property
    def allocated(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._reserved)
