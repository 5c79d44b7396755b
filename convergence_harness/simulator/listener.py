"""
TCP listener standing in for a bastion's SSH daemon.

Floating IPs handed out by the local floating pool are loopback addresses,
so a socket bound to all interfaces answers on every one of them.
"""

import logging
import socket
import threading
from typing import Optional

logger = logging.getLogger("convergence_harness.simulator.listener")


def free_port(host: str = "127.0.0.1") -> int:
    """A port nothing listens on right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


class PortListener:
    def __init__(self, host: str = "0.0.0.0", port: int = 0):
        self.host = host
        self._requested_port = port
        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._stopped = threading.Event()
        self._accepted = threading.Event()
        self.connections = 0

    @property
    def port(self) -> int:
        if self._sock is None:
            raise RuntimeError("listener not started")
        return self._sock.getsockname()[1]

    def start(self) -> "PortListener":
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self.host, self._requested_port))
        sock.listen(16)
        sock.settimeout(0.2)
        self._sock = sock
        self._thread = threading.Thread(target=self._serve, name="port-listener", daemon=True)
        self._thread.start()
        logger.info("Listening on %s:%d", self.host, self.port)
        return self

    def _serve(self):
        while not self._stopped.is_set():
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            self.connections += 1
            self._accepted.set()
            conn.close()

    def wait_for_connection(self, timeout: float) -> bool:
        """True once at least one connection has been accepted."""
        return self._accepted.wait(timeout)

    def stop(self):
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
        if self._sock is not None:
            self._sock.close()

    def __enter__(self) -> "PortListener":
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False
