from __future__ import annotations

import socket
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlparse


class ConnectivityProbe(Protocol):
    def is_connected(self) -> bool: ...


@dataclass
class SocketConnectivityProbe:
    """TCP reachability check against the collector host.

    Interface agnostic: only tests whether a connection to the collector can
    be opened, regardless of WiFi / cellular / wired link.
    """

    url: str
    timeout_s: float = 3.0

    def is_connected(self) -> bool:
        parsed = urlparse(self.url)
        host = parsed.hostname
        if not host:
            return False
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        try:
            with socket.create_connection((host, port), timeout=self.timeout_s):
                return True
        except OSError:
            return False


@dataclass
class StaticConnectivity:
    """Manually toggled link state (simulator and tests)."""

    connected: bool = True

    def is_connected(self) -> bool:
        return self.connected
