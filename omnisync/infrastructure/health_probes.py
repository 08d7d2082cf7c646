from __future__ import annotations

import socket
from typing import Callable
from urllib.parse import urlparse


class SocketConnectivityProbe:
    """Conectividad = poder abrir un socket TCP contra el host de Supabase."""

    def __init__(
        self,
        host: str,
        port: int = 443,
        *,
        connector: Callable[..., socket.socket] = socket.create_connection,
    ) -> None:
        self._host = host
        self._port = port
        self._connector = connector

    @classmethod
    def from_url(cls, url: str) -> "SocketConnectivityProbe":
        parsed = urlparse(url if "://" in url else f"https://{url}")
        default_port = 80 if parsed.scheme == "http" else 443
        return cls(parsed.hostname or "", parsed.port or default_port)

    def check(self, *, timeout_seconds: float = 3.0) -> bool:
        if not self._host:
            return False
        try:
            with self._connector((self._host, self._port), timeout=timeout_seconds):
                return True
        except OSError:
            return False


class StaticConnectivityProbe:
    """Sonda fija para instalaciones sin remoto configurado."""

    def __init__(self, online: bool = False) -> None:
        self._online = online

    def check(self, *, timeout_seconds: float = 3.0) -> bool:
        return self._online
