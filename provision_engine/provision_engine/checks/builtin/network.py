"""Network checks: outbound connectivity, free ports and HTTP health."""

from __future__ import annotations

import socket
from collections.abc import Collection

import httpx

from provision_engine.checks.base import BaseCheck

_DEFAULT_TIMEOUT = 5.0


class NetworkReachableCheck(BaseCheck):
    """Passes when a TCP connection to *host*:*port* can be opened."""

    def __init__(self, host: str, port: int = 443, *, timeout: float = _DEFAULT_TIMEOUT, required: bool = True) -> None:
        super().__init__(required=required)
        self.host = host
        self.port = port
        self.timeout = timeout

    @property
    def name(self) -> str:
        return f"network reachable: {self.host}:{self.port}"

    def evaluate(self) -> tuple[bool, str]:
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout):
                return True, f"Connected to {self.host}:{self.port}"
        except OSError as exc:
            return False, f"No connectivity to {self.host}:{self.port}: {exc}"


class PortFreeCheck(BaseCheck):
    """Passes when nothing is listening on *port*.  Advisory by default."""

    def __init__(self, port: int, *, host: str = "127.0.0.1", timeout: float = 1.0, required: bool = False) -> None:
        super().__init__(required=required)
        self.port = port
        self.host = host
        self.timeout = timeout

    @property
    def name(self) -> str:
        return f"port free: {self.port}"

    def evaluate(self) -> tuple[bool, str]:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(self.timeout)
            in_use = sock.connect_ex((self.host, self.port)) == 0
        if in_use:
            return False, f"Port {self.port} is already in use"
        return True, f"Port {self.port} is free"


class HttpStatusCheck(BaseCheck):
    """Passes when GET *url* answers with one of *expected_statuses*."""

    def __init__(
        self,
        url: str,
        expected_statuses: Collection[int] = (200,),
        *,
        timeout: float = _DEFAULT_TIMEOUT,
        required: bool = True,
    ) -> None:
        super().__init__(required=required)
        self.url = url
        self.expected_statuses = frozenset(expected_statuses)
        self.timeout = timeout

    @property
    def name(self) -> str:
        return f"http responds: {self.url}"

    def evaluate(self) -> tuple[bool, str]:
        try:
            with httpx.Client(timeout=self.timeout, follow_redirects=False) as client:
                response = client.get(self.url)
        except httpx.HTTPError as exc:
            return False, f"Request to {self.url} failed: {exc}"
        if response.status_code in self.expected_statuses:
            return True, f"{self.url} answered {response.status_code}"
        expected = ", ".join(str(s) for s in sorted(self.expected_statuses))
        return False, f"{self.url} answered {response.status_code}, expected one of {expected}"
