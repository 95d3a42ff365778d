from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from urllib.parse import unquote

import httpx


UPSTREAM_URL = "https://upstream.test"

MODE_OK = "ok"
MODE_TIMEOUT = "timeout"
MODE_AUTH = "auth"
MODE_SERVER_ERROR = "server_error"
# Username lookups 404 except for the credential probe account.
MODE_INVALID_USER = "invalid_user"


@dataclass
class FakeUpstream:
    """In-memory stand-in for the upstream access-management API."""

    mode: str = MODE_OK
    probe_username: str = "TradingView"
    calls: list[tuple[str, str]] = field(default_factory=list)
    granted: list[str] = field(default_factory=list)
    revoked: list[str] = field(default_factory=list)
    # Seconds each response is held back, so concurrent callers overlap.
    delay_s: float = 0.0

    @property
    def transport(self) -> httpx.MockTransport:
        if self.delay_s:
            return httpx.MockTransport(self._handle_slowly)
        return httpx.MockTransport(self._handle)

    async def _handle_slowly(self, request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(self.delay_s)
        return self._handle(request)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        path = unquote(request.url.path)
        self.calls.append((request.method, path))
        if self.mode == MODE_TIMEOUT:
            raise httpx.ReadTimeout("upstream timed out", request=request)
        if self.mode == MODE_AUTH:
            return httpx.Response(401, json={"error": "Unauthorized: session expired"})
        if self.mode == MODE_SERVER_ERROR:
            return httpx.Response(502, text="bad gateway")

        if path.startswith("/validate/"):
            username = path.removeprefix("/validate/")
            if self.mode == MODE_INVALID_USER and username != self.probe_username:
                return httpx.Response(404, json={"error": "user not found"})
            return httpx.Response(200, json={"success": True, "username": username})
        if path.startswith("/access/"):
            username = path.removeprefix("/access/")
            if request.method == "POST":
                self.granted.append(username)
                return httpx.Response(200, json={"success": True, "message": f"granted {username}"})
            if request.method == "DELETE":
                self.revoked.append(username)
                return httpx.Response(200, json={"success": True, "message": f"revoked {username}"})
        return httpx.Response(404, json={"error": "not found"})

    def count(self, method: str, prefix: str) -> int:
        return sum(1 for call_method, path in self.calls if call_method == method and path.startswith(prefix))
