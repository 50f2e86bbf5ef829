from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import httpx

from .errors import (
    GatewayTimeoutError,
    MalformedResponseError,
    RemoteCallError,
    RetryExhaustedError,
    TransientRemoteError,
)
from .settings import Settings, settings as default_settings


SUPPORTED_METHODS = {"GET", "PUT", "POST", "DELETE"}


class RestBody:
    """Request bodies in the management API's ``{data, type, default}`` shape."""

    @staticmethod
    def string(value: str) -> dict[str, Any]:
        return {"data": value, "type": "string", "default": False}

    @staticmethod
    def uint32(value: int) -> dict[str, Any]:
        return {"data": int(value), "type": "uint32", "default": False}

    @staticmethod
    def socket_addr(addr: str, port: int) -> dict[str, Any]:
        return {
            "data": {"family": "af-inet", "addr": addr, "port": int(port)},
            "type": "socket-addr",
            "default": False,
        }


@dataclass(frozen=True)
class RestResult:
    method: str
    path: str
    status_code: int
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def not_found(self) -> bool:
        return self.status_code == 404

    @property
    def request_path(self) -> str:
        rp = self.payload.get("requestPath")
        if isinstance(rp, str) and rp:
            return rp
        return self.path.split("?", 1)[0]

    @property
    def node(self) -> dict[str, Any]:
        """Resource tree stored under the request path."""
        node = self.payload.get(self.request_path)
        return node if isinstance(node, dict) else {}

    @property
    def children(self) -> dict[str, Any]:
        children = self.node.get("children")
        return children if isinstance(children, dict) else {}

    @property
    def num_children(self) -> int:
        n = self.node.get("numChildren")
        return n if isinstance(n, int) else 0


def build_client(cfg: Settings | None = None) -> httpx.AsyncClient:
    cfg = cfg or default_settings
    auth = (cfg.lb_username, cfg.lb_password) if cfg.lb_password else None
    return httpx.AsyncClient(
        base_url=cfg.lb_api_url.rstrip("/"),
        auth=auth,
        verify=cfg.lb_verify_tls,
        follow_redirects=False,
        headers={"Accept": "application/json"},
    )


class RemoteCallGateway:
    """Single request to the management API under a deadline with fixed-delay retries."""

    def __init__(self, client: httpx.AsyncClient, cfg: Settings | None = None):
        self.client = client
        self.cfg = cfg or default_settings

    async def call(self, method: str, path: str, body: dict[str, Any] | None = None) -> RestResult:
        """Perform one logical call.

        200 returns the parsed result, 404 returns a result with ``not_found``
        set. Other statuses are retried until the attempt ceiling. The whole
        call, retries included, must finish within ``timeout_s``.
        """
        method = method.upper()
        if method not in SUPPORTED_METHODS:
            raise ValueError(f"Unsupported REST method: {method}")
        if not path:
            raise ValueError("No REST path provided.")

        try:
            return await asyncio.wait_for(self._attempt_loop(method, path, body), timeout=self.cfg.timeout_s)
        except asyncio.TimeoutError as e:
            raise GatewayTimeoutError(
                f"A call to the management API timed out after {self.cfg.timeout_s}s: {method} {path}",
                method,
                path,
            ) from e

    async def _attempt_loop(self, method: str, path: str, body: dict[str, Any] | None) -> RestResult:
        max_attempts = max(1, int(self.cfg.retry_attempts))
        attempts = 0
        while True:
            attempts += 1
            try:
                return await self._send(method, path, body)
            except (TransientRemoteError, httpx.TransportError) as e:
                last_error = f"{type(e).__name__}: {e}"
            if attempts >= max_attempts:
                raise RetryExhaustedError(method, path, attempts, last_error)
            await asyncio.sleep(self.cfg.gateway_retry_delay_s)

    async def _send(self, method: str, path: str, body: dict[str, Any] | None) -> RestResult:
        try:
            if method in {"PUT", "POST"}:
                resp = await self.client.request(method, path, json=body or {})
            else:
                resp = await self.client.request(method, path)
        except httpx.DecodingError as e:
            raise MalformedResponseError(f"Error decoding REST response: {e}", method, path) from e
        except httpx.TransportError:
            raise
        except httpx.RequestError as e:
            raise RemoteCallError(f"{method} {path} failed: {type(e).__name__}: {e}", method, path) from e

        if resp.status_code not in (200, 404):
            raise TransientRemoteError(method, path, resp.status_code)

        payload: dict[str, Any] = {}
        if resp.content:
            try:
                parsed = json.loads(resp.content)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise MalformedResponseError(f"Error parsing JSON REST response: {e}", method, path) from e
            if not isinstance(parsed, dict):
                raise MalformedResponseError(
                    f"Expected a JSON object from {method} {path}, got {type(parsed).__name__}", method, path
                )
            payload = parsed
        return RestResult(method=method, path=path, status_code=resp.status_code, payload=payload)

    async def aclose(self) -> None:
        await self.client.aclose()
