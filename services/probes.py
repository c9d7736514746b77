"""Readiness probes shared by the HTTP speaking services."""

from __future__ import annotations

from typing import Any

import aiohttp

DEFAULT_TIMEOUT = 3.0


def http_url(hostname: str, port: int, path: str = "") -> str:
    return f"http://{hostname}:{port}{path}"


def host_ip(hostname: str) -> str:
    """Numeric address for ``hostname`` where a literal IP is required."""
    return "127.0.0.1" if hostname == "localhost" else hostname


async def http_ok(url: str, *, method: str = "GET", timeout: float = DEFAULT_TIMEOUT) -> bool:
    """True if ``url`` answers with HTTP 200."""
    async with aiohttp.ClientSession() as session:
        async with session.request(
            method, url, timeout=aiohttp.ClientTimeout(total=timeout)
        ) as response:
            return response.status == 200


async def http_text(url: str, *, timeout: float = DEFAULT_TIMEOUT) -> str | None:
    """Body of a successful GET, None on a non-200 status."""
    async with aiohttp.ClientSession() as session:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            if response.status != 200:
                return None
            return await response.text()


async def json_rpc(
    url: str,
    method: str,
    params: list[Any] | None = None,
    *,
    timeout: float = DEFAULT_TIMEOUT,
) -> Any:
    """Perform one JSON-RPC 2.0 call and return its ``result``.

    Raises:
        RuntimeError: If the node answers with a JSON-RPC error
    """
    payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params or []}
    async with aiohttp.ClientSession() as session:
        async with session.post(
            url, json=payload, timeout=aiohttp.ClientTimeout(total=timeout)
        ) as response:
            data = await response.json(content_type=None)
    if "error" in data:
        raise RuntimeError(f"JSON-RPC {method} failed: {data['error']}")
    return data.get("result")
