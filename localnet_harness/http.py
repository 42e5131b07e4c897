from __future__ import annotations

import asyncio
import logging
import os
import weakref

import aiohttp

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    try:
        return float(raw) if raw not in {None, ""} else float(default)
    except ValueError:
        return float(default)


class HTTPError(Exception):
    """Raised when an HTTP request returns a non-success status code."""

    def __init__(self, url: str, status: int, body: str = "") -> None:
        message = f"HTTP {status} from {url}"
        if body:
            message += f": {body[:500]}"
        super().__init__(message)
        self.url = url
        self.status = status
        self.body = body


# Maintain a session per event loop to avoid cross-loop usage errors when
# pytest-asyncio hands each test its own loop.
_SESSIONS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, aiohttp.ClientSession]" = (
    weakref.WeakKeyDictionary()
)


async def get_session() -> aiohttp.ClientSession:
    """Return an aiohttp session bound to the current event loop."""

    loop = asyncio.get_running_loop()
    sess = _SESSIONS.get(loop)
    if sess is None or sess.closed:
        timeout_total = _env_float("SUI_IT_HTTP_TIMEOUT_SEC", 15.0)
        sess = aiohttp.ClientSession(
            headers={"User-Agent": "localnet-harness/1.0"},
            timeout=aiohttp.ClientTimeout(total=timeout_total),
        )
        _SESSIONS[loop] = sess
    return sess


async def close_session() -> None:
    """Close the session bound to the current event loop, if any."""

    loop = asyncio.get_running_loop()
    sess = _SESSIONS.pop(loop, None)
    if sess is not None and not sess.closed:
        await sess.close()


async def post_json(url: str, payload: object) -> object:
    """POST ``payload`` as JSON and return the decoded JSON body."""

    session = await get_session()
    async with session.post(url, json=payload) as resp:
        if resp.status >= 400:
            raise HTTPError(url, resp.status, await resp.text())
        return await resp.json(content_type=None)


__all__ = ["HTTPError", "get_session", "close_session", "post_json"]
