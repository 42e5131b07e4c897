from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

import aiohttp

from .errors import FaucetError
from .http import HTTPError, post_json

logger = logging.getLogger(__name__)

FAUCET_GAS_PATH = "/v2/gas"


def faucet_url(host: str) -> str:
    base = host.rstrip("/")
    if not base.startswith(("http://", "https://")):
        base = f"http://{base}"
    return base + FAUCET_GAS_PATH


async def request_sui_from_faucet(host: str, recipient: str) -> Mapping[str, Any]:
    """Ask the local faucet to send gas to ``recipient``."""

    url = faucet_url(host)
    payload = {"FixedAmountRequest": {"recipient": recipient}}
    try:
        body = await post_json(url, payload)
    except (aiohttp.ClientError, asyncio.TimeoutError, HTTPError, OSError) as exc:
        raise FaucetError(f"Faucet request to {url} failed: {exc}") from exc

    if not isinstance(body, Mapping):
        raise FaucetError(f"Unexpected faucet response from {url}: {body!r}")
    status = body.get("status")
    if isinstance(status, Mapping) and "Failure" in status:
        raise FaucetError(f"Faucet refused request for {recipient}: {status['Failure']}")
    if body.get("error"):
        raise FaucetError(f"Faucet refused request for {recipient}: {body['error']}")

    logger.debug("Faucet funded %s via %s", recipient, url)
    return body


__all__ = ["request_sui_from_faucet", "faucet_url", "FAUCET_GAS_PATH"]
