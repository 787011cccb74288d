# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""HTTP readiness probe for engines that expose a health endpoint."""

from __future__ import annotations

import asyncio
import logging

import aiohttp

logger = logging.getLogger(__name__)


async def http_health_check(host: str, port: int, path: str = "/health", timeout: float = 5.0) -> bool:
    """Return True if ``GET http://host:port/path`` answers 200."""
    # Probe locally when the engine binds every interface.
    if host == "0.0.0.0":
        host = "127.0.0.1"
    url = f"http://{host}:{port}{path}"

    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(url) as response:
                if response.status == 200:
                    logger.debug("Health endpoint %s ok", url)
                    return True
                logger.debug("Health endpoint %s returned %d", url, response.status)
                return False
    except aiohttp.ClientError as e:
        logger.debug("Health endpoint %s unreachable: %s", url, e)
        return False
    except asyncio.TimeoutError:
        logger.debug("Health endpoint %s timed out", url)
        return False


def check_http_health(host: str, port: int, path: str = "/health", timeout: float = 5.0) -> bool:
    """Blocking wrapper around :func:`http_health_check`."""
    return asyncio.run(http_health_check(host, port, path, timeout))


__all__ = ["check_http_health", "http_health_check"]
