"""
Network utilities — reachability probe for the remote auth service.

The probe hits the health endpoint outside the API prefix with a short
timeout. It answers "can we talk to the backend at all", nothing more;
any non-2xx answer counts as unreachable.
"""

import asyncio

import requests

from .config import log
from .constants import HEALTH_TIMEOUT, DEFAULT_HEALTH_PATH


def is_online(http, server_url, health_path=DEFAULT_HEALTH_PATH):
    """Blocking health check. True only on a 2xx answer."""
    url = f"{server_url.rstrip('/')}{health_path}"
    try:
        resp = http.get(url, timeout=HEALTH_TIMEOUT)
        return 200 <= resp.status_code < 300
    except requests.RequestException as e:
        log.warning("Health probe failed (%s): %s", url, e)
        return False


async def probe(http, server_url, health_path=DEFAULT_HEALTH_PATH):
    """Non-blocking health check for the event loop."""
    return await asyncio.to_thread(is_online, http, server_url, health_path)
