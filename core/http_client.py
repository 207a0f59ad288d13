# core/http_client.py
import asyncio
import logging
from typing import Optional
from weakref import WeakKeyDictionary

import httpx

logger = logging.getLogger(__name__)

# One client per event loop
_clients: WeakKeyDictionary = WeakKeyDictionary()


def get_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """
    Returns a shared AsyncClient bound to the current running event loop.

    ``transport`` is only honoured when the loop has no client yet
    (tests pass an ``httpx.MockTransport`` here).
    """
    loop = asyncio.get_running_loop()

    client = _clients.get(loop)
    if client is not None and not client.is_closed:
        return client

    timeout = httpx.Timeout(
        connect=5.0,
        read=15.0,
        write=5.0,
        pool=5.0
    )

    limits = httpx.Limits(
        max_connections=100,
        max_keepalive_connections=20
    )

    client = httpx.AsyncClient(
        timeout=timeout,
        limits=limits,
        follow_redirects=True,
        transport=transport,
    )

    _clients[loop] = client
    return client


async def close_client():
    """
    Gracefully close all AsyncClient instances.
    Call this during application shutdown.
    """
    for client in list(_clients.values()):
        try:
            await client.aclose()
        except Exception:
            logger.warning("HTTP client close failed", exc_info=True)

    _clients.clear()
