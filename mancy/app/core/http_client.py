"""Shared HTTP client for outbound knowledge lookups.

One client is created during application startup and shared by every
knowledge source for connection reuse. Per-source deadlines are applied
by the caller, so the client timeout only bounds connection setup and
acts as an upper limit.
"""

import httpx

from mancy.app.core.config import settings


def create_http_client(**kwargs) -> httpx.AsyncClient:
    """Create an HTTP client with pooled connections.

    The returned client should be closed when done:
        async with create_http_client() as client:
            ...

    Args:
        **kwargs: Override defaults. Can include ``timeout``,
            ``connect_timeout``, ``max_connections``,
            ``max_keepalive_connections``, ``keepalive_expiry``,
            ``user_agent`` and ``transport`` (for tests).

    Returns:
        A new httpx.AsyncClient instance.
    """
    read_timeout = kwargs.get(
        "timeout", max(settings.wikipedia_timeout, settings.openlibrary_timeout)
    )
    timeout = httpx.Timeout(
        read_timeout,
        connect=kwargs.get("connect_timeout", settings.httpx_connect_timeout),
    )
    limits = httpx.Limits(
        max_connections=kwargs.get("max_connections", settings.httpx_max_connections),
        max_keepalive_connections=kwargs.get(
            "max_keepalive_connections", settings.httpx_max_keepalive_connections
        ),
        keepalive_expiry=kwargs.get("keepalive_expiry", settings.httpx_keepalive_expiry),
    )
    user_agent = kwargs.get("user_agent", f"{settings.bot_name}/{settings.bot_version}")

    return httpx.AsyncClient(
        timeout=timeout,
        limits=limits,
        headers={"User-Agent": user_agent, "Accept": "application/json"},
        transport=kwargs.get("transport"),
        follow_redirects=True,
    )
