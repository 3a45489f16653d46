"""Redis client factory shared by the progress cache and push channel."""

from __future__ import annotations

import ssl
from typing import Any

from redis import Redis

MANAGED_TLS_HOSTS = (".upstash.io",)


def uses_tls(url: str) -> bool:
    return url.startswith("rediss://") or any(host in url for host in MANAGED_TLS_HOSTS)


def create_redis_client(url: str, **kwargs: Any) -> Redis:
    """Build a client from a URL, switching managed hosts to TLS.

    Managed providers terminate TLS with certificates the worker images do
    not trust, so verification is disabled for them.
    """
    if url.startswith("redis://") and any(host in url for host in MANAGED_TLS_HOSTS):
        url = url.replace("redis://", "rediss://", 1)

    client = Redis.from_url(url, **kwargs)

    if uses_tls(url):
        pool = getattr(client, "connection_pool", None)
        if pool is not None and hasattr(pool, "connection_kwargs"):
            pool.connection_kwargs["ssl_cert_reqs"] = ssl.CERT_NONE

    return client
