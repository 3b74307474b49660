from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx

USER_AGENT = "smart-on-fhir-python/0.1"
DEFAULT_TIMEOUT_S = 30.0


@asynccontextmanager
async def http_session(http: httpx.AsyncClient | None) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the caller's client, or a short-lived one when none was injected."""
    if http is not None:
        yield http
        return

    async with httpx.AsyncClient(
        timeout=DEFAULT_TIMEOUT_S,
        headers={"User-Agent": USER_AGENT},
    ) as client:
        yield client
