from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import httpx
from cachetools import TTLCache
from dataclasses_json import Undefined, dataclass_json

from ..errors import ErrorKind, SmartError
from .common import as_optional_str, remove_trailing_slash
from .http import http_session

LOGGER = logging.getLogger("smart.client")

SMART_CONFIGURATION_PATH = "/.well-known/smart-configuration"
DEFAULT_CACHE_SIZE = 50
DEFAULT_CACHE_TTL_S = 60 * 60


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class SmartConfiguration:
    issuer: str | None = None
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    jwks_uri: str | None = None

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> SmartConfiguration:
        smart_config = cast(SmartConfiguration, cast(Any, cls).from_dict(doc))
        smart_config.validate()
        return smart_config

    def validate(self) -> None:
        for name in ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri"):
            if not as_optional_str(getattr(self, name)):
                raise ValueError(f"invalid smart-configuration: missing {name}")


class SmartConfigurationCache:
    """Discovery documents and JWKS keyed by URL, owned by the hosting application."""

    def __init__(
        self,
        *,
        maxsize: int = DEFAULT_CACHE_SIZE,
        ttl_s: float = DEFAULT_CACHE_TTL_S,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._configurations: TTLCache[str, SmartConfiguration] = TTLCache(
            maxsize=maxsize, ttl=ttl_s, timer=timer
        )
        self._jwks: TTLCache[str, dict[str, Any]] = TTLCache(
            maxsize=maxsize, ttl=ttl_s, timer=timer
        )

    def get_configuration(self, url: str) -> SmartConfiguration | None:
        return self._configurations.get(url)

    def set_configuration(self, url: str, value: SmartConfiguration) -> None:
        self._configurations[url] = value

    def get_jwks(self, url: str) -> dict[str, Any] | None:
        return self._jwks.get(url)

    def set_jwks(self, url: str, value: dict[str, Any]) -> None:
        self._jwks[url] = value

    def clear(self) -> None:
        self._configurations.clear()
        self._jwks.clear()


def build_smart_configuration_url(fhir_server: str) -> str:
    return f"{remove_trailing_slash(fhir_server)}{SMART_CONFIGURATION_PATH}"


async def fetch_smart_configuration(
    fhir_server: str,
    *,
    http: httpx.AsyncClient | None = None,
    cache: SmartConfigurationCache | None = None,
) -> SmartConfiguration | SmartError:
    url = build_smart_configuration_url(fhir_server)
    if cache is not None:
        cached = cache.get_configuration(url)
        if cached is not None:
            LOGGER.debug("smart-configuration cache hit url=%s", url)
            return cached

    LOGGER.info("smart-configuration GET %s", url)
    try:
        async with http_session(http) as client:
            response = await client.get(url, headers={"Accept": "application/json"})
    except httpx.HTTPError as exc:
        LOGGER.error("smart-configuration fatal error fetching url=%s err=%s", url, exc)
        return SmartError(ErrorKind.UNKNOWN_ERROR)

    if not response.is_success:
        LOGGER.error(
            "smart-configuration url=%s -> %s %s",
            url,
            response.status_code,
            response.reason_phrase,
        )
        return SmartError(ErrorKind.WELL_KNOWN_INVALID_RESPONSE)

    try:
        doc = response.json()
        if not isinstance(doc, dict):
            raise ValueError("expected JSON object")
        smart_config = SmartConfiguration.from_doc(doc)
    except Exception as exc:
        LOGGER.error(
            "smart-configuration FHIR server %s responded with weird smart-configuration: %s",
            fhir_server,
            exc,
        )
        return SmartError(ErrorKind.WELL_KNOWN_INVALID_BODY)

    LOGGER.info("smart-configuration FHIR server %s response validated", fhir_server)
    if cache is not None:
        cache.set_configuration(url, smart_config)
    return smart_config


async def fetch_jwks(
    jwks_uri: str,
    *,
    http: httpx.AsyncClient | None = None,
    cache: SmartConfigurationCache | None = None,
) -> dict[str, Any]:
    if cache is not None:
        cached = cache.get_jwks(jwks_uri)
        if cached is not None:
            return cached

    LOGGER.info("jwks GET %s", jwks_uri)
    async with http_session(http) as client:
        response = await client.get(jwks_uri, headers={"Accept": "application/json"})
    response.raise_for_status()
    jwks = response.json()
    if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
        raise ValueError(f"invalid JWKS document from {jwks_uri}")

    if cache is not None:
        cache.set_jwks(jwks_uri, jwks)
    return jwks
