from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

import httpx
import jwt

from .errors import ErrorKind, SmartError
from .fhir import (
    describe_error_response,
    expected_resource_type,
    get_fhir,
    parse_resource,
    post_fhir,
    put_fhir,
)
from .token import decode_unverified_claims
from .util.common import as_optional_str, infer_resource_type
from .util.resource_cache import (
    CacheConfig,
    CacheItem,
    get_cached_resource,
    set_cached_resource,
)
from .util.session_state import CompleteSession
from .util.smart_configuration import fetch_jwks, fetch_smart_configuration

if TYPE_CHECKING:
    from .client import SmartClient

LOGGER = logging.getLogger("smart.fhir")

T = TypeVar("T")

FhirResource = dict[str, Any]


@dataclass(frozen=True, slots=True)
class ValueAccessor:
    type: str
    id: str
    ready: ReadyClient

    @property
    def reference(self) -> str:
        return f"{self.type}/{self.id}"

    async def request(self, cache: CacheConfig | None = None) -> FhirResource | SmartError:
        return await self.ready.request(self.reference, cache=cache)


@dataclass(frozen=True, slots=True)
class UserAccessor:
    fhir_user: str | None
    ready: ReadyClient

    async def request(self, cache: CacheConfig | None = None) -> FhirResource | SmartError:
        if not self.fhir_user:
            LOGGER.warning("fhir.user id token has no fhirUser claim")
            return SmartError(ErrorKind.REQUEST_FAILED_RESOURCE_NOT_FOUND)
        return await self.ready.request(self.fhir_user, cache=cache)


class ReadyClient:
    """Access to the FHIR API after a completed SMART App Launch.

    Raises ValueError when the session's id token can't be decoded.
    """

    def __init__(
        self,
        client: SmartClient,
        session: CompleteSession,
        *,
        issuer_name: str = "open issuer",
    ) -> None:
        try:
            claims = decode_unverified_claims(session.id_token or "")
        except jwt.PyJWTError as exc:
            raise ValueError(f"invalid id token: {exc}") from None

        fhir_user = claims.get("fhirUser")
        if fhir_user is not None and not isinstance(fhir_user, str):
            raise ValueError("invalid id token: fhirUser must be a string")

        self._client = client
        self._session = session
        self._id_token = claims
        self.issuer_name = issuer_name

    @property
    def session(self) -> CompleteSession:
        return self._session

    @property
    def patient(self) -> ValueAccessor:
        return ValueAccessor(type="Patient", id=self._session.patient or "", ready=self)

    @property
    def encounter(self) -> ValueAccessor:
        return ValueAccessor(type="Encounter", id=self._session.encounter or "", ready=self)

    @property
    def user(self) -> UserAccessor:
        return UserAccessor(fhir_user=as_optional_str(self._id_token.get("fhirUser")), ready=self)

    async def validate(self) -> bool:
        """Verify the access token's signature against the issuer's JWKS."""
        server = self._session.server or ""
        smart_config = await fetch_smart_configuration(
            server,
            http=self._client.http,
            cache=self._client.smart_configuration_cache,
        )
        if isinstance(smart_config, SmartError):
            LOGGER.error("fhir.validate failed to fetch smart configuration: %s", smart_config)
            return False

        access_token = self._session.access_token or ""
        try:
            jwks = await fetch_jwks(
                smart_config.jwks_uri or "",
                http=self._client.http,
                cache=self._client.smart_configuration_cache,
            )
            signing_key = _signing_key(jwt.PyJWKSet.from_dict(jwks), access_token)
            jwt.decode(
                access_token,
                key=signing_key.key,
                algorithms=["RS256"],
                issuer=self._session.issuer,
                options={"verify_aud": False},
            )
        except (jwt.PyJWTError, httpx.HTTPError, KeyError, ValueError) as exc:
            LOGGER.error(
                "fhir.validate token validation failed server=%s: %s",
                server,
                type(exc).__name__,
            )
            return False
        return True

    async def request(
        self, path: str, cache: CacheConfig | None = None
    ) -> FhirResource | SmartError:
        resource_type = infer_resource_type(path)
        cache_item = CacheItem(server=self._session.server or "", resource=path)
        if cache is not None:
            cached = await get_cached_resource(self._client.cache, cache_item)
            if cached is not None:
                return cached

        try:
            response = await self._fetch(
                lambda session: get_fhir(session, path, http=self._client.http)
            )
        except httpx.HTTPError as exc:
            LOGGER.error("fhir.request network error getting %s: %s", path, exc)
            return SmartError(ErrorKind.UNKNOWN_ERROR)

        if response.status_code == 404:
            LOGGER.warning("fhir.request resource (%s) was not found on FHIR server", path)
            return SmartError(ErrorKind.REQUEST_FAILED_RESOURCE_NOT_FOUND)

        if not response.is_success:
            LOGGER.error(
                "fhir.request to get %s failed, %s responded with %s %s, server said: %s",
                path,
                response.url,
                response.status_code,
                response.reason_phrase,
                describe_error_response(response),
            )
            return SmartError(ErrorKind.REQUEST_FAILED_NON_OK_RESPONSE)

        try:
            resource = parse_resource(response, expected_type=expected_resource_type(path))
        except ValueError as exc:
            LOGGER.error("fhir.request failed to parse %s (%s): %s", path, resource_type, exc)
            return SmartError(ErrorKind.REQUEST_FAILED_INVALID_RESPONSE)

        if cache is not None:
            await set_cached_resource(
                self._client.cache, cache_item, resource, ttl_ms=cache.ttl_ms
            )
        return resource

    async def create(
        self, resource_type: str, payload: FhirResource
    ) -> FhirResource | SmartError:
        try:
            response = await self._fetch(
                lambda session: post_fhir(
                    session, resource_type, payload, http=self._client.http
                )
            )
        except httpx.HTTPError as exc:
            LOGGER.error("fhir.create network error posting %s: %s", resource_type, exc)
            return SmartError(ErrorKind.UNKNOWN_ERROR)
        return self._write_result(response, resource_type, action="create")

    async def update(
        self, resource_type: str, resource_id: str, payload: FhirResource
    ) -> FhirResource | SmartError:
        try:
            response = await self._fetch(
                lambda session: put_fhir(
                    session, resource_type, resource_id, payload, http=self._client.http
                )
            )
        except httpx.HTTPError as exc:
            LOGGER.error(
                "fhir.update network error putting %s/%s: %s", resource_type, resource_id, exc
            )
            return SmartError(ErrorKind.UNKNOWN_ERROR)
        return self._write_result(response, resource_type, action="update")

    def get_claim(
        self, claim: str, schema: Callable[[Any], T] | None = None
    ) -> T | Any | SmartError:
        value = self._id_token.get(claim)
        if value is None:
            return SmartError(ErrorKind.CLAIM_NOT_FOUND)
        if schema is None:
            return value

        try:
            return schema(value)
        except (TypeError, ValueError) as exc:
            LOGGER.error("fhir.claim validation failed for claim %s: %s", claim, exc)
            return SmartError(ErrorKind.CLAIM_INVALID)

    async def _fetch(self, do_fetch: Callable[[CompleteSession], Any]) -> httpx.Response:
        response, session = await self._client.fetch_with_refresh(self._session, do_fetch)
        self._session = session
        return response

    def _write_result(
        self, response: httpx.Response, resource_type: str, *, action: str
    ) -> FhirResource | SmartError:
        if not response.is_success:
            LOGGER.error(
                "fhir.%s request to %s %s failed, %s responded with %s %s, server says: %s",
                action,
                action,
                resource_type,
                response.url,
                response.status_code,
                response.reason_phrase,
                describe_error_response(response),
            )
            return SmartError(ErrorKind.CREATE_FAILED_NON_OK_RESPONSE)

        try:
            return parse_resource(response, expected_type=infer_resource_type(resource_type))
        except ValueError as exc:
            LOGGER.error("fhir.%s failed to parse %s: %s", action, resource_type, exc)
            return SmartError(ErrorKind.CREATE_FAILED_INVALID_RESPONSE)


def _signing_key(jwk_set: jwt.PyJWKSet, token: str) -> jwt.PyJWK:
    header = jwt.get_unverified_header(token)
    kid = header.get("kid")
    if kid is None:
        if len(jwk_set.keys) == 1:
            return jwk_set.keys[0]
        raise ValueError("token has no kid and JWKS has several keys")
    return jwk_set[kid]
