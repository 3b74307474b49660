from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, cast

import httpx
import jwt
from dataclasses_json import Undefined, dataclass_json

from .errors import ErrorKind, InvariantViolation, SmartError
from .util.client_config import KnownFhirServer, SmartClientConfiguration
from .util.common import as_optional_str
from .util.http import http_session
from .util.session_state import CompleteSession, InitialSession

LOGGER = logging.getLogger("smart.token")


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class TokenResponse:
    access_token: str | None = None
    id_token: str | None = None
    refresh_token: str | None = None
    patient: str | None = None
    encounter: str | None = None

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> TokenResponse:
        response = cast(TokenResponse, cast(Any, cls).from_dict(doc))
        _require_fields(response, ("access_token", "id_token", "refresh_token", "patient", "encounter"))
        return response


@dataclass_json(undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class TokenRefreshResponse:
    access_token: str | None = None
    id_token: str | None = None
    refresh_token: str | None = None

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> TokenRefreshResponse:
        response = cast(TokenRefreshResponse, cast(Any, cls).from_dict(doc))
        _require_fields(response, ("access_token", "id_token", "refresh_token"))
        return response


def generate_pkce_verifier() -> str:
    return _b64url(secrets.token_bytes(32))


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def pkce_challenge_s256(verifier: str) -> str:
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def token_expires_in(token: str, *, now: float | None = None) -> int:
    """Seconds until the token's `exp`; 0 when it has none or can't be decoded."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as exc:
        LOGGER.debug("token.expiry undecodable token treated as expired: %s", exc)
        return 0

    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return 0
    current = int(time.time() if now is None else now)
    return int(exp) - current


def decode_unverified_claims(token: str) -> dict[str, Any]:
    claims = jwt.decode(token, options={"verify_signature": False})
    if not isinstance(claims, dict):
        raise ValueError("token claims must be an object")
    return claims


async def post_form_encoded(
    url: str,
    form: dict[str, str],
    *,
    client_id: str,
    auth_mode: KnownFhirServer,
    http: httpx.AsyncClient | None = None,
) -> httpx.Response:
    headers = {
        "Accept": "application/json",
        "Content-Type": "application/x-www-form-urlencoded",
    }
    body = dict(form)

    if auth_mode.type == "confidential-symmetric":
        secret = auth_mode.resolved_secret()
        if not secret:
            raise InvariantViolation("confidential FHIR server is missing its client secret")
        if auth_mode.method == "client_secret_post":
            body["client_secret"] = secret
        elif auth_mode.method == "client_secret_basic":
            credentials = base64.b64encode(f"{client_id}:{secret}".encode("utf-8"))
            headers["Authorization"] = f"Basic {credentials.decode('ascii')}"
        else:
            raise InvariantViolation("Unknown FHIR auth mode")
    elif auth_mode.type != "public":
        raise InvariantViolation("Unknown FHIR auth mode")

    LOGGER.info(
        "token.http POST %s auth=%s form_keys=%s",
        url,
        auth_mode.type,
        ",".join(sorted(body)),
    )
    async with http_session(http) as client:
        return await client.post(url, data=body, headers=headers)


async def exchange_token(
    code: str,
    session: InitialSession,
    config: SmartClientConfiguration,
    auth_mode: KnownFhirServer,
    *,
    http: httpx.AsyncClient | None = None,
) -> TokenResponse | SmartError:
    form = {
        "client_id": config.client_id or "",
        "grant_type": "authorization_code",
        "code": code,
        "code_verifier": session.code_verifier or "",
        "redirect_uri": config.callback_url or "",
    }

    token_endpoint = session.token_endpoint or ""
    try:
        response = await post_form_encoded(
            token_endpoint,
            form,
            client_id=config.client_id or "",
            auth_mode=auth_mode,
            http=http,
        )
    except httpx.HTTPError as exc:
        LOGGER.error("token.exchange network error contacting %s: %s", token_endpoint, exc)
        return SmartError(ErrorKind.UNKNOWN_ERROR)

    if not response.is_success:
        LOGGER.error(
            "token.exchange failed, token_endpoint responded with %s %s, server says: %s",
            response.status_code,
            response.reason_phrase,
            _oauth_error_message(response),
        )
        return SmartError(ErrorKind.TOKEN_EXCHANGE_FAILED)

    try:
        return TokenResponse.from_doc(_json_object(response))
    except Exception as exc:
        LOGGER.error("token.exchange %s responded with weird token response: %s", token_endpoint, exc)
        return SmartError(ErrorKind.TOKEN_EXCHANGE_INVALID_BODY)


async def refresh_token(
    session: CompleteSession,
    config: SmartClientConfiguration,
    auth_mode: KnownFhirServer,
    *,
    http: httpx.AsyncClient | None = None,
) -> TokenRefreshResponse | SmartError:
    form = {
        "client_id": config.client_id or "",
        "grant_type": "refresh_token",
        "refresh_token": session.refresh_token or "",
    }

    token_endpoint = session.token_endpoint or ""
    try:
        response = await post_form_encoded(
            token_endpoint,
            form,
            client_id=config.client_id or "",
            auth_mode=auth_mode,
            http=http,
        )
    except httpx.HTTPError as exc:
        LOGGER.error("token.refresh network error contacting %s: %s", token_endpoint, exc)
        return SmartError(ErrorKind.UNKNOWN_ERROR)

    if not response.is_success:
        LOGGER.error(
            "token.refresh failed, token_endpoint responded with %s %s, server says: %s",
            response.status_code,
            response.reason_phrase,
            _oauth_error_message(response),
        )
        return SmartError(ErrorKind.REFRESH_TOKEN_FAILED)

    try:
        return TokenRefreshResponse.from_doc(_json_object(response))
    except Exception as exc:
        LOGGER.error("token.refresh %s responded with weird token response: %s", token_endpoint, exc)
        return SmartError(ErrorKind.REFRESH_TOKEN_INVALID_BODY)


def _json_object(response: httpx.Response) -> dict[str, Any]:
    payload = response.json()
    if not isinstance(payload, dict):
        raise ValueError("expected JSON object")
    return payload


def _oauth_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500] or "<empty body>"
    if isinstance(payload, dict):
        msg = as_optional_str(payload.get("error_description")) or as_optional_str(
            payload.get("error")
        )
        if msg:
            return msg
    return response.text[:500]


def _require_fields(response: Any, names: tuple[str, ...]) -> None:
    for name in names:
        if not isinstance(getattr(response, name), str):
            raise ValueError(f"token response missing {name}")
