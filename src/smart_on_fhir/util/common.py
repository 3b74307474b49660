from __future__ import annotations

import os
import re
import time
from typing import Any
from urllib import parse as urlparse

PRODUCTION_ENV_VAR = "SMART_ON_FHIR_ENV"
MIN_PRODUCTION_SESSION_ID_LENGTH = 10

_RESOURCE_TYPE_RE = re.compile(r"(\w+)\b")


def as_optional_str(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def normalize_url(value: str, *, field: str) -> str:
    text = value.strip()
    parsed = urlparse.urlsplit(text)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"{field} must be an absolute URL")
    return text


def remove_trailing_slash(url: str) -> str:
    return url[:-1] if url.endswith("/") else url


def normalize_issuer(issuer: str) -> str:
    without_query, _, _ = issuer.partition("?")
    return remove_trailing_slash(without_query)


def with_query_params(url: str, params: dict[str, str]) -> str:
    parts = urlparse.urlsplit(url)
    query = urlparse.parse_qsl(parts.query, keep_blank_values=True)
    query = [(key, value) for key, value in query if key not in params]
    query.extend(params.items())
    return urlparse.urlunsplit(parts._replace(query=urlparse.urlencode(query)))


def infer_resource_type(path: str) -> str:
    match = _RESOURCE_TYPE_RE.search(path)
    return match.group(1) if match else "Unknown"


def assert_good_session_id(session_id: str | None) -> str:
    if session_id is None or len(session_id) == 0:
        raise ValueError(
            "Session ID is missing or empty. Please provide a valid session ID."
        )
    if (
        os.environ.get(PRODUCTION_ENV_VAR) == "production"
        and len(session_id) < MIN_PRODUCTION_SESSION_ID_LENGTH
    ):
        raise ValueError(
            "Session ID is too short, are you sure you are creating cryptographically good IDs?"
        )
    return session_id


def now_epoch() -> int:
    return int(time.time())
