from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from .util.common import infer_resource_type
from .util.http import http_session
from .util.session_state import CompleteSession

LOGGER = logging.getLogger("smart.fhir")

FHIR_READ_ACCEPT = "application/fhir+json,application/json"


async def get_fhir(
    session: CompleteSession, path: str, *, http: httpx.AsyncClient | None = None
) -> httpx.Response:
    url = _resource_url(session, path)
    LOGGER.info("fhir.http GET %s", url)
    async with http_session(http) as client:
        return await client.get(url, headers=_headers(session, accept=FHIR_READ_ACCEPT))


async def post_fhir(
    session: CompleteSession,
    path: str,
    payload: Any,
    *,
    http: httpx.AsyncClient | None = None,
) -> httpx.Response:
    url = _resource_url(session, path)
    LOGGER.info("fhir.http POST %s", url)
    async with http_session(http) as client:
        return await client.post(url, content=_json_body(payload), headers=_write_headers(session))


async def put_fhir(
    session: CompleteSession,
    path: str,
    resource_id: str,
    payload: Any,
    *,
    http: httpx.AsyncClient | None = None,
) -> httpx.Response:
    url = _resource_url(session, f"{path}/{resource_id}")
    LOGGER.info("fhir.http PUT %s", url)
    async with http_session(http) as client:
        return await client.put(url, content=_json_body(payload), headers=_write_headers(session))


def expected_resource_type(path: str) -> str:
    resource_type = infer_resource_type(path)
    if "?" in path and "/" not in path.split("?", 1)[0]:
        return "Bundle"
    return resource_type


def parse_resource(response: httpx.Response, *, expected_type: str) -> dict[str, Any]:
    payload = response.json()
    if not isinstance(payload, dict):
        raise ValueError("FHIR resource must be a JSON object")
    actual_type = payload.get("resourceType")
    if actual_type != expected_type:
        raise ValueError(f"expected resourceType {expected_type}, got {actual_type!r}")
    return payload


def describe_error_response(response: httpx.Response) -> str:
    status = f"{response.status_code} {response.reason_phrase}"
    content_type = response.headers.get("Content-Type")
    if not content_type:
        return f"Unknown error, {status} (content-type was: None)"

    body = response.text
    if "application/fhir+json" in content_type:
        try:
            outcome = json.loads(body)
        except json.JSONDecodeError:
            return body
        formatted = format_operation_outcome(outcome)
        if formatted is not None:
            return formatted
        return body
    if "application/json" in content_type:
        try:
            return json.dumps(json.loads(body), indent=2)
        except json.JSONDecodeError:
            return body

    return f"Unknown content-type on error, {status}, (content-type was: {content_type}): {body[:500]}"


def format_operation_outcome(outcome: Any) -> str | None:
    if not isinstance(outcome, dict) or outcome.get("resourceType") != "OperationOutcome":
        return None
    issues = outcome.get("issue")
    if not isinstance(issues, list):
        return None

    lines = [
        f"{issue.get('severity')} ({issue.get('code')}): {issue.get('diagnostics')}"
        for issue in issues
        if isinstance(issue, dict)
    ]
    return "FHIR OperationOutcome: " + "\n".join(lines)


def _resource_url(session: CompleteSession, path: str) -> str:
    return f"{session.server}/{path.lstrip('/')}"


def _headers(session: CompleteSession, *, accept: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {session.access_token}",
        "Accept": accept,
    }


def _write_headers(session: CompleteSession) -> dict[str, str]:
    headers = _headers(session, accept="application/json")
    headers["Content-Type"] = "application/json"
    return headers


def _json_body(payload: Any) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
