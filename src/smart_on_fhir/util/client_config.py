from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, cast

import json5
from dataclasses_json import LetterCase, Undefined, dataclass_json
from dotenv import dotenv_values

from ..errors import InvariantViolation
from .common import as_optional_str, normalize_issuer, normalize_url

AUTH_TYPES = {"public", "confidential-symmetric"}
AUTH_METHODS = {"client_secret_post", "client_secret_basic"}

_ALIASES = {
    "client_id": "clientId",
    "callback_url": "callbackUrl",
    "redirect_url": "redirectUrl",
    "allow_any_issuer": "allowAnyIssuer",
    "known_fhir_servers": "knownFhirServers",
    "client_secret": "clientSecret",
}


@dataclass_json(letter_case=LetterCase.CAMEL, undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class KnownFhirServer:
    issuer: str | None = None
    name: str | None = None
    type: str = "public"
    method: str | None = None
    client_secret: str | None = field(default=None, repr=False)

    def validate(self) -> None:
        if not as_optional_str(self.issuer):
            raise ValueError("known FHIR server is missing issuer")
        normalize_url(self.issuer or "", field="known FHIR server issuer")
        if self.type not in AUTH_TYPES:
            allowed = ", ".join(sorted(AUTH_TYPES))
            raise ValueError(
                f"known FHIR server {self.issuer} has unknown type '{self.type}' (expected one of: {allowed})"
            )
        if self.type == "public":
            return
        if self.method not in AUTH_METHODS:
            allowed = ", ".join(sorted(AUTH_METHODS))
            raise ValueError(
                f"known FHIR server {self.issuer} requires method (expected one of: {allowed})"
            )
        if not as_optional_str(self.client_secret):
            raise ValueError(f"known FHIR server {self.issuer} requires clientSecret")

    @property
    def display_name(self) -> str:
        return self.name or normalize_issuer(self.issuer or "")

    def matches(self, issuer: str) -> bool:
        return normalize_issuer(self.issuer or "") == normalize_issuer(issuer)

    def resolved_secret(self) -> str | None:
        if not self.client_secret:
            return None
        return resolve_secret_ref(self.client_secret)


PUBLIC_AUTH_MODE = KnownFhirServer(issuer=None, type="public")


@dataclass_json(letter_case=LetterCase.CAMEL, undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class SmartClientConfiguration:
    client_id: str | None = None
    scope: str | None = None
    callback_url: str | None = None
    redirect_url: str | None = None
    allow_any_issuer: bool | None = None
    known_fhir_servers: list[KnownFhirServer] | None = None

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> SmartClientConfiguration:
        normalized_doc = _normalize_aliases(doc)
        servers = normalized_doc.get("knownFhirServers")
        if isinstance(servers, list):
            normalized_doc["knownFhirServers"] = [
                _normalize_aliases(item) if isinstance(item, dict) else item
                for item in servers
            ]

        configuration = cast(
            SmartClientConfiguration, cast(Any, cls).from_dict(normalized_doc)
        )
        configuration.validate()
        return configuration

    def to_doc(self) -> dict[str, Any]:
        return cast(dict[str, Any], cast(Any, self).to_dict())

    def validate(self) -> None:
        for name in ("client_id", "scope", "callback_url", "redirect_url"):
            if not as_optional_str(getattr(self, name)):
                raise ValueError(f"invalid client configuration: missing {name}")
        normalize_url(self.callback_url or "", field="callback_url")
        normalize_url(self.redirect_url or "", field="redirect_url")

        if self.allow_any_issuer is not None and self.known_fhir_servers is not None:
            raise ValueError(
                "invalid client configuration: cannot combine allow_any_issuer with known_fhir_servers"
            )
        if self.allow_any_issuer is not None:
            if self.allow_any_issuer is not True:
                raise InvariantViolation("allowAnyIssuer is false, should only ever be true")
            return
        if self.known_fhir_servers is None:
            raise ValueError(
                "invalid client configuration: expected allow_any_issuer or known_fhir_servers"
            )
        for server in self.known_fhir_servers:
            if not isinstance(server, KnownFhirServer):
                raise ValueError("invalid client configuration: malformed known FHIR server")
            server.validate()

    @property
    def is_open(self) -> bool:
        return self.allow_any_issuer is True

    def known_fhir_server(self, issuer: str) -> KnownFhirServer | None:
        if self.is_open:
            return None
        return next(
            (server for server in self.known_fhir_servers or [] if server.matches(issuer)),
            None,
        )

    def auth_mode(self, server: str) -> KnownFhirServer:
        return self.known_fhir_server(server) or PUBLIC_AUTH_MODE


def read_client_configuration(path: str) -> SmartClientConfiguration:
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ValueError(f"client configuration file not found: {path}") from None
    except OSError as exc:
        raise ValueError(f"unable to read client configuration file: {exc}") from None

    try:
        doc = json5.loads(raw)
    except Exception as exc:
        raise ValueError(f"invalid client configuration JSON/JSON5: {exc}") from None

    if not isinstance(doc, dict):
        raise ValueError("invalid client configuration file: expected object")
    return SmartClientConfiguration.from_doc(doc)


def resolve_secret_ref(secret_spec: str) -> str:
    """Resolve `env://VAR` and `.env://path:VAR` references; anything else is the secret itself."""
    value = secret_spec.strip()

    if value.startswith("env://"):
        name = value[len("env://") :].strip()
        if not name:
            raise ValueError("invalid client secret reference: missing env var name")
        resolved = as_optional_str(os.environ.get(name))
        if resolved is None:
            raise ValueError(f"client secret environment variable not set: {name}")
        return resolved

    if value.startswith(".env://"):
        rest = value[len(".env://") :]
        path, sep, name = rest.rpartition(":")
        if not sep or not path.strip() or not name.strip():
            raise ValueError("invalid client secret reference: expected .env://path:VAR")
        env_path = Path(path.strip())
        values = dotenv_values(dotenv_path=env_path, encoding="utf-8") if env_path.exists() else {}
        resolved = as_optional_str(values.get(name.strip()))
        if resolved is None:
            raise ValueError(f"client secret not found in .env file: {name.strip()}")
        return resolved

    return value


def _normalize_aliases(doc: dict[str, Any]) -> dict[str, Any]:
    normalized_doc = dict(doc)
    for snake, camel in _ALIASES.items():
        if camel not in normalized_doc and snake in normalized_doc:
            normalized_doc[camel] = normalized_doc.pop(snake)
    return normalized_doc
