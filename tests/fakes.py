from __future__ import annotations

import json
import time
from typing import Any
from urllib import parse as urlparse

import httpx
import jwt
from jwt.algorithms import RSAAlgorithm

from smart_on_fhir.client import Callback, Launch, SmartClient
from smart_on_fhir.util.client_config import KnownFhirServer, SmartClientConfiguration

HMAC_SECRET = "unit-test-signing-secret-0123456789abcdef"
SIGNING_KID = "unit-test-key"


def open_config(**overrides: Any) -> SmartClientConfiguration:
    doc: dict[str, Any] = {
        "clientId": "test-client",
        "scope": "openid fhirUser launch/patient",
        "callbackUrl": "http://app/callback",
        "redirectUrl": "http://app/ready",
        "allowAnyIssuer": True,
    }
    doc.update(overrides)
    return SmartClientConfiguration.from_doc(doc)


def closed_config(*servers: KnownFhirServer) -> SmartClientConfiguration:
    return SmartClientConfiguration(
        client_id="test-client",
        scope="openid fhirUser launch/patient",
        callback_url="http://app/callback",
        redirect_url="http://app/ready",
        known_fhir_servers=list(servers),
    )


def mint_hs256(claims: dict[str, Any]) -> str:
    return jwt.encode(claims, HMAC_SECRET, algorithm="HS256")


def query_of(url: str) -> dict[str, str]:
    return dict(urlparse.parse_qsl(urlparse.urlsplit(url).query))


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSmartServer:
    """A FHIR server and its authorization server behind one MockTransport."""

    def __init__(
        self,
        server: str = "http://fhir-server",
        *,
        issuer: str = "http://auth-server",
    ) -> None:
        self.server = server
        self.issuer = issuer
        self.authorization_endpoint = f"{issuer}/authorize"
        self.token_endpoint = f"{issuer}/token"
        self.jwks_uri = f"{issuer}/jwks"

        self.patient = "patient-1"
        self.encounter = "encounter-1"
        self.fhir_user = "Practitioner/practitioner-1"
        self.access_token_ttl_s = 3600
        self.token_status = 200
        self.refresh_status = 200
        self.token_body: dict[str, Any] | None = None
        self.well_known_status = 200
        self.well_known_body: Any = None

        self.resources: dict[str, dict[str, Any]] = {}
        self.unauthorized: dict[str, int] = {}
        self.unreachable: set[str] = set()
        self.requests: list[httpx.Request] = []
        self.token_requests: list[dict[str, str]] = []

        self.signing_key: Any = None
        self._token_counter = 0

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))

    def use_rsa_signing(self) -> None:
        from cryptography.hazmat.primitives.asymmetric import rsa

        self.signing_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    @property
    def jwks(self) -> dict[str, Any]:
        if self.signing_key is None:
            return {"keys": []}
        jwk = json.loads(RSAAlgorithm.to_jwk(self.signing_key.public_key()))
        jwk.update({"kid": SIGNING_KID, "alg": "RS256", "use": "sig"})
        return {"keys": [jwk]}

    @property
    def smart_configuration(self) -> dict[str, Any]:
        return {
            "issuer": self.issuer,
            "authorization_endpoint": self.authorization_endpoint,
            "token_endpoint": self.token_endpoint,
            "jwks_uri": self.jwks_uri,
            "capabilities": ["launch-ehr", "client-public"],
        }

    @property
    def refresh_count(self) -> int:
        return sum(1 for form in self.token_requests if form.get("grant_type") == "refresh_token")

    def fetches(self, path: str, method: str = "GET") -> list[httpx.Request]:
        url = f"{self.server}/{path}"
        return [r for r in self.requests if r.method == method and str(r.url) == url]

    def mint_access_token(self, *, issuer: str | None = None) -> str:
        self._token_counter += 1
        claims = {
            "iss": issuer or self.issuer,
            "sub": "test-client",
            "exp": int(time.time()) + self.access_token_ttl_s,
            "jti": f"access-{self._token_counter}",
        }
        if self.signing_key is None:
            return mint_hs256(claims)
        return jwt.encode(
            claims, self.signing_key, algorithm="RS256", headers={"kid": SIGNING_KID}
        )

    def mint_id_token(self) -> str:
        return mint_hs256(
            {
                "iss": self.issuer,
                "sub": "practitioner-1",
                "fhirUser": self.fhir_user,
                "profile": self.fhir_user,
                "exp": int(time.time()) + 3600,
            }
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)

        if url == f"{self.server}/.well-known/smart-configuration":
            if self.well_known_status != 200:
                return httpx.Response(self.well_known_status, text="nope")
            body = self.well_known_body
            if body is None:
                body = self.smart_configuration
            if isinstance(body, str):
                return httpx.Response(200, text=body)
            return httpx.Response(200, json=body)

        if url == self.token_endpoint and request.method == "POST":
            return self._handle_token(request)

        if url == self.jwks_uri:
            return httpx.Response(200, json=self.jwks)

        if url.startswith(f"{self.server}/"):
            return self._handle_fhir(request, url[len(self.server) + 1 :])

        return httpx.Response(404, text=f"no route for {url}")

    def _handle_token(self, request: httpx.Request) -> httpx.Response:
        form = dict(urlparse.parse_qsl(request.content.decode("utf-8")))
        authorization = request.headers.get("Authorization")
        if authorization is not None:
            form["__authorization"] = authorization
        self.token_requests.append(form)

        if form.get("grant_type") == "refresh_token":
            if self.refresh_status != 200:
                return httpx.Response(self.refresh_status, json={"error": "invalid_grant"})
            return httpx.Response(
                200,
                json={
                    "access_token": self.mint_access_token(),
                    "id_token": self.mint_id_token(),
                    "refresh_token": f"refresh-{self._token_counter}",
                    "token_type": "Bearer",
                    "expires_in": self.access_token_ttl_s,
                },
            )

        if self.token_status != 200:
            return httpx.Response(
                self.token_status,
                json={"error": "invalid_grant", "error_description": "bad code"},
            )
        if self.token_body is not None:
            return httpx.Response(200, json=self.token_body)
        return httpx.Response(
            200,
            json={
                "access_token": self.mint_access_token(),
                "id_token": self.mint_id_token(),
                "refresh_token": "refresh-initial",
                "patient": self.patient,
                "encounter": self.encounter,
                "token_type": "Bearer",
                "expires_in": self.access_token_ttl_s,
                "scope": "openid fhirUser launch/patient",
            },
        )

    def _handle_fhir(self, request: httpx.Request, path: str) -> httpx.Response:
        if path in self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)

        remaining = self.unauthorized.get(path, 0)
        if remaining > 0:
            self.unauthorized[path] = remaining - 1
            return httpx.Response(401, text="token expired")

        if request.method == "GET":
            resource = self.resources.get(path)
            if resource is None:
                return httpx.Response(
                    404,
                    json={
                        "resourceType": "OperationOutcome",
                        "issue": [
                            {"severity": "error", "code": "not-found", "diagnostics": path}
                        ],
                    },
                    headers={"Content-Type": "application/fhir+json"},
                )
            return httpx.Response(
                200, json=resource, headers={"Content-Type": "application/fhir+json"}
            )

        payload = json.loads(request.content)
        if request.method == "POST":
            return httpx.Response(201, json={**payload, "id": "created-1"})
        if request.method == "PUT":
            return httpx.Response(200, json={**payload, "id": path.split("/")[-1]})
        return httpx.Response(405, text="method not allowed")


async def launch(client: SmartClient, server: FakeSmartServer, *, iss: str | None = None) -> Launch:
    result = await client.launch(iss=iss or server.server, launch="launch-123")
    if not isinstance(result, Launch):
        raise AssertionError(f"launch failed: {result}")
    return result


async def launch_and_callback(
    client: SmartClient, server: FakeSmartServer, *, iss: str | None = None
) -> Callback:
    launched = await launch(client, server, iss=iss)
    result = await client.callback(code="auth-code", state=query_of(launched.redirect_url)["state"])
    if not isinstance(result, Callback):
        raise AssertionError(f"callback failed: {result}")
    return result
