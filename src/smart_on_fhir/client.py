from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING
from urllib import parse as urlparse

import httpx

from .errors import ErrorKind, SmartError
from .token import (
    exchange_token,
    generate_pkce_verifier,
    generate_state,
    pkce_challenge_s256,
    refresh_token,
    token_expires_in,
)
from .util.client_config import KnownFhirServer, SmartClientConfiguration
from .util.common import (
    assert_good_session_id,
    normalize_issuer,
    now_epoch,
    with_query_params,
)
from .util.resource_cache import CacheOptions
from .util.session_state import CompleteSession, InitialSession
from .util.smart_configuration import SmartConfigurationCache, fetch_smart_configuration
from .util.storage import SafeSmartStorage, SmartStorage

if TYPE_CHECKING:
    from .ready import ReadyClient

LOGGER = logging.getLogger("smart.client")

REFRESH_THRESHOLD_S = 60 * 5


@dataclass(frozen=True, slots=True)
class SessionKey:
    """Single launch: any later launch with the same session id overwrites the session."""

    session_id: str

    @property
    def active_patient(self) -> str | None:
        return None

    @property
    def primary_key(self) -> str:
        return self.session_id

    @property
    def patient_key(self) -> str | None:
        return None


@dataclass(frozen=True, slots=True)
class PatientSessionKey:
    """Multi-launch: the application tracks the launched patient and passes it back."""

    session_id: str
    active_patient: str | None

    @property
    def primary_key(self) -> str:
        return self.session_id

    @property
    def patient_key(self) -> str | None:
        if not self.active_patient:
            return None
        return patient_session_key(self.session_id, self.active_patient)


SessionIdentity = SessionKey | PatientSessionKey


def patient_session_key(session_id: str, patient: str) -> str:
    return f"{session_id}:{patient}"


@dataclass(frozen=True, slots=True)
class SmartClientOptions:
    auto_refresh: bool = False
    enable_multi_launch: bool = False


@dataclass(frozen=True, slots=True)
class Launch:
    redirect_url: str


@dataclass(frozen=True, slots=True)
class Callback:
    redirect_url: str


FetchFn = Callable[[CompleteSession], Awaitable[httpx.Response]]


class SmartClient:
    """Handles the SMART App Launch for one browser session.

    The hosting application supplies the storage the session lives in and a
    unique, cryptographically random session id. Launch, callback and ready
    are usually called from three separate requests, each with a fresh
    ``SmartClient`` built from the same session id.
    """

    def __init__(
        self,
        identity: SessionIdentity,
        configuration: SmartClientConfiguration,
        storage: SmartStorage,
        *,
        options: SmartClientOptions | None = None,
        cache: CacheOptions = "disabled",
        http: httpx.AsyncClient | None = None,
        smart_configuration_cache: SmartConfigurationCache | None = None,
    ) -> None:
        assert_good_session_id(identity.session_id)
        configuration.validate()
        for known_server in configuration.known_fhir_servers or []:
            # Fail on unresolvable env:// or .env:// secrets now, not mid-refresh.
            known_server.resolved_secret()

        self.identity = identity
        self.options = options or SmartClientOptions()
        self.cache: CacheOptions = cache
        self.http = http
        self.smart_configuration_cache = smart_configuration_cache
        self._config = configuration
        self._storage = SafeSmartStorage(storage)

    @property
    def session_id(self) -> str:
        return self.identity.session_id

    @property
    def active_patient(self) -> str | None:
        return self.identity.active_patient

    @property
    def configuration(self) -> SmartClientConfiguration:
        return self._config

    async def launch(self, *, iss: str, launch: str) -> Launch | SmartError:
        """EHR launch: persist an initial session and build the authorization URL.

        The caller redirects the user to the returned URL.
        """
        server = normalize_issuer(iss)
        LOGGER.info(
            "client.launch server=%s multi_launch=%s",
            server,
            self.options.enable_multi_launch,
        )

        if not self._validate_issuer(iss):
            LOGGER.error("client.launch issuer was not found in known FHIR servers: %s", server)
            return SmartError(ErrorKind.UNKNOWN_ISSUER)

        smart_config = await fetch_smart_configuration(
            server, http=self.http, cache=self.smart_configuration_cache
        )
        if isinstance(smart_config, SmartError):
            return smart_config

        initial_session = InitialSession(
            server=server,
            issuer=smart_config.issuer,
            authorization_endpoint=smart_config.authorization_endpoint,
            token_endpoint=smart_config.token_endpoint,
            code_verifier=generate_pkce_verifier(),
            state=generate_state(),
        )
        await self._storage.set(self.identity.primary_key, initial_session)

        redirect_url = self._build_authorization_url(
            initial_session,
            launch=launch,
            code_challenge=pkce_challenge_s256(initial_session.code_verifier or ""),
        )
        return Launch(redirect_url=redirect_url)

    async def callback(self, *, code: str, state: str) -> Callback | SmartError:
        """Complete the initial session by exchanging the authorization code for tokens."""
        initial_session = await self._storage.get_partial(self.identity.primary_key)
        if isinstance(initial_session, SmartError):
            LOGGER.error(
                "client.callback session not found for session id, was %s",
                initial_session.error.value,
            )
            return initial_session

        if initial_session.state != state:
            LOGGER.error(
                "client.callback state mismatch, expected len: %s but got len: %s",
                len(initial_session.state or ""),
                len(state),
            )
            return SmartError(ErrorKind.INVALID_STATE)

        server = initial_session.server or ""
        token_response = await exchange_token(
            code,
            initial_session,
            self._config,
            self._auth_mode(server),
            http=self.http,
        )
        if isinstance(token_response, SmartError):
            return token_response

        complete_session = CompleteSession.from_initial(
            initial_session,
            access_token=token_response.access_token or "",
            id_token=token_response.id_token or "",
            refresh_token=token_response.refresh_token or "",
            patient=token_response.patient or "",
            encounter=token_response.encounter or "",
            updated_at=now_epoch(),
        )
        await self._storage.set(self.identity.primary_key, complete_session)
        LOGGER.info("client.callback session completed server=%s", server)

        redirect_url = self._config.redirect_url or ""
        if not self.options.enable_multi_launch:
            return Callback(redirect_url=redirect_url)

        patient = complete_session.patient or ""
        await self._storage.set(
            patient_session_key(self.session_id, patient), complete_session
        )
        return Callback(redirect_url=with_query_params(redirect_url, {"patient": patient}))

    async def ready(self) -> ReadyClient | SmartError:
        """Build a ReadyClient from a completed session."""
        from .ready import ReadyClient

        if self.options.auto_refresh:
            session = await self.get_or_refresh()
        else:
            session = await self.get_complete_session()
        if isinstance(session, SmartError):
            return session

        known_server = self._config.known_fhir_server(session.server or "")
        issuer_name = known_server.display_name if known_server else "open issuer"
        try:
            return ReadyClient(self, session, issuer_name=issuer_name)
        except ValueError as exc:
            LOGGER.error(
                "client.ready ReadyClient instantiation failed (INVALID_ID_TOKEN): %s", exc
            )
            return SmartError(ErrorKind.INVALID_ID_TOKEN)

    async def refresh(self, session: CompleteSession) -> CompleteSession | SmartError:
        """Exchange the refresh token for a new access token and persist it."""
        refresh_response = await refresh_token(
            session,
            self._config,
            self._auth_mode(session.server or ""),
            http=self.http,
        )
        if isinstance(refresh_response, SmartError):
            return refresh_response

        refreshed = replace(
            session,
            access_token=refresh_response.access_token,
            refresh_token=refresh_response.refresh_token,
            updated_at=now_epoch(),
        )
        await self._storage.set(self.identity.primary_key, refreshed)
        # The resolver may have fallen back to the primary copy, which can belong
        # to a different patient than the active one.
        multi_launch = self.options.enable_multi_launch or self.identity.patient_key is not None
        if multi_launch and refreshed.patient:
            await self._storage.set(
                patient_session_key(self.session_id, refreshed.patient), refreshed
            )

        LOGGER.info("client.refresh session refreshed server=%s", session.server)
        return refreshed

    async def get_complete_session(self) -> CompleteSession | SmartError:
        primary_key = self.identity.primary_key
        patient_key = self.identity.patient_key
        if patient_key is None:
            session = await self._storage.get_complete(primary_key)
        else:
            session = await self._resolve_patient_session(patient_key, primary_key)

        if isinstance(session, SmartError):
            LOGGER.error(
                "client.get_session failed to retrieve session because session is %s",
                session.error.value,
            )
        return session

    async def get_or_refresh(self) -> CompleteSession | SmartError:
        session = await self.get_complete_session()
        if isinstance(session, SmartError):
            return session

        expires_in = token_expires_in(session.access_token or "")
        if expires_in >= REFRESH_THRESHOLD_S:
            return session

        LOGGER.info("client.get_or_refresh token expires in %ss, refreshing", expires_in)
        refreshed = await self.refresh(session)
        if isinstance(refreshed, SmartError):
            # Hand back the possibly expired session; 401 handling deals with it.
            LOGGER.error(
                "client.get_or_refresh failed to refresh session: %s", refreshed.error.value
            )
            return session
        return refreshed

    async def fetch_with_refresh(
        self, session: CompleteSession, do_fetch: FetchFn
    ) -> tuple[httpx.Response, CompleteSession]:
        """Run ``do_fetch``; on 401 refresh once and retry once with the new token."""
        response = await do_fetch(session)
        if not self.options.auto_refresh or response.status_code != 401:
            return response, session

        refreshed = await self.refresh(session)
        if isinstance(refreshed, SmartError):
            LOGGER.error("client.fetch failed to refresh session: %s", refreshed.error.value)
            return response, session

        LOGGER.info("client.fetch refreshed after 401, retrying once")
        return await do_fetch(refreshed), refreshed

    async def _resolve_patient_session(
        self, patient_key: str, primary_key: str
    ) -> CompleteSession | SmartError:
        patient_session = await self._storage.get_complete(patient_key)
        primary_session = await self._storage.get_complete(primary_key)
        if isinstance(patient_session, SmartError):
            LOGGER.info(
                "client.get_session no session for active patient (%s), using primary key",
                patient_session.error.value,
            )
            return primary_session
        if isinstance(primary_session, SmartError):
            return patient_session

        if (
            primary_session.patient == patient_session.patient
            and (primary_session.updated_at or 0) > (patient_session.updated_at or 0)
        ):
            return primary_session
        return patient_session

    def _validate_issuer(self, issuer: str) -> bool:
        if self._config.is_open:
            return True
        return self._config.known_fhir_server(issuer) is not None

    def _auth_mode(self, server: str) -> KnownFhirServer:
        return self._config.auth_mode(server)

    def _build_authorization_url(
        self, session: InitialSession, *, launch: str, code_challenge: str
    ) -> str:
        params: dict[str, str] = {
            "response_type": "code",
            "client_id": self._config.client_id or "",
            "scope": self._config.scope or "",
            "redirect_uri": self._config.callback_url or "",
            "aud": session.issuer or "",
            "launch": launch,
            "state": session.state or "",
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        endpoint = session.authorization_endpoint or ""
        sep = "&" if "?" in endpoint else "?"
        return f"{endpoint}{sep}{urlparse.urlencode(params)}"
