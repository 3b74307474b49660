from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol

import json5

from ..errors import ErrorKind, SmartError
from .session_state import CompleteSession, InitialSession

LOGGER = logging.getLogger("smart.storage")


class SmartStorage(Protocol):
    """Minimal key/value store the session state lives in (Valkey, a database, ...)."""

    async def set(self, key: str, value: dict[str, Any]) -> None: ...

    async def get(self, key: str) -> Any | None: ...


class InMemorySmartStorage:
    def __init__(self) -> None:
        self._values: dict[str, Any] = {}

    async def set(self, key: str, value: dict[str, Any]) -> None:
        self._values[key] = dict(value)

    async def get(self, key: str) -> Any | None:
        value = self._values.get(key)
        return dict(value) if isinstance(value, dict) else value

    def keys(self) -> list[str]:
        return list(self._values)


class SafeSmartStorage:
    def __init__(self, storage: SmartStorage) -> None:
        self._storage = storage

    async def set(self, key: str, session: InitialSession) -> None:
        session.validate()
        LOGGER.debug("storage.set key=%s kind=%s", key, type(session).__name__)
        await self._storage.set(key, session.to_doc())

    async def get_partial(self, key: str) -> InitialSession | SmartError:
        doc = await self._read_doc(key)
        if isinstance(doc, SmartError):
            return doc

        try:
            return InitialSession.from_doc(doc)
        except Exception as exc:
            LOGGER.error("storage.get_partial key=%s broken session state: %s", key, exc)
            return SmartError(ErrorKind.BROKEN_SESSION_STATE)

    async def get_complete(self, key: str) -> CompleteSession | SmartError:
        doc = await self._read_doc(key)
        if isinstance(doc, SmartError):
            return doc

        try:
            return CompleteSession.from_doc(doc)
        except Exception as exc:
            complete_error = exc

        try:
            InitialSession.from_doc(doc)
        except Exception:
            LOGGER.error(
                "storage.get_complete key=%s broken session state: %s",
                key,
                complete_error,
            )
            return SmartError(ErrorKind.BROKEN_SESSION_STATE)

        LOGGER.warning(
            "storage.get_complete key=%s session was expected to be complete, but wasn't",
            key,
        )
        return SmartError(ErrorKind.INCOMPLETE_SESSION)

    async def _read_doc(self, key: str) -> dict[str, Any] | SmartError:
        raw = await self._storage.get(key)
        if raw is None:
            return SmartError(ErrorKind.NO_STATE)

        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        if isinstance(raw, str):
            if not raw.strip():
                return SmartError(ErrorKind.NO_STATE)
            try:
                raw = json5.loads(raw)
            except Exception as exc:
                LOGGER.error("storage.read key=%s invalid JSON/JSON5: %s", key, exc)
                return SmartError(ErrorKind.BROKEN_SESSION_STATE)

        if not isinstance(raw, Mapping):
            LOGGER.error("storage.read key=%s expected object, got %s", key, type(raw).__name__)
            return SmartError(ErrorKind.BROKEN_SESSION_STATE)
        if len(raw) == 0:
            return SmartError(ErrorKind.NO_STATE)
        return dict(raw)
