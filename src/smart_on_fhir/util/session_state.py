from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, cast

from dataclasses_json import LetterCase, Undefined, dataclass_json

_INITIAL_FIELDS = (
    "server",
    "issuer",
    "authorization_endpoint",
    "token_endpoint",
    "code_verifier",
    "state",
)
_COMPLETE_FIELDS = (
    "access_token",
    "id_token",
    "refresh_token",
    "patient",
    "encounter",
)


@dataclass_json(letter_case=LetterCase.CAMEL, undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class InitialSession:
    server: str | None = None
    issuer: str | None = None
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    code_verifier: str | None = None
    state: str | None = None

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> InitialSession:
        session = cast(InitialSession, cast(Any, cls).from_dict(doc))
        session.validate()
        return session

    def to_doc(self) -> dict[str, Any]:
        return cast(dict[str, Any], cast(Any, self).to_dict())

    def validate(self) -> None:
        _require_str_fields(self, _INITIAL_FIELDS)


@dataclass_json(letter_case=LetterCase.CAMEL, undefined=Undefined.EXCLUDE)
@dataclass(frozen=True, slots=True)
class CompleteSession(InitialSession):
    access_token: str | None = None
    id_token: str | None = None
    refresh_token: str | None = None
    patient: str | None = None
    encounter: str | None = None
    updated_at: int | None = None

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> CompleteSession:
        session = cast(CompleteSession, cast(Any, cls).from_dict(doc))
        session.validate()
        return session

    @classmethod
    def from_initial(
        cls,
        initial: InitialSession,
        *,
        access_token: str,
        id_token: str,
        refresh_token: str,
        patient: str,
        encounter: str,
        updated_at: int,
    ) -> CompleteSession:
        values = {f.name: getattr(initial, f.name) for f in fields(InitialSession)}
        return cls(
            **values,
            access_token=access_token,
            id_token=id_token,
            refresh_token=refresh_token,
            patient=patient,
            encounter=encounter,
            updated_at=updated_at,
        )

    def validate(self) -> None:
        InitialSession.validate(self)
        _require_str_fields(self, _COMPLETE_FIELDS)
        if self.updated_at is not None and (
            isinstance(self.updated_at, bool) or not isinstance(self.updated_at, int)
        ):
            raise ValueError("invalid session state: updatedAt must be an integer")


def _require_str_fields(session: InitialSession, names: tuple[str, ...]) -> None:
    for name in names:
        if not isinstance(getattr(session, name), str):
            raise ValueError(f"invalid session state: missing {_camel(name)}")


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)
