from __future__ import annotations

from typing import Protocol

from .errors import Unauthenticated


class IdentityProvider(Protocol):
    def current_id(self) -> str:
        ...


class StaticIdentity:
    """Identity established once by the host application, e.g. after sign-in."""

    def __init__(self, member_id: str | None = None) -> None:
        self._member_id = member_id

    def sign_in(self, member_id: str) -> None:
        if not member_id:
            raise ValueError("member_id required")
        self._member_id = member_id

    def sign_out(self) -> None:
        self._member_id = None

    def current_id(self) -> str:
        if not self._member_id:
            raise Unauthenticated("no identity established")
        return self._member_id
