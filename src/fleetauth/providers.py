"""Structural interfaces for the reconciler's external collaborators.

The production implementations live in :mod:`fleetauth.client`; tests pass
small fakes that satisfy the same protocols.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from fleetauth.models import Session, UserProfile
from fleetauth.state.events import SessionEventKind

SessionChangeHandler = Callable[[SessionEventKind, Session | None], None]
"""Called once per auth event, in delivery order, with the new session."""


class Subscription(Protocol):
    def unsubscribe(self) -> None:
        """Stop delivery. Calling it more than once is harmless."""
        ...


class SessionProvider(Protocol):
    """Authentication backend."""

    async def get_current_session(self) -> Session | None:
        ...

    def subscribe(self, handler: SessionChangeHandler) -> Subscription:
        ...

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        ...

    async def sign_out(self) -> None:
        ...


class ProfileStore(Protocol):
    """Profile lookup keyed by user id.

    A missing row yields ``None``; only real failures raise.
    """

    async def get_by_user_id(self, user_id: str) -> UserProfile | None:
        ...
