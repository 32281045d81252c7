"""Observable store for the reconciled auth state.

Only :class:`~fleetauth.reconciler.SessionReconciler` writes to it; any
number of consumers read snapshots and listen for changes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator

from fleetauth.models import AuthUser, UserProfile
from fleetauth.state.events import ErrorKind

_logger = logging.getLogger(__name__)

StateListener = Callable[["ReconcilerState"], None]


class ReconcilerState(BaseModel):
    """Immutable snapshot of ``{user, profile, loading, error}``.

    ``error_kind`` tells which operation produced ``error`` so that the next
    successful operation of the same kind can clear it.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    user: AuthUser | None = None
    profile: UserProfile | None = None
    loading: bool = True
    error: str | None = None
    error_kind: ErrorKind | None = None

    @model_validator(mode="after")
    def _profile_requires_user(self) -> ReconcilerState:
        if self.user is None and self.profile is not None:
            raise ValueError("profile cannot be set without a user")
        if self.profile is not None and self.user is not None and self.profile.id != self.user.id:
            raise ValueError("profile belongs to a different user")
        return self

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None


class StateStore:
    """Holds the current :class:`ReconcilerState` and notifies listeners.

    Every accepted :meth:`update` produces exactly one new snapshot and one
    notification, so consumers never observe a half-applied change.
    """

    def __init__(self, initial: ReconcilerState | None = None) -> None:
        self._state = initial if initial is not None else ReconcilerState()
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> ReconcilerState:
        return self._state

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that removes it."""
        self._listeners.append(listener)

        def _remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _remove

    def update(self, **changes: Any) -> bool:
        """Apply *changes* as a single snapshot.

        Clearing ``user`` clears ``profile`` in the same snapshot. Returns
        ``False`` when nothing changed (no notification is sent).
        """
        current = self._state
        merged: dict[str, Any] = {
            "user": current.user,
            "profile": current.profile,
            "loading": current.loading,
            "error": current.error,
            "error_kind": current.error_kind,
        }
        merged.update(changes)
        if merged["user"] is None:
            merged["profile"] = None
        if merged["error"] is None:
            merged["error_kind"] = None

        new_state = ReconcilerState(**merged)
        if new_state == current:
            return False
        self._state = new_state
        self._notify(new_state)
        return True

    def _notify(self, state: ReconcilerState) -> None:
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                _logger.debug("State listener failed", exc_info=True)
