"""Session-change event kinds and reconciler messages.

Provider callbacks, public reconciler calls and finished fetch tasks all turn
into one of these messages. Only the reconciler's consumer loop applies them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from fleetauth.models import Session, UserProfile


class SessionEventKind(StrEnum):
    """Event names emitted by the auth provider's session-change stream."""

    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    USER_DELETED = "USER_DELETED"
    PASSWORD_RECOVERY = "PASSWORD_RECOVERY"
    MFA_CHALLENGE_VERIFIED = "MFA_CHALLENGE_VERIFIED"


#: Events after which no user is signed in, whatever the payload says.
SIGN_OUT_EVENTS: frozenset[SessionEventKind] = frozenset(
    {SessionEventKind.SIGNED_OUT, SessionEventKind.USER_DELETED}
)


class ErrorKind(StrEnum):
    """Category of the error held in the reconciler state."""

    SESSION = "session"
    PROFILE = "profile"
    SIGN_IN = "sign_in"
    SIGN_OUT = "sign_out"
    SUBSCRIBE = "subscribe"


@dataclass(frozen=True, slots=True)
class CheckSession:
    """Start a new generation and fetch the current session."""


@dataclass(frozen=True, slots=True)
class SessionChanged:
    """A provider event, in delivery order."""

    kind: SessionEventKind
    session: Session | None


@dataclass(frozen=True, slots=True)
class SessionResolved:
    """Result of the session fetch started for ``generation``."""

    generation: int
    session: Session | None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ProfileResolved:
    """Result of the profile fetch started for ``generation``."""

    generation: int
    user_id: str
    profile: UserProfile | None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ProfileRefreshed:
    """Result of an explicit profile refresh; valid only for ``user_id``."""

    user_id: str
    profile: UserProfile | None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ErrorReported:
    kind: ErrorKind
    message: str


@dataclass(frozen=True, slots=True)
class ErrorCleared:
    kind: ErrorKind


ReconcilerMessage = (
    CheckSession
    | SessionChanged
    | SessionResolved
    | ProfileResolved
    | ProfileRefreshed
    | ErrorReported
    | ErrorCleared
)
