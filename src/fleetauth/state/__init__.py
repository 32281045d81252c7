"""State layer.

Single source of truth for the reconciled ``{user, profile, loading, error}``
snapshot, and the messages through which it is changed.
"""

from fleetauth.state.events import ErrorKind, SessionEventKind
from fleetauth.state.store import ReconcilerState, StateListener, StateStore

__all__ = [
    "ErrorKind",
    "ReconcilerState",
    "SessionEventKind",
    "StateListener",
    "StateStore",
]
