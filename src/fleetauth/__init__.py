"""fleetauth - Async session/profile reconciliation for the fleet back-office."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("fleetauth")
except PackageNotFoundError:
    __version__ = "0+local"
from fleetauth.client import SupabaseAuthClient, SupabaseProfileStore
from fleetauth.config import AuthConfig, ReconcilerConfig
from fleetauth.exceptions import (
    FleetAuthApiError,
    FleetAuthConfigError,
    FleetAuthError,
    FleetAuthTransportError,
    PasswordResetError,
    ProfileFetchError,
    SessionFetchError,
    SignInError,
    SignOutError,
    SignUpError,
)
from fleetauth.models import AuthUser, Session, UserProfile, UserRole
from fleetauth.permissions import Action, FleetModule, can_access_module, check_permission, visible_modules
from fleetauth.providers import ProfileStore, SessionProvider, Subscription
from fleetauth.reconciler import SessionReconciler
from fleetauth.state import ErrorKind, ReconcilerState, SessionEventKind, StateStore

__all__ = [
    "__version__",
    "Action",
    "AuthConfig",
    "AuthUser",
    "ErrorKind",
    "FleetAuthApiError",
    "FleetAuthConfigError",
    "FleetAuthError",
    "FleetAuthTransportError",
    "FleetModule",
    "PasswordResetError",
    "ProfileFetchError",
    "ProfileStore",
    "ReconcilerConfig",
    "ReconcilerState",
    "Session",
    "SessionEventKind",
    "SessionFetchError",
    "SessionProvider",
    "SessionReconciler",
    "SignInError",
    "SignOutError",
    "SignUpError",
    "StateStore",
    "Subscription",
    "SupabaseAuthClient",
    "SupabaseProfileStore",
    "UserProfile",
    "UserRole",
    "can_access_module",
    "check_permission",
    "visible_modules",
]
