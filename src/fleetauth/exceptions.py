"""Custom exception hierarchy for fleetauth."""

from __future__ import annotations


class FleetAuthError(Exception):
    """Base exception for all fleetauth errors."""


class FleetAuthConfigError(FleetAuthError):
    """Invalid or missing configuration."""


class FleetAuthTransportError(FleetAuthError):
    """HTTP-level failure (network, timeout, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class FleetAuthApiError(FleetAuthError):
    """The auth or data API answered with an error body."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "",
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.code = code
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class SessionFetchError(FleetAuthError):
    """The current session could not be determined.

    The reconciler treats this as signed-out (fail-closed).
    """


class ProfileFetchError(FleetAuthError):
    """The profile lookup failed.

    Non-fatal: the user stays authenticated with no profile.
    """


class SignInError(FleetAuthError):
    """Credential sign-in was rejected or could not be performed."""


class SignOutError(FleetAuthError):
    """Sign-out could not be performed."""


class SignUpError(FleetAuthError):
    """Account registration was rejected or could not be performed."""


class PasswordResetError(FleetAuthError):
    """The password recovery email could not be requested."""
