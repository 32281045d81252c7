"""Auth session and user identity models."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import Field, model_validator

from fleetauth.models._base import FleetBaseModel, Timestamp


class AuthUser(FleetBaseModel):
    """User identity issued by the auth provider.

    Only ``id`` is required; everything else is informational.
    """

    id: str
    email: str | None = None
    phone: str | None = None
    role: str | None = None
    aud: str | None = None
    user_metadata: dict[str, Any] = Field(default_factory=dict)
    app_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Timestamp = None
    last_sign_in_at: Timestamp = None


class Session(FleetBaseModel):
    """Authenticated session as returned by the token endpoint.

    Parameters
    ----------
    access_token : str
        Bearer token for API calls. Hidden from ``repr``.
    refresh_token : str
        Token used to obtain a new access token. Hidden from ``repr``.
    token_type : str
        Normally ``"bearer"``.
    expires_in : int or None
        Lifetime of ``access_token`` in seconds, as reported by the server.
    expires_at : datetime or None
        Absolute expiry. Derived from ``expires_in`` when the server omits it.
    user : AuthUser or None
        The identity the session belongs to.
    """

    access_token: str = Field(repr=False)
    refresh_token: str = Field(default="", repr=False)
    token_type: str = "bearer"
    expires_in: int | None = None
    expires_at: Timestamp = None
    user: AuthUser | None = None

    @model_validator(mode="after")
    def _derive_expiry(self) -> Session:
        if self.expires_at is None and self.expires_in is not None:
            object.__setattr__(
                self,
                "expires_at",
                datetime.now(UTC) + timedelta(seconds=self.expires_in),
            )
        return self

    def expires_within(self, seconds: float, *, now: datetime | None = None) -> bool:
        """Whether the access token expires in less than *seconds*."""
        if self.expires_at is None:
            return False
        current = now or datetime.now(UTC)
        return self.expires_at - current <= timedelta(seconds=seconds)

    @property
    def is_expired(self) -> bool:
        return self.expires_within(0)

    @property
    def user_id(self) -> str | None:
        return self.user.id if self.user is not None else None
