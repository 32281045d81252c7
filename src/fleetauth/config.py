"""Client and reconciler configuration for fleetauth."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from typing import Any

from fleetauth.exceptions import FleetAuthConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _first_env(env: Mapping[str, str], *keys: str) -> str | None:
    for key in keys:
        val = env.get(key)
        if val is not None and val.strip():
            return val.strip()
    return None


@dataclasses.dataclass(frozen=True)
class AuthConfig:
    """Connection settings for the auth service and profile table.

    Parameters
    ----------
    url : str
        Project base URL, e.g. ``"https://abcd.supabase.co"``. The auth API
        is expected under ``/auth/v1`` and the data API under ``/rest/v1``.
    anon_key : str
        Public API key sent as ``apikey`` header on every request.
    profiles_table : str
        Name of the table holding one profile row per user id.
    request_timeout : float
        Total timeout in seconds for a single HTTP request.
    auto_refresh_margin : float
        Seconds before ``expires_at`` at which
        :meth:`~fleetauth.client.SupabaseAuthClient.get_current_session`
        refreshes the access token proactively. ``0`` disables it.
    """

    url: str
    anon_key: str
    profiles_table: str = "profiles"
    request_timeout: float = 10.0
    auto_refresh_margin: float = 60.0

    def __post_init__(self) -> None:
        if not self.url:
            raise FleetAuthConfigError("url is required")
        if not self.anon_key:
            raise FleetAuthConfigError("anon_key is required")
        object.__setattr__(self, "url", self.url.rstrip("/"))

    @property
    def auth_url(self) -> str:
        return f"{self.url}/auth/v1"

    @property
    def rest_url(self) -> str:
        return f"{self.url}/rest/v1"

    @classmethod
    def from_env(cls, **overrides: Any) -> AuthConfig:
        """Create configuration from environment variables.

        Reads ``FLEETAUTH_URL`` and ``FLEETAUTH_ANON_KEY`` (falling back to
        ``SUPABASE_URL`` / ``SUPABASE_ANON_KEY``), plus the optional
        ``FLEETAUTH_PROFILES_TABLE``, ``FLEETAUTH_REQUEST_TIMEOUT`` and
        ``FLEETAUTH_AUTO_REFRESH_MARGIN``. Explicit keyword arguments
        override environment values.
        """
        env = os.environ
        config_kwargs: dict[str, Any] = {}

        url = _first_env(env, "FLEETAUTH_URL", "SUPABASE_URL")
        if url is not None:
            config_kwargs["url"] = url
        anon_key = _first_env(env, "FLEETAUTH_ANON_KEY", "SUPABASE_ANON_KEY")
        if anon_key is not None:
            config_kwargs["anon_key"] = anon_key

        table = env.get("FLEETAUTH_PROFILES_TABLE")
        if table:
            config_kwargs["profiles_table"] = table

        # numeric settings, handled separately
        timeout_env = env.get("FLEETAUTH_REQUEST_TIMEOUT")
        if timeout_env is not None and "request_timeout" not in overrides:
            config_kwargs["request_timeout"] = float(timeout_env)

        margin_env = env.get("FLEETAUTH_AUTO_REFRESH_MARGIN")
        if margin_env is not None and "auto_refresh_margin" not in overrides:
            config_kwargs["auto_refresh_margin"] = float(margin_env)

        config_kwargs.update(overrides)

        missing = [name for name in ("url", "anon_key") if not config_kwargs.get(name)]
        if missing:
            raise FleetAuthConfigError(f"Missing configuration: {', '.join(missing)}")

        return cls(**config_kwargs)


@dataclasses.dataclass(frozen=True)
class ReconcilerConfig:
    """Behavior switches for :class:`~fleetauth.reconciler.SessionReconciler`.

    Parameters
    ----------
    refetch_profile_on_token_refresh : bool
        Re-fetch the profile when the provider reports ``TOKEN_REFRESHED``.
        The identity does not change on refresh, so turning this off only
        skips a redundant request; the profile is kept as is.
    """

    refetch_profile_on_token_refresh: bool = True

    @classmethod
    def from_env(cls, **overrides: Any) -> ReconcilerConfig:
        config_kwargs: dict[str, Any] = {}
        if "refetch_profile_on_token_refresh" not in overrides:
            config_kwargs["refetch_profile_on_token_refresh"] = _env_bool(
                os.environ.get("FLEETAUTH_REFETCH_ON_TOKEN_REFRESH"),
                True,
            )
        config_kwargs.update(overrides)
        return cls(**config_kwargs)
