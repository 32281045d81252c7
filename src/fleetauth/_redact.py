"""Helpers for safe debug logging.

fleetauth handles passwords, tokens, PKCE verifiers and personal data about
back-office users. Before anything reaches DEBUG logs:

- credentials are replaced by ``<redacted>``;
- ``user_metadata`` / ``app_metadata`` / sign-up ``data`` keep only their keys;
- email addresses keep the first letter and the domain.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel

_SENSITIVE_VALUE_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "access_token",
        "refresh_token",
        "provider_token",
        "provider_refresh_token",
        "token",
        "apikey",
        "authorization",
        "cookie",
        "auth_code",
        "code_verifier",
    }
)

# Free-form user data; the key names are useful, the values are not ours to log.
_METADATA_KEYS: frozenset[str] = frozenset({"user_metadata", "app_metadata", "data", "identities"})

_EMAIL_KEYS: frozenset[str] = frozenset({"email", "new_email"})


def mask_email(value: str) -> str:
    """``ana.perez@example.com`` -> ``a***@example.com``."""
    local, sep, domain = value.partition("@")
    if not sep or not local:
        return value
    return f"{local[0]}***@{domain}"


def _redact_metadata(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): "<redacted>" for k in value}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return f"<redacted:{len(value)} items>"
    return None if value is None else "<redacted>"


def _redact_entry(key: str, value: Any, *, max_string: int, depth: int) -> Any:
    lowered = key.lower()
    if lowered in _SENSITIVE_VALUE_KEYS:
        return "<redacted>"
    if lowered in _METADATA_KEYS:
        return _redact_metadata(value)
    if lowered in _EMAIL_KEYS and isinstance(value, str):
        return mask_email(value)
    return redact_for_log(value, max_string=max_string, _depth=depth + 1)


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a redacted copy of *value* suitable for debug logs.

    Accepts decoded JSON as well as pydantic models (``Session``,
    ``AuthUser``, ``UserProfile``), which are dumped first.
    """
    if _depth > 20:
        return "<max-depth>"

    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")

    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, str):
        return value if len(value) <= max_string else f"{value[:max_string]}…<truncated>"

    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        return {
            str(k): _redact_entry(str(k), v, max_string=max_string, depth=_depth)
            for k, v in value.items()
        }

    if isinstance(value, Sequence):
        return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]

    return repr(value)
