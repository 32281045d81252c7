"""Auth API (GoTrue) endpoints.

Endpoints:
  - POST /auth/v1/token?grant_type=password
  - POST /auth/v1/token?grant_type=refresh_token
  - POST /auth/v1/logout
  - POST /auth/v1/token?grant_type=pkce
  - POST /auth/v1/signup
  - POST /auth/v1/recover
  - GET  /auth/v1/user
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from fleetauth._constants import (
    CODE_CHALLENGE_METHOD,
    GRANT_PASSWORD,
    GRANT_PKCE,
    GRANT_REFRESH_TOKEN,
    LOGOUT_PATH,
    RECOVER_PATH,
    SIGNUP_PATH,
    TOKEN_PATH,
    USER_PATH,
)
from fleetauth._redact import redact_for_log
from fleetauth._transport import Transport
from fleetauth.config import AuthConfig
from fleetauth.exceptions import FleetAuthApiError
from fleetauth.models import AuthUser, Session

_logger = logging.getLogger(__name__)


def parse_session_response(response: Any, *, endpoint: str = TOKEN_PATH) -> Session:
    """Parse a token endpoint answer into a :class:`Session`.

    Raises
    ------
    FleetAuthApiError
        If the body is not an object or lacks ``access_token``/``user``.
    """
    if not isinstance(response, dict):
        raise FleetAuthApiError("Token response is not an object", code="invalid_response", endpoint=endpoint)
    _logger.debug("Token response parsed=%s", redact_for_log(response))
    if not response.get("access_token"):
        raise FleetAuthApiError("Token response missing access_token", code="invalid_response", endpoint=endpoint)
    if not isinstance(response.get("user"), dict):
        raise FleetAuthApiError("Token response missing user", code="invalid_response", endpoint=endpoint)
    try:
        return Session.model_validate(response)
    except ValidationError as exc:
        raise FleetAuthApiError(
            f"Token response is malformed: {exc.error_count()} validation error(s)",
            code="invalid_response",
            endpoint=endpoint,
        ) from exc


async def sign_in_with_password(
    config: AuthConfig,
    transport: Transport,
    email: str,
    password: str,
) -> Session:
    response = await transport.request(
        "POST",
        f"{config.auth_url}{TOKEN_PATH}",
        params={"grant_type": GRANT_PASSWORD},
        json_body={"email": email, "password": password},
    )
    return parse_session_response(response)


async def refresh_session(config: AuthConfig, transport: Transport, refresh_token: str) -> Session:
    response = await transport.request(
        "POST",
        f"{config.auth_url}{TOKEN_PATH}",
        params={"grant_type": GRANT_REFRESH_TOKEN},
        json_body={"refresh_token": refresh_token},
    )
    return parse_session_response(response)


async def sign_out(config: AuthConfig, transport: Transport, access_token: str) -> None:
    await transport.request(
        "POST",
        f"{config.auth_url}{LOGOUT_PATH}",
        access_token=access_token,
    )


async def get_user(config: AuthConfig, transport: Transport, access_token: str) -> AuthUser:
    response = await transport.request(
        "GET",
        f"{config.auth_url}{USER_PATH}",
        access_token=access_token,
    )
    if not isinstance(response, dict) or not response.get("id"):
        raise FleetAuthApiError("User response missing id", code="invalid_response", endpoint=USER_PATH)
    return AuthUser.model_validate(response)


def pkce_pair() -> tuple[str, str]:
    """Return a fresh ``(code_verifier, code_challenge)`` pair (RFC 7636, S256)."""
    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def parse_sign_up_response(response: Any) -> tuple[AuthUser, Session | None]:
    """Split a sign-up answer into the new user and, if auto-confirmed, its session.

    When email confirmation is required the auth API answers with the bare
    user object and no tokens.
    """
    if isinstance(response, dict) and response.get("access_token"):
        session = parse_session_response(response, endpoint=SIGNUP_PATH)
        if session.user is None:
            raise FleetAuthApiError("Sign-up response missing user", code="invalid_response", endpoint=SIGNUP_PATH)
        return session.user, session
    if not isinstance(response, dict) or not response.get("id"):
        raise FleetAuthApiError("Sign-up response missing user", code="invalid_response", endpoint=SIGNUP_PATH)
    return AuthUser.model_validate(response), None


async def sign_up(
    config: AuthConfig,
    transport: Transport,
    email: str,
    password: str,
    *,
    metadata: Mapping[str, Any] | None = None,
    redirect_to: str | None = None,
    code_challenge: str | None = None,
) -> tuple[AuthUser, Session | None]:
    body: dict[str, Any] = {"email": email, "password": password}
    if metadata:
        body["data"] = dict(metadata)
    if code_challenge:
        body["code_challenge"] = code_challenge
        body["code_challenge_method"] = CODE_CHALLENGE_METHOD
    response = await transport.request(
        "POST",
        f"{config.auth_url}{SIGNUP_PATH}",
        params={"redirect_to": redirect_to} if redirect_to else None,
        json_body=body,
    )
    return parse_sign_up_response(response)


async def recover(
    config: AuthConfig,
    transport: Transport,
    email: str,
    *,
    redirect_to: str | None = None,
    code_challenge: str | None = None,
) -> None:
    body: dict[str, Any] = {"email": email}
    if code_challenge:
        body["code_challenge"] = code_challenge
        body["code_challenge_method"] = CODE_CHALLENGE_METHOD
    await transport.request(
        "POST",
        f"{config.auth_url}{RECOVER_PATH}",
        params={"redirect_to": redirect_to} if redirect_to else None,
        json_body=body,
    )


async def exchange_code(config: AuthConfig, transport: Transport, auth_code: str, code_verifier: str) -> Session:
    response = await transport.request(
        "POST",
        f"{config.auth_url}{TOKEN_PATH}",
        params={"grant_type": GRANT_PKCE},
        json_body={"auth_code": auth_code, "code_verifier": code_verifier},
    )
    return parse_session_response(response)
