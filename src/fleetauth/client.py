"""Async clients for the auth service and the profiles table."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

import aiohttp

from fleetauth._api import auth as _auth_api
from fleetauth._api import profiles as _profiles_api
from fleetauth._constants import SESSION_GONE_CODES
from fleetauth._transport import RestTransport, Transport
from fleetauth.config import AuthConfig
from fleetauth.exceptions import (
    FleetAuthApiError,
    FleetAuthError,
    PasswordResetError,
    SessionFetchError,
    SignInError,
    SignOutError,
    SignUpError,
)
from fleetauth.models import AuthUser, Session, UserProfile
from fleetauth.providers import SessionChangeHandler
from fleetauth.state.events import SessionEventKind

_logger = logging.getLogger(__name__)

# Status codes on logout meaning the token is already unusable server-side.
_LOGOUT_GONE_STATUSES = frozenset({401, 403, 404})


class _HandlerSubscription:
    """Subscription handle returned by :meth:`SupabaseAuthClient.subscribe`."""

    def __init__(self, client: SupabaseAuthClient, handler: SessionChangeHandler) -> None:
        self._client = client
        self._handler: SessionChangeHandler | None = handler

    @property
    def active(self) -> bool:
        return self._handler is not None

    def unsubscribe(self) -> None:
        handler, self._handler = self._handler, None
        if handler is not None:
            self._client._remove_handler(handler)


class SupabaseAuthClient:
    """Session provider backed by a GoTrue auth API.

    Holds the current session in memory and reports every change to
    subscribers as ``(SessionEventKind, Session | None)``.

    Usage::

        async with SupabaseAuthClient(config) as auth:
            await auth.sign_in_with_password("ana@example.com", "secret")
            session = await auth.get_current_session()
    """

    def __init__(
        self,
        config: AuthConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        transport: Transport | None = None,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._transport: Transport | None = transport
        self._external_transport = transport is not None
        self._session: Session | None = None
        self._handlers: list[SessionChangeHandler] = []
        # Bumped on every session replacement; in-flight refreshes compare it.
        self._epoch = 0
        self._refresh_lock = asyncio.Lock()
        # PKCE verifier awaiting exchange_code_for_session, with the event it ends in.
        self._pending_verifier: tuple[str, SessionEventKind] | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> SupabaseAuthClient:
        if self._transport is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._transport = RestTransport(self._config, self._http_session)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        if not self._external_transport:
            self._transport = None

    @property
    def config(self) -> AuthConfig:
        return self._config

    @property
    def transport(self) -> Transport:
        if self._transport is None:
            raise FleetAuthError("Client not initialized. Use 'async with SupabaseAuthClient(...) as client:'")
        return self._transport

    @property
    def current_session(self) -> Session | None:
        """The in-memory session, without any network call."""
        return self._session

    # ------------------------------------------------------------------
    # Session provider
    # ------------------------------------------------------------------

    async def get_current_session(self) -> Session | None:
        """Return the current session, refreshing it first when about to expire."""
        session = self._session
        if session is None:
            return None
        margin = self._config.auto_refresh_margin
        if margin > 0 and session.refresh_token and session.expires_within(margin):
            _logger.debug("Access token expires within %.0fs, refreshing", margin)
            try:
                return await self.refresh_session()
            except SessionFetchError:
                # Signed out meanwhile, or the server revoked the session.
                if self._session is None:
                    return None
                raise
        return session

    def subscribe(self, handler: SessionChangeHandler) -> _HandlerSubscription:
        self._handlers.append(handler)
        return _HandlerSubscription(self, handler)

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        try:
            session = await _auth_api.sign_in_with_password(self._config, self.transport, email, password)
        except FleetAuthError as exc:
            raise SignInError(f"Sign-in failed: {exc}") from exc
        self._set_session(session, SessionEventKind.SIGNED_IN)
        return session

    async def sign_out(self) -> None:
        """Revoke the session server-side and forget it locally.

        A token the server no longer recognises still counts as signed out.
        """
        session = self._session
        if session is not None:
            try:
                await _auth_api.sign_out(self._config, self.transport, session.access_token)
            except FleetAuthApiError as exc:
                if exc.status_code not in _LOGOUT_GONE_STATUSES:
                    raise SignOutError(f"Sign-out failed: {exc}") from exc
                _logger.debug("Logout with stale token (HTTP %s)", exc.status_code)
            except FleetAuthError as exc:
                raise SignOutError(f"Sign-out failed: {exc}") from exc
        self._set_session(None, SessionEventKind.SIGNED_OUT)

    # ------------------------------------------------------------------
    # Extra operations
    # ------------------------------------------------------------------

    async def refresh_session(self) -> Session:
        """Exchange the refresh token for a new session.

        If the server reports the session as gone the client signs out
        locally (emitting ``SIGNED_OUT``) before raising.

        Concurrent calls share one request. A result that arrives after the
        session was replaced (sign-in, sign-out) is discarded: the caller gets
        the newer session, or :class:`SessionFetchError` if it was signed out.
        """
        epoch = self._epoch
        async with self._refresh_lock:
            if self._epoch != epoch:
                return self._session_after_refresh_race()
            current = self._session
            if current is None or not current.refresh_token:
                raise SessionFetchError("No session to refresh")
            try:
                session = await _auth_api.refresh_session(self._config, self.transport, current.refresh_token)
            except FleetAuthApiError as exc:
                if exc.code in SESSION_GONE_CODES and self._epoch == epoch:
                    self._set_session(None, SessionEventKind.SIGNED_OUT)
                raise SessionFetchError(f"Token refresh failed: {exc}") from exc
            except FleetAuthError as exc:
                raise SessionFetchError(f"Token refresh failed: {exc}") from exc
            if self._epoch != epoch:
                _logger.debug("Discarding refreshed session: session changed while refreshing")
                return self._session_after_refresh_race()
            self._set_session(session, SessionEventKind.TOKEN_REFRESHED)
            return session

    async def sign_up(
        self,
        email: str,
        password: str,
        *,
        metadata: Mapping[str, Any] | None = None,
        redirect_to: str | None = None,
    ) -> AuthUser:
        """Register a new account.

        *metadata* is stored as the user's ``user_metadata`` (the back-office
        registers ``nombre``, ``apellido`` and ``full_name``). When the project
        auto-confirms accounts the new session is adopted and ``SIGNED_IN`` is
        emitted; otherwise the confirmation link leads to *redirect_to* with a
        code for :meth:`exchange_code_for_session`.
        """
        verifier, challenge = _auth_api.pkce_pair()
        try:
            user, session = await _auth_api.sign_up(
                self._config,
                self.transport,
                email,
                password,
                metadata=metadata,
                redirect_to=redirect_to,
                code_challenge=challenge,
            )
        except FleetAuthError as exc:
            raise SignUpError(f"Sign-up failed: {exc}") from exc
        if session is not None:
            self._set_session(session, SessionEventKind.SIGNED_IN)
        else:
            self._pending_verifier = (verifier, SessionEventKind.SIGNED_IN)
        return user

    async def reset_password_for_email(self, email: str, *, redirect_to: str | None = None) -> None:
        """Send a password recovery email.

        Exchanging the code from that email emits ``PASSWORD_RECOVERY``.
        """
        verifier, challenge = _auth_api.pkce_pair()
        try:
            await _auth_api.recover(
                self._config,
                self.transport,
                email,
                redirect_to=redirect_to,
                code_challenge=challenge,
            )
        except FleetAuthError as exc:
            raise PasswordResetError(f"Password reset failed: {exc}") from exc
        self._pending_verifier = (verifier, SessionEventKind.PASSWORD_RECOVERY)

    async def exchange_code_for_session(self, auth_code: str, *, code_verifier: str | None = None) -> Session:
        """Trade the ``code`` from an email redirect for a session.

        Uses the verifier kept by the last :meth:`sign_up` or
        :meth:`reset_password_for_email` unless *code_verifier* is given.
        """
        kind = SessionEventKind.SIGNED_IN
        if code_verifier is None:
            if self._pending_verifier is None:
                raise SignInError("Code exchange failed: no code verifier for this flow")
            code_verifier, kind = self._pending_verifier
        try:
            session = await _auth_api.exchange_code(self._config, self.transport, auth_code, code_verifier)
        except FleetAuthError as exc:
            raise SignInError(f"Code exchange failed: {exc}") from exc
        self._pending_verifier = None
        self._set_session(session, kind)
        return session

    async def get_user(self) -> AuthUser | None:
        """Verify the access token server-side and return its user."""
        session = self._session
        if session is None:
            return None
        try:
            return await _auth_api.get_user(self._config, self.transport, session.access_token)
        except FleetAuthError as exc:
            raise SessionFetchError(f"User lookup failed: {exc}") from exc

    def profile_store(self) -> SupabaseProfileStore:
        """A profile store sharing this client's transport and access token."""
        return SupabaseProfileStore(self)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _session_after_refresh_race(self) -> Session:
        if self._session is None:
            raise SessionFetchError("Signed out while refreshing")
        return self._session

    def _set_session(self, session: Session | None, kind: SessionEventKind) -> None:
        self._session = session
        self._epoch += 1
        _logger.debug("Auth event %s (user=%s)", kind, session.user_id if session else None)
        for handler in list(self._handlers):
            try:
                handler(kind, session)
            except Exception:
                _logger.debug("Session change handler failed", exc_info=True)

    def _remove_handler(self, handler: SessionChangeHandler) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass


class SupabaseProfileStore:
    """Profile store reading one row per user from the data API.

    Requests carry the signed-in user's access token so row-level security
    applies; without a session the anon key is used.
    """

    def __init__(self, auth: SupabaseAuthClient) -> None:
        self._auth = auth

    async def get_by_user_id(self, user_id: str) -> UserProfile | None:
        session = self._auth.current_session
        return await _profiles_api.fetch_profile(
            self._auth.config,
            self._auth.transport,
            user_id,
            access_token=session.access_token if session is not None else None,
        )
