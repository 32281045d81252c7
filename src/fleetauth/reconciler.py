"""Session reconciler.

Keeps a local ``{user, profile, loading, error}`` snapshot in step with an
external auth provider whose session-change events and profile lookups
resolve asynchronously and out of order.

Every change goes through one ``asyncio.Queue`` drained by a single consumer
task. Session checks and provider events start a new *generation*; fetch
results carry the generation they were started for and are dropped when a
newer one exists, so a slow response can never overwrite newer state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from fleetauth.config import ReconcilerConfig
from fleetauth.exceptions import (
    FleetAuthError,
    ProfileFetchError,
    SessionFetchError,
    SignInError,
    SignOutError,
)
from fleetauth.models import Session, UserProfile
from fleetauth.providers import ProfileStore, SessionProvider, Subscription
from fleetauth.state.events import (
    SIGN_OUT_EVENTS,
    CheckSession,
    ErrorCleared,
    ErrorKind,
    ErrorReported,
    ProfileRefreshed,
    ProfileResolved,
    ReconcilerMessage,
    SessionChanged,
    SessionEventKind,
    SessionResolved,
)
from fleetauth.state.store import ReconcilerState, StateListener, StateStore

_logger = logging.getLogger(__name__)


class SessionReconciler:
    """Owns the reconciled auth state for one application shell.

    Usage::

        async with SessionReconciler(auth_client, profile_store) as reconciler:
            reconciler.add_listener(render)
            await reconciler.sign_in(email, password)

    Collaborator failures never raise through the read interface; they are
    recorded in ``state.error``. Only :meth:`sign_in` and :meth:`sign_out`
    raise, after recording the error.
    """

    def __init__(
        self,
        provider: SessionProvider,
        profiles: ProfileStore,
        *,
        config: ReconcilerConfig | None = None,
        store: StateStore | None = None,
    ) -> None:
        self._provider = provider
        self._profiles = profiles
        self._config = config or ReconcilerConfig()
        self._store = store if store is not None else StateStore()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[ReconcilerMessage] | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._subscription: Subscription | None = None
        self._generation = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> SessionReconciler:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Read interface
    # ------------------------------------------------------------------

    @property
    def state(self) -> ReconcilerState:
        return self._store.state

    @property
    def is_authenticated(self) -> bool:
        return self._store.state.user is not None

    @property
    def generation(self) -> int:
        return self._generation

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Call *listener* with every new snapshot. Returns a remover."""
        return self._store.add_listener(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Check the current session and follow session-change events.

        Calling it again re-runs the session check (a manual retry) and
        keeps the existing subscription, or retries a failed one. A failed
        subscription is recorded as a ``subscribe`` error, not raised.
        """
        if self._closed:
            raise FleetAuthError("Reconciler has been closed")
        self._ensure_consumer()
        if self._subscription is None:
            try:
                self._subscription = self._provider.subscribe(self.on_session_change)
            except Exception as exc:
                message = f"Could not subscribe to session changes: {exc}"
                _logger.warning("%s", message)
                self._post(ErrorReported(kind=ErrorKind.SUBSCRIBE, message=message))
            else:
                self._post(ErrorCleared(kind=ErrorKind.SUBSCRIBE))
        self._post(CheckSession())

    async def close(self) -> None:
        """Unsubscribe and stop all pending work. Safe to call twice."""
        if self._closed:
            return
        self._closed = True

        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            try:
                subscription.unsubscribe()
            except Exception:
                _logger.debug("Unsubscribe failed", exc_info=True)

        pending: list[asyncio.Task[None]] = list(self._tasks)
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            pending.append(consumer)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

    async def wait_settled(self) -> None:
        """Return once every queued message and in-flight fetch has finished."""
        queue = self._queue
        if queue is None:
            return
        while self._consumer is not None and not self._consumer.done():
            await queue.join()
            in_flight = {task for task in self._tasks if not task.done()}
            if not in_flight and queue.empty():
                return
            if in_flight:
                await asyncio.wait(in_flight)

    # ------------------------------------------------------------------
    # Provider events
    # ------------------------------------------------------------------

    def on_session_change(self, kind: SessionEventKind | str, session: Session | None) -> None:
        """Session-change handler passed to the provider.

        May be called from any thread; events keep their delivery order.
        """
        if self._closed:
            return
        try:
            event_kind = SessionEventKind(kind)
        except ValueError:
            _logger.debug("Ignoring unknown session event %r", kind)
            return
        self._post(SessionChanged(kind=event_kind, session=session))

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def refresh_profile(self) -> None:
        """Re-fetch the current user's profile.

        No-op without a user. The result is dropped if the user changed
        meanwhile. On failure the previous profile is kept.
        """
        user = self._store.state.user
        if user is None or self._queue is None:
            return
        try:
            profile = await self._profiles.get_by_user_id(user.id)
        except Exception as exc:
            error = ProfileFetchError(f"Could not refresh profile: {exc}")
            _logger.warning("%s", error)
            self._post(ProfileRefreshed(user_id=user.id, profile=None, error=str(error)))
        else:
            self._post(ProfileRefreshed(user_id=user.id, profile=profile))
        await self._drain()

    async def sign_in(self, email: str, password: str) -> Session:
        """Sign in with credentials.

        State follows from the provider's ``SIGNED_IN`` event, not from the
        return value.
        """
        try:
            session = await self._provider.sign_in_with_password(email, password)
        except Exception as exc:
            error = exc if isinstance(exc, SignInError) else SignInError(f"Sign-in failed: {exc}")
            _logger.warning("%s", error)
            self._post(ErrorReported(kind=ErrorKind.SIGN_IN, message=str(error)))
            await self._drain()
            if error is exc:
                raise
            raise error from exc
        self._post(ErrorCleared(kind=ErrorKind.SIGN_IN))
        await self._drain()
        return session

    async def sign_out(self) -> None:
        """Sign out through the provider.

        User and profile are cleared by the resulting ``SIGNED_OUT`` event.
        """
        try:
            await self._provider.sign_out()
        except Exception as exc:
            error = exc if isinstance(exc, SignOutError) else SignOutError(f"Sign-out failed: {exc}")
            _logger.warning("%s", error)
            self._post(ErrorReported(kind=ErrorKind.SIGN_OUT, message=str(error)))
            await self._drain()
            if error is exc:
                raise
            raise error from exc
        self._post(ErrorCleared(kind=ErrorKind.SIGN_OUT))
        await self._drain()

    # ------------------------------------------------------------------
    # Queue plumbing
    # ------------------------------------------------------------------

    def _ensure_consumer(self) -> None:
        if self._consumer is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._consumer = self._loop.create_task(self._run(), name="fleetauth-reconciler")

    def _post(self, message: ReconcilerMessage) -> None:
        queue = self._queue
        loop = self._loop
        if queue is None or loop is None or self._closed:
            _logger.debug("Dropping %s: reconciler not running", type(message).__name__)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            queue.put_nowait(message)
            return
        try:
            loop.call_soon_threadsafe(queue.put_nowait, message)
        except RuntimeError:
            _logger.debug("Dropping %s: event loop closed", type(message).__name__)

    async def _drain(self) -> None:
        if self._queue is not None and self._consumer is not None and not self._consumer.done():
            await self._queue.join()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self) -> None:
        queue = self._queue
        assert queue is not None  # noqa: S101
        while True:
            message = await queue.get()
            try:
                self._apply(message)
            except Exception:
                _logger.exception("Failed to apply %s", type(message).__name__)
            finally:
                queue.task_done()

    # ------------------------------------------------------------------
    # Message handlers (consumer task only)
    # ------------------------------------------------------------------

    def _apply(self, message: ReconcilerMessage) -> None:
        if isinstance(message, CheckSession):
            self._handle_check_session()
        elif isinstance(message, SessionChanged):
            self._handle_session_changed(message)
        elif isinstance(message, SessionResolved):
            self._handle_session_resolved(message)
        elif isinstance(message, ProfileResolved):
            self._handle_profile_resolved(message)
        elif isinstance(message, ProfileRefreshed):
            self._handle_profile_refreshed(message)
        elif isinstance(message, ErrorReported):
            self._store.update(error=message.message, error_kind=message.kind)
        elif isinstance(message, ErrorCleared):
            self._store.update(**self._cleared(message.kind))

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _cleared(self, kind: ErrorKind) -> dict[str, Any]:
        """Changes that clear the current error if it is of *kind*."""
        if self._store.state.error_kind == kind:
            return {"error": None, "error_kind": None}
        return {}

    def _handle_check_session(self) -> None:
        generation = self._next_generation()
        _logger.debug("Checking session (generation %d)", generation)
        self._store.update(loading=True)
        self._spawn(self._fetch_session(generation))

    def _handle_session_changed(self, message: SessionChanged) -> None:
        generation = self._next_generation()
        kind = message.kind
        session = message.session
        _logger.debug("Session event %s (generation %d)", kind, generation)

        changes = self._cleared(ErrorKind.SESSION)
        if kind in SIGN_OUT_EVENTS or session is None or session.user is None:
            self._store.update(user=None, loading=False, **changes)
            return

        if kind == SessionEventKind.SIGNED_IN:
            changes["loading"] = True
        refetch = kind != SessionEventKind.TOKEN_REFRESHED or self._config.refetch_profile_on_token_refresh
        self._resolve_profile(generation, session, changes, refetch=refetch)

    def _handle_session_resolved(self, message: SessionResolved) -> None:
        if message.generation != self._generation:
            _logger.debug(
                "Discarding stale session result (generation %d, current %d)",
                message.generation,
                self._generation,
            )
            return
        if message.error is not None:
            self._store.update(
                user=None,
                loading=False,
                error=message.error,
                error_kind=ErrorKind.SESSION,
            )
            return
        self._resolve_profile(message.generation, message.session, self._cleared(ErrorKind.SESSION))

    def _resolve_profile(
        self,
        generation: int,
        session: Session | None,
        changes: dict[str, Any],
        *,
        refetch: bool = True,
    ) -> None:
        user = session.user if session is not None else None
        if user is None:
            self._store.update(user=None, loading=False, **changes)
            return

        current = self._store.state.user
        same_user = current is not None and current.id == user.id
        if not same_user:
            changes["profile"] = None
        elif not refetch and self._store.state.profile is not None:
            self._store.update(user=user, loading=False, **changes)
            return

        # Identity is published before the profile arrives.
        self._store.update(user=user, **changes)
        self._spawn(self._fetch_profile(generation, user.id))

    def _handle_profile_resolved(self, message: ProfileResolved) -> None:
        if message.generation != self._generation:
            _logger.debug(
                "Discarding stale profile for %s (generation %d, current %d)",
                message.user_id,
                message.generation,
                self._generation,
            )
            return
        if not self._is_current_user(message.user_id):
            return

        error = message.error or self._mismatch_error(message.user_id, message.profile)
        if error is not None:
            self._store.update(profile=None, loading=False, error=error, error_kind=ErrorKind.PROFILE)
            return
        self._store.update(profile=message.profile, loading=False, **self._cleared(ErrorKind.PROFILE))

    def _handle_profile_refreshed(self, message: ProfileRefreshed) -> None:
        if not self._is_current_user(message.user_id):
            _logger.debug("Discarding refreshed profile for %s: user changed", message.user_id)
            return
        error = message.error or self._mismatch_error(message.user_id, message.profile)
        if error is not None:
            self._store.update(error=error, error_kind=ErrorKind.PROFILE)
            return
        self._store.update(profile=message.profile, **self._cleared(ErrorKind.PROFILE))

    def _is_current_user(self, user_id: str) -> bool:
        user = self._store.state.user
        return user is not None and user.id == user_id

    @staticmethod
    def _mismatch_error(user_id: str, profile: UserProfile | None) -> str | None:
        if profile is None or profile.id == user_id:
            return None
        return str(ProfileFetchError(f"Profile store returned profile {profile.id} for user {user_id}"))

    # ------------------------------------------------------------------
    # Fetch tasks
    # ------------------------------------------------------------------

    async def _fetch_session(self, generation: int) -> None:
        try:
            session = await self._provider.get_current_session()
        except Exception as exc:
            error = SessionFetchError(f"Could not fetch session: {exc}")
            _logger.warning("%s", error)
            self._post(SessionResolved(generation=generation, session=None, error=str(error)))
            return
        self._post(SessionResolved(generation=generation, session=session))

    async def _fetch_profile(self, generation: int, user_id: str) -> None:
        try:
            profile = await self._profiles.get_by_user_id(user_id)
        except Exception as exc:
            error = ProfileFetchError(f"Could not fetch profile: {exc}")
            _logger.warning("%s", error)
            self._post(ProfileResolved(generation=generation, user_id=user_id, profile=None, error=str(error)))
            return
        self._post(ProfileResolved(generation=generation, user_id=user_id, profile=profile))
