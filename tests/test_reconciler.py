from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import pytest

from fleetauth.config import ReconcilerConfig
from fleetauth.exceptions import FleetAuthError, SignInError, SignOutError
from fleetauth.models import Session, UserProfile
from fleetauth.providers import SessionChangeHandler
from fleetauth.reconciler import SessionReconciler
from fleetauth.state import ErrorKind, ReconcilerState, SessionEventKind


def _session(user_id: str) -> Session:
    return Session.model_validate(
        {
            "access_token": f"access-{user_id}",
            "refresh_token": f"refresh-{user_id}",
            "expires_in": 3600,
            "user": {"id": user_id, "email": f"{user_id}@example.com"},
        }
    )


def _profile(user_id: str, first_name: str = "Ana", role: str = "supervisor") -> UserProfile:
    return UserProfile.model_validate({"id": user_id, "nombre": first_name, "apellido": "Pérez", "role": role})


@dataclass
class FakeSubscription:
    provider: FakeAuthProvider
    handler: SessionChangeHandler
    unsubscribe_calls: int = 0

    def unsubscribe(self) -> None:
        self.unsubscribe_calls += 1
        if self.handler in self.provider.handlers:
            self.provider.handlers.remove(self.handler)


@dataclass
class FakeAuthProvider:
    current: Session | None = None
    session_error: Exception | None = None
    # One entry per upcoming get_current_session call: (gate, result).
    scripted: list[tuple[asyncio.Event | None, Session | None]] = field(default_factory=list)
    handlers: list[SessionChangeHandler] = field(default_factory=list)
    subscriptions: list[FakeSubscription] = field(default_factory=list)
    subscribe_error: Exception | None = None
    sign_in_error: Exception | None = None
    sign_out_error: Exception | None = None
    session_calls: int = 0
    sign_out_calls: int = 0

    async def get_current_session(self) -> Session | None:
        self.session_calls += 1
        if self.scripted:
            gate, result = self.scripted.pop(0)
            if gate is not None:
                await gate.wait()
            return result
        if self.session_error is not None:
            raise self.session_error
        return self.current

    def subscribe(self, handler: SessionChangeHandler) -> FakeSubscription:
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.handlers.append(handler)
        subscription = FakeSubscription(self, handler)
        self.subscriptions.append(subscription)
        return subscription

    def emit(self, kind: SessionEventKind, session: Session | None) -> None:
        for handler in list(self.handlers):
            handler(kind, session)

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        if self.sign_in_error is not None:
            raise self.sign_in_error
        session = _session(email.split("@")[0])
        self.current = session
        self.emit(SessionEventKind.SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        self.sign_out_calls += 1
        if self.sign_out_error is not None:
            raise self.sign_out_error
        self.current = None
        self.emit(SessionEventKind.SIGNED_OUT, None)


@dataclass
class FakeProfileStore:
    profiles: dict[str, UserProfile] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)
    # One-shot gates consumed by successive lookups of the same user.
    gates: dict[str, list[asyncio.Event]] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)

    async def get_by_user_id(self, user_id: str) -> UserProfile | None:
        self.calls.append(user_id)
        pending = self.gates.get(user_id)
        if pending:
            await pending.pop(0).wait()
        error = self.errors.get(user_id)
        if error is not None:
            raise error
        return self.profiles.get(user_id)


async def _until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(_poll(), timeout)


def _record(reconciler: SessionReconciler) -> list[ReconcilerState]:
    states: list[ReconcilerState] = []
    reconciler.add_listener(states.append)
    return states


def _make(
    provider: FakeAuthProvider | None = None,
    profiles: FakeProfileStore | None = None,
    **config: Any,
) -> tuple[SessionReconciler, FakeAuthProvider, FakeProfileStore]:
    provider = provider or FakeAuthProvider()
    profiles = profiles or FakeProfileStore()
    reconciler = SessionReconciler(provider, profiles, config=ReconcilerConfig(**config))
    return reconciler, provider, profiles


@pytest.mark.asyncio
async def test_startup_with_session_loads_user_and_profile() -> None:
    reconciler, provider, profiles = _make()
    provider.current = _session("u-1")
    profiles.profiles["u-1"] = _profile("u-1")

    assert reconciler.state.loading is True

    async with reconciler:
        await reconciler.wait_settled()
        state = reconciler.state
        assert state.user is not None and state.user.id == "u-1"
        assert state.profile is not None and state.profile.full_name == "Ana Pérez"
        assert state.loading is False
        assert state.error is None
        assert reconciler.is_authenticated


@pytest.mark.asyncio
async def test_startup_without_session_is_signed_out() -> None:
    reconciler, _provider, profiles = _make()

    async with reconciler:
        await reconciler.wait_settled()
        assert reconciler.state == ReconcilerState(loading=False)
        assert profiles.calls == []


@pytest.mark.asyncio
async def test_user_published_before_profile_arrives() -> None:
    gate = asyncio.Event()
    reconciler, provider, profiles = _make()
    provider.current = _session("u-1")
    profiles.profiles["u-1"] = _profile("u-1")
    profiles.gates["u-1"] = [gate]

    async with reconciler:
        await _until(lambda: reconciler.state.user is not None)
        assert reconciler.state.profile is None
        assert reconciler.state.loading is True

        gate.set()
        await reconciler.wait_settled()
        assert reconciler.state.profile is not None
        assert reconciler.state.loading is False


@pytest.mark.asyncio
async def test_overlapping_session_checks_keep_latest() -> None:
    slow = asyncio.Event()
    reconciler, provider, profiles = _make()
    provider.scripted = [(slow, _session("user-a")), (None, _session("user-b"))]
    profiles.profiles = {"user-a": _profile("user-a", "Alice"), "user-b": _profile("user-b", "Bruno")}
    states = _record(reconciler)

    async with reconciler:
        await reconciler.start()
        await _until(lambda: reconciler.state.profile is not None)
        assert reconciler.state.user is not None and reconciler.state.user.id == "user-b"

        # The first check resolves last and must be dropped.
        slow.set()
        await reconciler.wait_settled()

        state = reconciler.state
        assert state.user is not None and state.user.id == "user-b"
        assert state.profile is not None and state.profile.first_name == "Bruno"
        assert state.loading is False
        assert "user-a" not in profiles.calls
        assert all(s.user is None or s.user.id == "user-b" for s in states)


@pytest.mark.asyncio
async def test_slow_profile_from_previous_event_is_discarded() -> None:
    slow = asyncio.Event()
    reconciler, _provider, profiles = _make()
    profiles.profiles = {"user-a": _profile("user-a", "Alice"), "user-b": _profile("user-b", "Bruno")}
    profiles.gates["user-a"] = [slow]
    states = _record(reconciler)

    async with reconciler:
        await reconciler.wait_settled()
        reconciler.on_session_change(SessionEventKind.SIGNED_IN, _session("user-a"))
        await _until(lambda: "user-a" in profiles.calls)
        reconciler.on_session_change(SessionEventKind.SIGNED_IN, _session("user-b"))
        await _until(lambda: reconciler.state.profile is not None)

        slow.set()
        await reconciler.wait_settled()

        state = reconciler.state
        assert state.user is not None and state.user.id == "user-b"
        assert state.profile is not None and state.profile.id == "user-b"
        assert state.loading is False
        for snapshot in states:
            if snapshot.profile is not None:
                assert snapshot.user is not None
                assert snapshot.profile.id == snapshot.user.id


@pytest.mark.asyncio
async def test_sign_out_event_clears_user_and_profile_in_one_update() -> None:
    reconciler, provider, profiles = _make()
    provider.current = _session("u-1")
    profiles.profiles["u-1"] = _profile("u-1")

    async with reconciler:
        await reconciler.wait_settled()
        assert reconciler.state.profile is not None

        states = _record(reconciler)
        provider.emit(SessionEventKind.SIGNED_OUT, None)
        await reconciler.wait_settled()

        assert len(states) == 1
        assert states[0].user is None
        assert states[0].profile is None
        assert states[0].loading is False


@pytest.mark.asyncio
async def test_user_deleted_event_clears_state_even_with_session_payload() -> None:
    reconciler, provider, profiles = _make()
    provider.current = _session("u-1")
    profiles.profiles["u-1"] = _profile("u-1")

    async with reconciler:
        await reconciler.wait_settled()
        calls_before = len(profiles.calls)
        provider.emit(SessionEventKind.USER_DELETED, _session("u-1"))
        await reconciler.wait_settled()

        assert reconciler.state.user is None
        assert reconciler.state.profile is None
        assert len(profiles.calls) == calls_before


@pytest.mark.asyncio
async def test_profile_fetch_failure_is_not_fatal() -> None:
    reconciler, provider, profiles = _make()
    profiles.errors["u-1"] = RuntimeError("boom")

    async with reconciler:
        await reconciler.wait_settled()
        provider.emit(SessionEventKind.SIGNED_IN, _session("u-1"))
        await reconciler.wait_settled()

        state = reconciler.state
        assert state.user is not None and state.user.id == "u-1"
        assert state.profile is None
        assert state.error is not None and "boom" in state.error
        assert state.error_kind == ErrorKind.PROFILE
        assert state.loading is False


@pytest.mark.asyncio
async def test_missing_profile_row_is_not_an_error() -> None:
    reconciler, provider, _profiles = _make()
    provider.current = _session("u-1")

    async with reconciler:
        await reconciler.wait_settled()
        assert reconciler.state.user is not None
        assert reconciler.state.profile is None
        assert reconciler.state.error is None


@pytest.mark.asyncio
async def test_profile_for_other_user_is_rejected() -> None:
    reconciler, provider, profiles = _make()
    provider.current = _session("u-1")
    profiles.profiles["u-1"] = _profile("someone-else")

    async with reconciler:
        await reconciler.wait_settled()
        assert reconciler.state.user is not None
        assert reconciler.state.profile is None
        assert reconciler.state.error_kind == ErrorKind.PROFILE


@pytest.mark.asyncio
async def test_session_fetch_failure_fails_closed() -> None:
    reconciler, provider, profiles = _make()
    provider.session_error = ConnectionError("auth service down")

    async with reconciler:
        await reconciler.wait_settled()
        state = reconciler.state
        assert state.user is None
        assert state.profile is None
        assert state.loading is False
        assert state.error is not None and "auth service down" in state.error
        assert state.error_kind == ErrorKind.SESSION
        assert profiles.calls == []

        # Retrying start() clears the error once the session check succeeds.
        provider.session_error = None
        provider.current = _session("u-1")
        await reconciler.start()
        await reconciler.wait_settled()
        assert reconciler.state.user is not None
        assert reconciler.state.error is None


@pytest.mark.asyncio
async def test_loading_terminates_after_mixed_sequence() -> None:
    gate = asyncio.Event()
    reconciler, provider, profiles = _make()
    profiles.profiles = {"u-1": _profile("u-1"), "u-2": _profile("u-2")}
    profiles.gates["u-1"] = [gate]
    provider.current = _session("u-1")

    async with reconciler:
        provider.emit(SessionEventKind.SIGNED_IN, _session("u-2"))
        provider.emit(SessionEventKind.TOKEN_REFRESHED, _session("u-2"))
        provider.emit(SessionEventKind.SIGNED_OUT, None)
        provider.emit(SessionEventKind.SIGNED_IN, _session("u-1"))
        await reconciler.start()
        await reconciler.refresh_profile()
        gate.set()
        await reconciler.wait_settled()
        assert reconciler.state.loading is False

        await reconciler.sign_out()
        await reconciler.wait_settled()
        assert reconciler.state.loading is False
        assert reconciler.state.user is None


@pytest.mark.asyncio
async def test_token_refresh_never_sets_loading() -> None:
    gate = asyncio.Event()
    reconciler, provider, profiles = _make()
    provider.current = _session("u-1")
    profiles.profiles["u-1"] = _profile("u-1", "Ana")

    async with reconciler:
        await reconciler.wait_settled()
        states = _record(reconciler)

        profiles.profiles["u-1"] = _profile("u-1", "Anabel")
        profiles.gates["u-1"] = [gate]
        provider.emit(SessionEventKind.TOKEN_REFRESHED, _session("u-1"))
        await _until(lambda: len(profiles.calls) == 2)
        gate.set()
        await reconciler.wait_settled()

        assert states
        assert all(s.loading is False for s in states)
        assert reconciler.state.profile is not None
        assert reconciler.state.profile.first_name == "Anabel"


@pytest.mark.asyncio
async def test_token_refresh_can_skip_profile_refetch() -> None:
    reconciler, provider, profiles = _make(refetch_profile_on_token_refresh=False)
    provider.current = _session("u-1")
    profiles.profiles["u-1"] = _profile("u-1")

    async with reconciler:
        await reconciler.wait_settled()
        provider.emit(SessionEventKind.TOKEN_REFRESHED, _session("u-1"))
        await reconciler.wait_settled()

        assert profiles.calls == ["u-1"]
        assert reconciler.state.profile is not None
        assert reconciler.state.loading is False


@pytest.mark.asyncio
async def test_token_refresh_during_sign_in_profile_fetch_still_loads_profile() -> None:
    gate = asyncio.Event()
    reconciler, provider, profiles = _make(refetch_profile_on_token_refresh=False)
    profiles.profiles["u-1"] = _profile("u-1")
    profiles.gates["u-1"] = [gate]

    async with reconciler:
        await reconciler.wait_settled()
        provider.emit(SessionEventKind.SIGNED_IN, _session("u-1"))
        await _until(lambda: len(profiles.calls) == 1)
        provider.emit(SessionEventKind.TOKEN_REFRESHED, _session("u-1"))
        await _until(lambda: len(profiles.calls) == 2)
        gate.set()
        await reconciler.wait_settled()

        state = reconciler.state
        assert state.user is not None and state.user.id == "u-1"
        assert state.profile is not None and state.profile.id == "u-1"
        assert state.loading is False
        assert state.error is None


@pytest.mark.asyncio
async def test_signed_in_event_sets_loading_until_profile() -> None:
    gate = asyncio.Event()
    reconciler, provider, profiles = _make()
    profiles.profiles["u-1"] = _profile("u-1")
    profiles.gates["u-1"] = [gate]

    async with reconciler:
        await reconciler.wait_settled()
        states = _record(reconciler)
        provider.emit(SessionEventKind.SIGNED_IN, _session("u-1"))
        await _until(lambda: reconciler.state.user is not None)
        assert reconciler.state.loading is True

        gate.set()
        await reconciler.wait_settled()
        assert [s.loading for s in states] == [True, False]


@pytest.mark.asyncio
async def test_refresh_profile_without_user_is_noop() -> None:
    reconciler, _provider, profiles = _make()

    async with reconciler:
        await reconciler.wait_settled()
        before = reconciler.state
        states = _record(reconciler)

        await reconciler.refresh_profile()

        assert reconciler.state == before
        assert states == []
        assert profiles.calls == []


@pytest.mark.asyncio
async def test_refresh_profile_replaces_profile() -> None:
    reconciler, provider, profiles = _make()
    provider.current = _session("u-1")
    profiles.profiles["u-1"] = _profile("u-1", "Ana", role="conductor")

    async with reconciler:
        await reconciler.wait_settled()
        profiles.profiles["u-1"] = _profile("u-1", "Ana", role="gerente")

        await reconciler.refresh_profile()

        assert reconciler.state.profile is not None
        assert reconciler.state.profile.role_name == "Gerente"
        assert reconciler.state.loading is False


@pytest.mark.asyncio
async def test_refresh_profile_failure_keeps_previous_profile() -> None:
    reconciler, provider, profiles = _make()
    provider.current = _session("u-1")
    profiles.profiles["u-1"] = _profile("u-1", "Ana")

    async with reconciler:
        await reconciler.wait_settled()
        profiles.errors["u-1"] = TimeoutError("slow database")

        await reconciler.refresh_profile()

        state = reconciler.state
        assert state.profile is not None and state.profile.first_name == "Ana"
        assert state.error is not None and "slow database" in state.error
        assert state.error_kind == ErrorKind.PROFILE

        # Next successful refresh clears the profile error.
        del profiles.errors["u-1"]
        await reconciler.refresh_profile()
        assert reconciler.state.error is None


@pytest.mark.asyncio
async def test_refresh_profile_dropped_after_user_switch() -> None:
    gate = asyncio.Event()
    reconciler, provider, profiles = _make()
    provider.current = _session("user-a")
    profiles.profiles = {"user-a": _profile("user-a", "Alice"), "user-b": _profile("user-b", "Bruno")}

    async with reconciler:
        await reconciler.wait_settled()
        profiles.gates["user-a"] = [gate]
        refresh = asyncio.create_task(reconciler.refresh_profile())
        await _until(lambda: profiles.calls.count("user-a") == 2)

        provider.emit(SessionEventKind.SIGNED_IN, _session("user-b"))
        await reconciler.wait_settled()

        gate.set()
        await refresh

        state = reconciler.state
        assert state.user is not None and state.user.id == "user-b"
        assert state.profile is not None and state.profile.first_name == "Bruno"


@pytest.mark.asyncio
async def test_start_twice_subscribes_once_and_close_unsubscribes_once() -> None:
    reconciler, provider, _profiles = _make()

    await reconciler.start()
    await reconciler.start()
    await reconciler.wait_settled()
    assert len(provider.subscriptions) == 1
    assert provider.session_calls == 2

    await reconciler.close()
    await reconciler.close()
    assert provider.subscriptions[0].unsubscribe_calls == 1
    assert provider.handlers == []

    with pytest.raises(FleetAuthError):
        await reconciler.start()


@pytest.mark.asyncio
async def test_subscribe_failure_is_recorded_and_retried_on_start() -> None:
    reconciler, provider, profiles = _make()
    provider.current = _session("u-1")
    profiles.profiles["u-1"] = _profile("u-1")
    provider.subscribe_error = RuntimeError("realtime unavailable")

    async with reconciler:
        await reconciler.wait_settled()
        state = reconciler.state
        assert state.error_kind is ErrorKind.SUBSCRIBE
        assert state.error is not None and "realtime unavailable" in state.error
        assert state.user is not None and state.profile is not None
        assert provider.subscriptions == []

        provider.subscribe_error = None
        await reconciler.start()
        await reconciler.wait_settled()

        assert len(provider.subscriptions) == 1
        assert reconciler.state.error is None
        assert reconciler.state.error_kind is None


@pytest.mark.asyncio
async def test_events_after_close_are_ignored() -> None:
    reconciler, provider, _profiles = _make()
    async with reconciler:
        await reconciler.wait_settled()
        handler = provider.handlers[0]

    handler(SessionEventKind.SIGNED_IN, _session("u-1"))
    assert reconciler.state.user is None


@pytest.mark.asyncio
async def test_close_cancels_in_flight_fetches() -> None:
    never = asyncio.Event()
    reconciler, provider, _profiles = _make()
    provider.scripted = [(never, _session("u-1"))]

    await reconciler.start()
    await _until(lambda: provider.session_calls == 1)
    await asyncio.wait_for(reconciler.close(), 1.0)

    assert reconciler.state.user is None


@pytest.mark.asyncio
async def test_sign_in_goes_through_provider_event() -> None:
    reconciler, _provider, profiles = _make()
    profiles.profiles["ana"] = _profile("ana")

    async with reconciler:
        await reconciler.wait_settled()
        session = await reconciler.sign_in("ana@example.com", "secret")
        await reconciler.wait_settled()

        assert session.user_id == "ana"
        assert reconciler.state.user is not None and reconciler.state.user.id == "ana"
        assert reconciler.state.profile is not None
        assert reconciler.state.loading is False


@pytest.mark.asyncio
async def test_sign_in_failure_records_error_and_raises() -> None:
    reconciler, provider, _profiles = _make()
    provider.sign_in_error = ValueError("Invalid login credentials")

    async with reconciler:
        await reconciler.wait_settled()
        with pytest.raises(SignInError, match="Invalid login credentials"):
            await reconciler.sign_in("ana@example.com", "wrong")

        state = reconciler.state
        assert state.user is None
        assert state.error_kind == ErrorKind.SIGN_IN

        provider.sign_in_error = None
        await reconciler.sign_in("ana@example.com", "secret")
        await reconciler.wait_settled()
        assert reconciler.state.error is None


@pytest.mark.asyncio
async def test_sign_out_failure_keeps_state() -> None:
    reconciler, provider, profiles = _make()
    provider.current = _session("u-1")
    profiles.profiles["u-1"] = _profile("u-1")
    provider.sign_out_error = SignOutError("network unreachable")

    async with reconciler:
        await reconciler.wait_settled()
        with pytest.raises(SignOutError):
            await reconciler.sign_out()

        state = reconciler.state
        assert state.user is not None
        assert state.profile is not None
        assert state.error == "network unreachable"
        assert state.error_kind == ErrorKind.SIGN_OUT


@pytest.mark.asyncio
async def test_sign_out_clears_state_through_event() -> None:
    reconciler, provider, profiles = _make()
    provider.current = _session("u-1")
    profiles.profiles["u-1"] = _profile("u-1")

    async with reconciler:
        await reconciler.wait_settled()
        states = _record(reconciler)
        await reconciler.sign_out()
        await reconciler.wait_settled()

        assert provider.sign_out_calls == 1
        assert reconciler.state.user is None
        assert reconciler.state.profile is None
        assert len(states) == 1


@pytest.mark.asyncio
async def test_events_from_another_thread_are_applied() -> None:
    reconciler, _provider, profiles = _make()
    profiles.profiles["u-2"] = _profile("u-2")

    async with reconciler:
        await reconciler.wait_settled()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            reconciler.on_session_change,
            SessionEventKind.SIGNED_IN,
            _session("u-2"),
        )
        await _until(lambda: reconciler.state.user is not None)
        await reconciler.wait_settled()

        assert reconciler.state.profile is not None
        assert reconciler.state.profile.id == "u-2"


@pytest.mark.asyncio
async def test_unknown_event_kind_is_ignored() -> None:
    reconciler, _provider, _profiles = _make()

    async with reconciler:
        await reconciler.wait_settled()
        generation = reconciler.generation
        reconciler.on_session_change("SOMETHING_NEW", _session("u-1"))
        await reconciler.wait_settled()

        assert reconciler.generation == generation
        assert reconciler.state.user is None


@pytest.mark.asyncio
async def test_failing_listener_does_not_block_others() -> None:
    reconciler, provider, _profiles = _make()
    provider.current = _session("u-1")

    def _broken(_state: ReconcilerState) -> None:
        raise RuntimeError("listener bug")

    reconciler.add_listener(_broken)
    states = _record(reconciler)

    async with reconciler:
        await reconciler.wait_settled()

    assert states[-1].user is not None
    assert states[-1].loading is False
