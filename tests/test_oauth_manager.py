"""Tests for OAuth manager module."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable
from urllib.parse import parse_qs, urlsplit

import pytest

from celebi.config import Config
from celebi.oauth.errors import (
    InvalidInstance,
    InvalidRegistration,
    RegistrationFailed,
    TokenExchangeFailed,
)
from celebi.oauth.manager import (
    ACCESS_TOKEN_KEY,
    CURRENT_INSTANCE_KEY,
    INSTANCE_KEY,
    SESSION_CREATED_KEY,
    VERIFIER_KEY,
    FlowState,
    OAuthManager,
    _format_time_ago,
    _format_timedelta,
    get_oauth_manager,
)
from celebi.oauth.pkce import generate_code_challenge
from celebi.oauth.store import EphemeralStore, MemoryStore, PersistentStore

from conftest import INSTANCE, PKCE_METADATA, REGISTRATION, FakeInstance, RecordingNavigator, form_data

LANDING = "http://127.0.0.1:8765/callback"

ManagerFactory = Callable[..., OAuthManager]


class CountingStore(MemoryStore):
    """MemoryStore that counts every access."""

    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    def get(self, key: str) -> Any | None:
        self.calls += 1
        return super().get(key)

    def set(self, key: str, value: Any) -> None:
        self.calls += 1
        super().set(key, value)

    def remove(self, key: str) -> None:
        self.calls += 1
        super().remove(key)


class TestFormatTimedelta:
    """Tests for _format_timedelta function."""

    def test_negative_is_just_now(self) -> None:
        """Test that clock skew into the future reads as 'just now'."""
        assert _format_timedelta(timedelta(seconds=-5)) == "just now"

    def test_seconds(self) -> None:
        assert _format_timedelta(timedelta(seconds=0)) == "0 seconds"
        assert _format_timedelta(timedelta(seconds=59)) == "59 seconds"

    def test_minutes(self) -> None:
        assert _format_timedelta(timedelta(minutes=1)) == "1 minute"
        assert _format_timedelta(timedelta(minutes=59)) == "59 minutes"

    def test_hours(self) -> None:
        assert _format_timedelta(timedelta(hours=1)) == "1 hour"
        assert _format_timedelta(timedelta(hours=23)) == "23 hours"

    def test_days(self) -> None:
        assert _format_timedelta(timedelta(days=1)) == "1 day"
        assert _format_timedelta(timedelta(days=13)) == "13 days"

    def test_weeks_threshold(self) -> None:
        """Test that 14+ days converts to weeks."""
        assert _format_timedelta(timedelta(days=14)) == "2 weeks"
        assert _format_timedelta(timedelta(days=21)) == "3 weeks"

    def test_boundary_between_units(self) -> None:
        assert _format_timedelta(timedelta(seconds=60)) == "1 minute"
        assert _format_timedelta(timedelta(minutes=60)) == "1 hour"
        assert _format_timedelta(timedelta(hours=24)) == "1 day"


class TestFormatTimeAgo:
    """Tests for _format_time_ago function."""

    def test_hours_ago(self) -> None:
        dt = datetime.now(timezone.utc) - timedelta(hours=3, minutes=1)
        assert _format_time_ago(dt) == "3 hours ago"

    def test_naive_is_utc(self) -> None:
        dt = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=2, minutes=1)
        assert _format_time_ago(dt) == "2 days ago"


class TestStart:
    """Tests for OAuthManager.start."""

    @pytest.mark.asyncio
    async def test_pkce_start(
        self,
        make_manager: ManagerFactory,
        persistent: MemoryStore,
        ephemeral: MemoryStore,
        navigator: RecordingNavigator,
    ) -> None:
        """Test a first login against a PKCE-capable instance."""
        fake = FakeInstance(metadata=PKCE_METADATA)
        manager = make_manager(fake, navigator=navigator)

        redirect = await manager.start("https://mastodon.example/")

        assert redirect.instance == "mastodon.example"
        assert redirect.pkce is True
        assert persistent.get(INSTANCE_KEY) == "mastodon.example"
        assert persistent.get("app_mastodon.example") == REGISTRATION
        assert len(fake.requests_to("/api/v1/apps")) == 1

        verifier = ephemeral.get(VERIFIER_KEY)
        assert isinstance(verifier, str) and len(verifier) == 56

        params = parse_qs(urlsplit(redirect.url).query)
        assert params["code_challenge_method"] == ["S256"]
        assert params["code_challenge"] == [generate_code_challenge(verifier)]
        assert params["client_id"] == ["client-abc"]
        assert navigator.opened == [redirect.url]

    @pytest.mark.asyncio
    async def test_non_pkce_start(
        self,
        make_manager: ManagerFactory,
        ephemeral: MemoryStore,
    ) -> None:
        """Test that an instance without metadata gets the plain flow."""
        manager = make_manager(FakeInstance(metadata=None))

        redirect = await manager.start("mastodon.example")

        assert redirect.pkce is False
        assert "code_challenge" not in redirect.url
        assert ephemeral.get(VERIFIER_KEY) is None

    @pytest.mark.asyncio
    async def test_non_pkce_start_clears_stale_verifier(
        self,
        make_manager: ManagerFactory,
        ephemeral: MemoryStore,
    ) -> None:
        ephemeral.set(VERIFIER_KEY, "stale")
        await make_manager(FakeInstance(metadata=None)).start("mastodon.example")

        assert ephemeral.get(VERIFIER_KEY) is None

    @pytest.mark.asyncio
    async def test_cached_registration_reused(
        self,
        make_manager: ManagerFactory,
        persistent: MemoryStore,
    ) -> None:
        persistent.set("app_mastodon.example", {"client_id": "cached"})
        fake = FakeInstance(metadata=PKCE_METADATA)

        redirect = await make_manager(fake).start("@alice@mastodon.example")

        assert fake.requests_to("/api/v1/apps") == []
        assert "client_id=cached" in redirect.url

    @pytest.mark.asyncio
    async def test_force_login(self, make_manager: ManagerFactory) -> None:
        redirect = await make_manager(FakeInstance()).start("mastodon.example", force_login=True)
        assert "force_login=true" in redirect.url

    @pytest.mark.asyncio
    async def test_invalid_instance(
        self, make_manager: ManagerFactory, persistent: MemoryStore
    ) -> None:
        fake = FakeInstance()
        with pytest.raises(InvalidInstance):
            await make_manager(fake).start("https://")

        assert fake.requests == []
        assert persistent.keys() == []

    @pytest.mark.asyncio
    async def test_registration_failure(
        self, make_manager: ManagerFactory, ephemeral: MemoryStore
    ) -> None:
        """Test that a failed registration reports ERROR and does not navigate."""
        states: list[FlowState] = []
        navigator = RecordingNavigator()
        fake = FakeInstance(registration={}, registration_status=500)
        manager = make_manager(fake, navigator=navigator, on_state=states.append)

        with pytest.raises(RegistrationFailed):
            await manager.start("mastodon.example")

        assert states == [FlowState.REGISTERING, FlowState.ERROR]
        assert navigator.opened == []
        assert ephemeral.get(VERIFIER_KEY) is None

    @pytest.mark.asyncio
    async def test_state_transitions(self, make_manager: ManagerFactory) -> None:
        states: list[FlowState] = []
        messages: list[str] = []
        manager = make_manager(
            FakeInstance(metadata=PKCE_METADATA),
            on_state=states.append,
            on_status=messages.append,
        )

        await manager.start("mastodon.example")

        assert states == [FlowState.REGISTERING, FlowState.AWAITING_CALLBACK]
        assert any("PKCE" in m for m in messages)

    @pytest.mark.asyncio
    async def test_browser_not_opened(self, make_manager: ManagerFactory) -> None:
        """Test that a missing browser is reported on the result, not as progress."""
        messages: list[str] = []
        navigator = RecordingNavigator(open_result=False)
        manager = make_manager(FakeInstance(), navigator=navigator, on_status=messages.append)

        redirect = await manager.start("mastodon.example")

        assert redirect.opened is False
        assert navigator.opened == [redirect.url]
        assert not any(redirect.url in m for m in messages)


class TestCompleteFromCallback:
    """Tests for OAuthManager.complete_from_callback."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "url",
        [LANDING, f"{LANDING}?state=x", f"{LANDING}?error=access_denied"],
    )
    async def test_no_code_is_noop(self, config: Config, url: str) -> None:
        """Test that a landing without a code returns None and touches no store."""
        persistent = CountingStore()
        ephemeral = CountingStore()
        fake = FakeInstance()
        navigator = RecordingNavigator()
        manager = OAuthManager(
            persistent, ephemeral, config, navigator=navigator, http_client=fake.client()
        )

        assert await manager.complete_from_callback(url) is None
        assert await manager.complete_from_callback(url) is None

        assert persistent.calls == 0
        assert ephemeral.calls == 0
        assert fake.requests == []
        assert navigator.current_url is None

    @pytest.mark.asyncio
    async def test_pkce_completion(
        self,
        make_manager: ManagerFactory,
        persistent: MemoryStore,
        ephemeral: MemoryStore,
    ) -> None:
        """Test completing a PKCE login from cached state."""
        persistent.set(INSTANCE_KEY, "mastodon.example")
        persistent.set("app_mastodon.example", {"client_id": "cid"})
        ephemeral.set(VERIFIER_KEY, "v1")
        fake = FakeInstance(token_response={"access_token": "tok"})
        navigator = RecordingNavigator()

        session = await make_manager(fake, navigator=navigator).complete_from_callback(
            f"{LANDING}?code=abc123"
        )

        assert session is not None
        assert session.to_dict() == {"instanceURL": "mastodon.example", "accessToken": "tok"}
        assert ephemeral.get(VERIFIER_KEY) is None
        assert persistent.get(ACCESS_TOKEN_KEY) == "tok"
        assert persistent.get(CURRENT_INSTANCE_KEY) == "mastodon.example"
        assert persistent.get(SESSION_CREATED_KEY) is not None
        assert navigator.current_url == LANDING

        sent = form_data(fake.requests_to("/oauth/token")[0])
        assert sent["code"] == "abc123"
        assert sent["code_verifier"] == "v1"
        assert sent["client_id"] == "cid"
        assert "client_secret" not in sent

    @pytest.mark.asyncio
    async def test_non_pkce_completion(
        self,
        make_manager: ManagerFactory,
        persistent: MemoryStore,
    ) -> None:
        persistent.set(INSTANCE_KEY, "mastodon.example")
        persistent.set("app_mastodon.example", REGISTRATION)
        fake = FakeInstance()

        session = await make_manager(fake).complete_from_callback(f"{LANDING}?code=abc")

        assert session is not None
        sent = form_data(fake.requests_to("/oauth/token")[0])
        assert "code_verifier" not in sent
        assert sent["client_secret"] == "secret-xyz"

    @pytest.mark.asyncio
    async def test_exchange_failure_keeps_verifier(
        self,
        make_manager: ManagerFactory,
        persistent: MemoryStore,
        ephemeral: MemoryStore,
    ) -> None:
        """Test that a failed exchange writes no session and leaves the verifier."""
        persistent.set(INSTANCE_KEY, "mastodon.example")
        persistent.set("app_mastodon.example", {"client_id": "cid"})
        ephemeral.set(VERIFIER_KEY, "v1")
        states: list[FlowState] = []
        fake = FakeInstance(token_response={"error": "invalid_grant"}, token_status=400)

        with pytest.raises(TokenExchangeFailed):
            await make_manager(fake, on_state=states.append).complete_from_callback(
                f"{LANDING}?code=abc"
            )

        assert persistent.get(ACCESS_TOKEN_KEY) is None
        assert ephemeral.get(VERIFIER_KEY) == "v1"
        assert states == [FlowState.EXCHANGING, FlowState.ERROR]

    @pytest.mark.asyncio
    async def test_no_login_started(self, make_manager: ManagerFactory) -> None:
        with pytest.raises(InvalidRegistration, match="No login in progress"):
            await make_manager(FakeInstance()).complete_from_callback(f"{LANDING}?code=abc")

    @pytest.mark.asyncio
    async def test_registration_missing(
        self, make_manager: ManagerFactory, persistent: MemoryStore
    ) -> None:
        persistent.set(INSTANCE_KEY, "mastodon.example")
        fake = FakeInstance()

        with pytest.raises(InvalidRegistration, match="No app registration"):
            await make_manager(fake).complete_from_callback(f"{LANDING}?code=abc")

        assert fake.requests == []


class TestFullLogin:
    """Login started by one manager and completed by another."""

    @pytest.mark.asyncio
    async def test_round_trip(
        self, make_manager: ManagerFactory, persistent: MemoryStore
    ) -> None:
        fake = FakeInstance(metadata=PKCE_METADATA)
        await make_manager(fake).start("https://mastodon.example/")

        # A fresh manager shares nothing but the stores
        finisher = make_manager(fake)
        assert finisher.get_auth_status().pkce_pending

        session = await finisher.complete_from_callback(f"{LANDING}?code=abc")

        assert session is not None
        assert finisher.is_logged_in()
        assert finisher.get_session().access_token == "token-123"
        status = finisher.get_auth_status()
        assert status.state == FlowState.LOGGED_IN
        assert status.pending_instance is None


class TestSessionQueries:
    """Tests for session accessors, status and logout."""

    def test_logged_out_by_default(self, make_manager: ManagerFactory) -> None:
        manager = make_manager(FakeInstance())
        assert not manager.is_logged_in()
        assert manager.get_session() is None
        assert manager.get_auth_status().state == FlowState.LOGGED_OUT

    def test_session_from_store(
        self, make_manager: ManagerFactory, persistent: MemoryStore
    ) -> None:
        created = datetime.now(timezone.utc) - timedelta(hours=2, minutes=1)
        persistent.set(ACCESS_TOKEN_KEY, "tok")
        persistent.set(CURRENT_INSTANCE_KEY, "mastodon.example")
        persistent.set(SESSION_CREATED_KEY, created.isoformat())

        manager = make_manager(FakeInstance())
        session = manager.get_session()

        assert session is not None
        assert session.auth_header() == "Bearer tok"
        status = manager.get_auth_status()
        assert status.logged_in
        assert status.instance == "mastodon.example"
        assert status.logged_in_ago_human == "2 hours ago"
        assert "tok" not in str(status.to_dict())

    def test_pending_login_elsewhere(
        self, make_manager: ManagerFactory, persistent: MemoryStore
    ) -> None:
        persistent.set(ACCESS_TOKEN_KEY, "tok")
        persistent.set(CURRENT_INSTANCE_KEY, "mastodon.example")
        persistent.set(INSTANCE_KEY, "other.example")

        status = make_manager(FakeInstance()).get_auth_status()

        assert status.logged_in
        assert status.pending_instance == "other.example"
        assert not status.pkce_pending

    def test_pending_pkce_while_logged_out(
        self,
        make_manager: ManagerFactory,
        persistent: MemoryStore,
        ephemeral: MemoryStore,
    ) -> None:
        persistent.set(INSTANCE_KEY, "mastodon.example")
        ephemeral.set(VERIFIER_KEY, "v1")

        status = make_manager(FakeInstance()).get_auth_status()

        assert status.state == FlowState.AWAITING_CALLBACK
        assert status.to_dict()["state"] == "awaiting_callback"

    def test_logout(
        self,
        make_manager: ManagerFactory,
        persistent: MemoryStore,
        ephemeral: MemoryStore,
    ) -> None:
        """Test that logout clears the session and verifier but keeps registrations."""
        persistent.set(ACCESS_TOKEN_KEY, "tok")
        persistent.set(CURRENT_INSTANCE_KEY, "mastodon.example")
        persistent.set(SESSION_CREATED_KEY, datetime.now(timezone.utc).isoformat())
        persistent.set("app_mastodon.example", {"client_id": "cid"})
        ephemeral.set(VERIFIER_KEY, "v1")
        states: list[FlowState] = []

        manager = make_manager(FakeInstance(), on_state=states.append)
        manager.logout()

        assert not manager.is_logged_in()
        assert persistent.get(ACCESS_TOKEN_KEY) is None
        assert persistent.get(CURRENT_INSTANCE_KEY) is None
        assert persistent.get(SESSION_CREATED_KEY) is None
        assert ephemeral.get(VERIFIER_KEY) is None
        assert persistent.get("app_mastodon.example") == {"client_id": "cid"}
        assert states == [FlowState.LOGGED_OUT]

    def test_logout_when_logged_out(self, make_manager: ManagerFactory) -> None:
        manager = make_manager(FakeInstance())
        manager.logout()
        assert not manager.is_logged_in()


class TestGetOauthManager:
    """Tests for get_oauth_manager function."""

    def test_uses_on_disk_stores(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, no_keyring: None
    ) -> None:
        monkeypatch.setattr("tempfile.tempdir", str(tmp_path))
        monkeypatch.setenv("CELEBI_SESSION_ID", "test")
        config = Config(data_dir=tmp_path / "data")

        manager = get_oauth_manager(config)

        assert isinstance(manager.persistent, PersistentStore)
        assert isinstance(manager.ephemeral, EphemeralStore)
        assert manager.persistent.data_dir == tmp_path / "data"
        assert manager.config is config
