"""Shared fixtures and utilities for Celebi tests."""

import json
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any
from unittest.mock import patch

import httpx
import pytest
from cryptography.fernet import Fernet

from celebi.config import Config
from celebi.oauth.manager import Navigator, OAuthManager
from celebi.oauth.store import MemoryStore


INSTANCE = "mastodon.example"

REGISTRATION = {
    "id": "1234",
    "name": "Celebi.social",
    "website": "http://localhost:8000",
    "redirect_uri": "http://127.0.0.1:8765/callback",
    "client_id": "client-abc",
    "client_secret": "secret-xyz",
    "vapid_key": "BKey",
}

PKCE_METADATA = {
    "issuer": f"https://{INSTANCE}/",
    "authorization_endpoint": f"https://{INSTANCE}/oauth/authorize",
    "token_endpoint": f"https://{INSTANCE}/oauth/token",
    "code_challenge_methods_supported": ["S256"],
}


# ============================================================================
# Fake instance
# ============================================================================


class FakeInstance:
    """In-memory Mastodon instance served through httpx.MockTransport.

    Records every request so tests can assert on what was (not) sent.
    """

    def __init__(
        self,
        metadata: dict[str, Any] | None = None,
        metadata_status: int = 200,
        registration: dict[str, Any] | None = None,
        registration_status: int = 200,
        token_response: dict[str, Any] | None = None,
        token_status: int = 200,
    ):
        self.metadata = metadata
        self.metadata_status = metadata_status
        self.registration = registration if registration is not None else dict(REGISTRATION)
        self.registration_status = registration_status
        self.token_response = (
            token_response if token_response is not None else {"access_token": "token-123"}
        )
        self.token_status = token_status
        self.requests: list[httpx.Request] = []

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/.well-known/oauth-authorization-server":
            if self.metadata is None:
                return httpx.Response(404, text="Not Found")
            return httpx.Response(self.metadata_status, json=self.metadata)
        if path == "/api/v1/apps":
            return httpx.Response(self.registration_status, json=self.registration)
        if path == "/oauth/token":
            return httpx.Response(self.token_status, json=self.token_response)
        return httpx.Response(404, text="Not Found")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def form_data(request: httpx.Request) -> dict[str, str]:
    """Decode a form-encoded request body."""
    return dict(httpx.QueryParams(request.content.decode()))


class RecordingNavigator(Navigator):
    """Navigator that records instead of opening a browser."""

    def __init__(self, open_result: bool = True) -> None:
        super().__init__()
        self.opened: list[str] = []
        self.open_result = open_result

    def open(self, url: str) -> bool:
        self.opened.append(url)
        return self.open_result


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Configuration with defaults and a temporary data directory."""
    return Config(data_dir=tmp_path / "data")


@pytest.fixture
def persistent() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def ephemeral() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def navigator() -> RecordingNavigator:
    return RecordingNavigator()


@pytest.fixture
def make_manager(
    persistent: MemoryStore,
    ephemeral: MemoryStore,
    config: Config,
) -> Callable[..., OAuthManager]:
    """Factory for managers sharing the same two stores.

    Each call is a fresh manager, like a new invocation after the browser
    comes back.
    """

    def factory(
        instance: FakeInstance,
        navigator: Navigator | None = None,
        **kwargs: Any,
    ) -> OAuthManager:
        return OAuthManager(
            persistent=persistent,
            ephemeral=ephemeral,
            config=config,
            navigator=navigator or RecordingNavigator(),
            http_client=instance.client(),
            **kwargs,
        )

    return factory


@pytest.fixture
def cipher() -> Fernet:
    return Fernet(Fernet.generate_key())


@pytest.fixture
def no_keyring() -> Generator[None, None, None]:
    """Make the keyring unavailable so the fallback key is used."""
    with patch("celebi.oauth.store.keyring.get_password", side_effect=RuntimeError("no backend")):
        yield


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove every CELEBI_* setting from the environment."""
    for name in (
        "CELEBI_CLIENT_NAME",
        "CELEBI_WEBSITE",
        "CELEBI_SCOPES",
        "CELEBI_REDIRECT_URI",
        "CELEBI_DATA_DIR",
        "CELEBI_HTTP_TIMEOUT",
        "CELEBI_CALLBACK_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)


def write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))


@pytest.fixture
def route_owned_clients(
    monkeypatch: pytest.MonkeyPatch,
) -> Callable[[Callable[[httpx.Request], httpx.Response]], None]:
    """Send clients the code opens for itself through a MockTransport handler.

    Settings the code passes (timeout, follow_redirects) are kept.
    """
    real_client = httpx.AsyncClient

    def route(handler: Callable[[httpx.Request], httpx.Response]) -> None:
        def make_client(**kwargs: Any) -> httpx.AsyncClient:
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        monkeypatch.setattr(httpx, "AsyncClient", make_client)

    return route
