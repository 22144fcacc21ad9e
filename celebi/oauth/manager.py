"""Login flow orchestration and session queries.

OAuthManager is the main interface of the package. It drives the login as a
state machine whose state lives entirely in two stores, because the flow is
split across a browser navigation:

    LOGGED_OUT --start()--> REGISTERING --> AWAITING_CALLBACK
        (browser leaves; a new invocation picks up from here)
    AWAITING_CALLBACK --complete_from_callback()--> EXCHANGING --> LOGGED_IN
    any non-terminal state --failure--> ERROR
    LOGGED_IN --logout()--> LOGGED_OUT

The manager itself keeps nothing between calls, so the invocation that
completes the login can be a different process from the one that started it.
"""

import logging
import webbrowser
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

import httpx

from ..config import Config
from .callback import parse_callback_url, strip_query
from .discovery import supports_pkce
from .errors import InvalidRegistration, OAuthFlowError
from .flow import (
    build_authorization_url,
    exchange_code_for_token,
    register_or_get_cached,
    registration_key,
)
from .instance import normalize_instance
from .pkce import generate_pkce_challenge
from .store import EphemeralStore, KeyValueStore, PersistentStore
from .tokens import AuthorizationRequest, ClientRegistration, Session, parse_timestamp

logger = logging.getLogger(__name__)

# Persistent store keys
INSTANCE_KEY = "instanceURL"
ACCESS_TOKEN_KEY = "accessToken"
CURRENT_INSTANCE_KEY = "currentInstance"
SESSION_CREATED_KEY = "sessionCreatedAt"

# Ephemeral store keys
VERIFIER_KEY = "codeVerifier"


class FlowState(Enum):
    """States of the login flow."""

    LOGGED_OUT = "logged_out"
    REGISTERING = "registering"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    LOGGED_IN = "logged_in"
    ERROR = "error"


def _format_timedelta(td: timedelta) -> str:
    """Format a timedelta into a human-readable string.

    Examples:
        - "45 minutes"
        - "2 hours"
        - "3 days"
        - "2 weeks"
    """
    total_seconds = int(td.total_seconds())

    if total_seconds < 0:
        return "just now"

    if total_seconds < 60:
        return f"{total_seconds} seconds"

    minutes = total_seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"

    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''}"

    days = hours // 24
    if days < 14:
        return f"{days} day{'s' if days != 1 else ''}"

    weeks = days // 7
    return f"{weeks} week{'s' if weeks != 1 else ''}"


def _format_time_ago(dt: datetime) -> str:
    """Format a datetime as time ago from now ("3 hours ago")."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return _format_timedelta(datetime.now(timezone.utc) - dt) + " ago"


class Navigator:
    """Where the login flow sends the user.

    open() leaves for the instance's authorization page. replace() swaps the
    visible landing URL once its authorization code has been consumed. The
    default opens the system browser and simply records the replacement.
    """

    def __init__(self) -> None:
        self.current_url: str | None = None

    def open(self, url: str) -> bool:
        """Open url in the browser; False if no browser could be opened."""
        return webbrowser.open(url)

    def replace(self, url: str) -> None:
        self.current_url = url


@dataclass
class AuthorizationRedirect:
    """Where start() sent the browser, and whether it actually went."""

    url: str
    instance: str
    pkce: bool
    opened: bool = True


@dataclass
class AuthStatus:
    """Snapshot of the login state for display.

    Attributes:
        logged_in: Whether a session exists
        instance: Instance of the current session
        pending_instance: Instance of a started login that has not completed
        pkce_pending: Whether a PKCE verifier is waiting for a callback
        logged_in_at: When the session was created (ISO format string)
        logged_in_ago_human: Human-readable session age (e.g., "2 hours ago")
    """

    logged_in: bool = False
    instance: str | None = None
    pending_instance: str | None = None
    pkce_pending: bool = False
    logged_in_at: str | None = None
    logged_in_ago_human: str | None = None

    @property
    def state(self) -> FlowState:
        if self.logged_in:
            return FlowState.LOGGED_IN
        if self.pending_instance:
            return FlowState.AWAITING_CALLBACK
        return FlowState.LOGGED_OUT

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "logged_in": self.logged_in,
            "instance": self.instance,
            "pending_instance": self.pending_instance,
            "pkce_pending": self.pkce_pending,
            "logged_in_at": self.logged_in_at,
            "logged_in_ago_human": self.logged_in_ago_human,
        }


class OAuthManager:
    """Runs the Mastodon login flow over a persistent and an ephemeral store.

    Usage:
        manager = get_oauth_manager(config)

        # First invocation: sends the browser to the instance
        await manager.start("https://mastodon.example/")

        # Later invocation, on the landing URL
        session = await manager.complete_from_callback(landing_url)

        # Any time
        if manager.is_logged_in():
            header = manager.get_session().auth_header()
    """

    def __init__(
        self,
        persistent: KeyValueStore,
        ephemeral: KeyValueStore,
        config: Config | None = None,
        navigator: Navigator | None = None,
        http_client: httpx.AsyncClient | None = None,
        on_status: Callable[[str], None] | None = None,
        on_state: Callable[[FlowState], None] | None = None,
    ):
        """Initialize the manager.

        Args:
            persistent: Store for instance, registrations and session
            ephemeral: Store for the PKCE verifier
            config: Client identity and settings
            navigator: Browser abstraction (default opens the system browser)
            http_client: Optional shared HTTP client (caller closes it)
            on_status: Callback for human-readable progress messages
            on_state: Callback for every state transition
        """
        self.persistent = persistent
        self.ephemeral = ephemeral
        self.config = config or Config()
        self.navigator = navigator or Navigator()
        self.http_client = http_client
        self.on_status = on_status or (lambda msg: None)
        self.on_state = on_state or (lambda state: None)

    def _transition(self, state: FlowState, message: str | None = None) -> None:
        logger.debug(f"Login flow -> {state.value}")
        self.on_state(state)
        if message:
            self._emit_status(message)

    def _emit_status(self, message: str) -> None:
        logger.info(message)
        self.on_status(message)

    async def start(self, instance: str, force_login: bool = False) -> AuthorizationRedirect:
        """Begin a login: register if needed, probe PKCE, send the browser away.

        Args:
            instance: Server identifier as typed by the user
            force_login: Make the instance ask for credentials again

        Returns:
            AuthorizationRedirect describing where the browser was sent;
            opened is False when the user must open the URL themselves

        Raises:
            InvalidInstance: If the identifier normalizes to nothing
            RegistrationFailed: If the instance rejects or fails registration
        """
        instance = normalize_instance(instance)
        self.persistent.set(INSTANCE_KEY, instance)

        self._transition(FlowState.REGISTERING, f"Registering with {instance}...")
        try:
            registration = await register_or_get_cached(
                instance, self.persistent, self.config, self.http_client
            )
        except OAuthFlowError as e:
            self._transition(FlowState.ERROR, f"Registration failed: {e}")
            raise

        use_pkce = await supports_pkce(
            instance, self.http_client, timeout=self.config.http_timeout
        )
        pkce = generate_pkce_challenge() if use_pkce else None

        url, verifier = build_authorization_url(
            instance, registration, self.config, pkce=pkce, force_login=force_login
        )

        if verifier is not None:
            self.ephemeral.set(VERIFIER_KEY, verifier)
        else:
            # A verifier left by an earlier PKCE attempt must not ride along
            self.ephemeral.remove(VERIFIER_KEY)

        self._transition(
            FlowState.AWAITING_CALLBACK,
            f"Opening browser for authorization ({'PKCE' if use_pkce else 'no PKCE'})...",
        )

        opened = self.navigator.open(url)
        if not opened:
            logger.info(f"No browser could be opened for {url}")

        return AuthorizationRedirect(url=url, instance=instance, pkce=use_pkce, opened=opened)

    def load_authorization_request(self) -> AuthorizationRequest:
        """Reassemble the in-flight login from the stores.

        Raises:
            InvalidRegistration: If no login was started or its registration is gone
        """
        instance = self.persistent.get(INSTANCE_KEY)
        if not isinstance(instance, str) or not instance:
            raise InvalidRegistration("No login in progress: instance is unknown")

        cached = self.persistent.get(registration_key(instance))
        if cached is None:
            raise InvalidRegistration(f"No app registration found for {instance}")
        registration = ClientRegistration.from_dict(cached)

        verifier = self.ephemeral.get(VERIFIER_KEY)
        if not isinstance(verifier, str) or not verifier:
            verifier = None

        return AuthorizationRequest(
            instance=instance, registration=registration, verifier=verifier
        )

    async def complete_from_callback(self, landing_url: str) -> Session | None:
        """Finish a login from the URL the instance redirected back to.

        Safe to call on every page load: without a ``code`` parameter this
        returns None and does not touch either store.

        Args:
            landing_url: The full landing URL including its query string

        Returns:
            The new Session, or None if the URL carries no code

        Raises:
            InvalidRegistration: If there is no login to complete
            TokenExchangeFailed: If the instance did not issue a token
        """
        result = parse_callback_url(landing_url)
        if result.code is None:
            if result.error:
                logger.warning(
                    f"Authorization was not granted: {result.error} "
                    f"{result.error_description or ''}".rstrip()
                )
            return None

        # No authorization code lingers in the visible URL
        self.navigator.replace(strip_query(landing_url))

        self._transition(FlowState.EXCHANGING, "Exchanging code for access token...")
        try:
            request = self.load_authorization_request()
            access_token = await exchange_code_for_token(
                request.instance,
                request.registration.client_id,
                result.code,
                self.config,
                client_secret=request.registration.client_secret,
                code_verifier=request.verifier,
                http_client=self.http_client,
            )
        except OAuthFlowError as e:
            self._transition(FlowState.ERROR, f"Login failed: {e}")
            raise

        created_at = datetime.now(timezone.utc)
        self.persistent.set(ACCESS_TOKEN_KEY, access_token)
        self.persistent.set(CURRENT_INSTANCE_KEY, request.instance)
        self.persistent.set(SESSION_CREATED_KEY, created_at.isoformat())
        self.ephemeral.remove(VERIFIER_KEY)

        self._transition(FlowState.LOGGED_IN, f"Logged in to {request.instance}")
        return Session(
            instance_url=request.instance, access_token=access_token, created_at=created_at
        )

    def get_access_token(self) -> str | None:
        token = self.persistent.get(ACCESS_TOKEN_KEY)
        return token if isinstance(token, str) and token else None

    def get_current_instance(self) -> str | None:
        instance = self.persistent.get(CURRENT_INSTANCE_KEY)
        return instance if isinstance(instance, str) and instance else None

    def is_logged_in(self) -> bool:
        return self.get_access_token() is not None

    def get_session(self) -> Session | None:
        """Get the current session, or None when logged out."""
        access_token = self.get_access_token()
        instance = self.get_current_instance()
        if access_token is None or instance is None:
            return None

        return Session(
            instance_url=instance,
            access_token=access_token,
            created_at=parse_timestamp(self.persistent.get(SESSION_CREATED_KEY)),
        )

    def get_auth_status(self) -> AuthStatus:
        """Summarize login state for display. Contains no secrets."""
        session = self.get_session()
        started = self.persistent.get(INSTANCE_KEY)
        pkce_pending = self.ephemeral.get(VERIFIER_KEY) is not None

        # A pending non-PKCE login leaves no ephemeral trace, so it only shows
        # when it targets another instance than the current session
        pending_instance = None
        if isinstance(started, str) and started:
            if pkce_pending or (session is not None and started != session.instance_url):
                pending_instance = started

        status = AuthStatus(
            logged_in=session is not None,
            instance=session.instance_url if session else None,
            pending_instance=pending_instance,
            pkce_pending=pkce_pending,
        )
        if session is not None and session.created_at is not None:
            status.logged_in_at = session.created_at.isoformat()
            status.logged_in_ago_human = _format_time_ago(session.created_at)
        return status

    def logout(self) -> None:
        """Delete the session and any leftover verifier.

        Cached registrations are kept so the next login skips registration.
        """
        self.persistent.remove(ACCESS_TOKEN_KEY)
        self.persistent.remove(CURRENT_INSTANCE_KEY)
        self.persistent.remove(SESSION_CREATED_KEY)
        self.ephemeral.remove(VERIFIER_KEY)
        self._transition(FlowState.LOGGED_OUT, "Logged out")


def get_oauth_manager(config: Config, **kwargs: Any) -> OAuthManager:
    """Build a manager over the default on-disk stores.

    Args:
        config: Loaded configuration (data_dir selects the persistent store)
        **kwargs: Passed through to OAuthManager (navigator, on_status, ...)

    Returns:
        OAuthManager instance
    """
    return OAuthManager(
        persistent=PersistentStore(config.data_dir),
        ephemeral=EphemeralStore(),
        config=config,
        **kwargs,
    )
