"""OAuth login against Mastodon-compatible instances.

Implements the authorization code flow with PKCE where the instance
supports it, dynamic client registration cached per instance, and a
session that survives the browser round-trip through two stores.

Main Components:
    OAuthManager: Drives the login and answers session queries
    PersistentStore / EphemeralStore: Where the flow keeps its state
    Session: The result of a successful login

Quick Start:
    from celebi.config import load_config
    from celebi.oauth import get_oauth_manager

    manager = get_oauth_manager(load_config())

    # Sends the browser to the instance
    await manager.start("mastodon.example")

    # In the invocation that receives the redirect
    session = await manager.complete_from_callback(landing_url)
"""

from .callback import (
    CallbackError,
    CallbackResult,
    CallbackTimeoutError,
    LocalhostCallbackServer,
    parse_callback_url,
    strip_query,
)
from .discovery import AuthServerMetadata, DiscoveryError, supports_pkce
from .errors import (
    InvalidInstance,
    InvalidRegistration,
    OAuthFlowError,
    RegistrationFailed,
    TokenExchangeFailed,
)
from .flow import (
    build_authorization_url,
    exchange_code_for_token,
    register_application,
    register_or_get_cached,
)
from .instance import normalize_instance
from .manager import (
    AuthorizationRedirect,
    AuthStatus,
    FlowState,
    Navigator,
    OAuthManager,
    get_oauth_manager,
)
from .pkce import PKCEChallenge, generate_code_challenge, generate_code_verifier, generate_pkce_challenge
from .store import EphemeralStore, KeyValueStore, MemoryStore, PersistentStore, StoreError
from .tokens import AuthorizationRequest, ClientRegistration, Session

__all__ = [
    # Manager (main entry point)
    "OAuthManager",
    "AuthStatus",
    "AuthorizationRedirect",
    "FlowState",
    "Navigator",
    "get_oauth_manager",
    # Flow steps
    "normalize_instance",
    "supports_pkce",
    "register_application",
    "register_or_get_cached",
    "build_authorization_url",
    "exchange_code_for_token",
    "AuthServerMetadata",
    # Errors
    "OAuthFlowError",
    "InvalidInstance",
    "InvalidRegistration",
    "RegistrationFailed",
    "TokenExchangeFailed",
    "DiscoveryError",
    # Records
    "ClientRegistration",
    "AuthorizationRequest",
    "Session",
    # Storage
    "KeyValueStore",
    "MemoryStore",
    "PersistentStore",
    "EphemeralStore",
    "StoreError",
    # PKCE
    "PKCEChallenge",
    "generate_code_verifier",
    "generate_code_challenge",
    "generate_pkce_challenge",
    # Callback
    "LocalhostCallbackServer",
    "CallbackResult",
    "CallbackError",
    "CallbackTimeoutError",
    "parse_callback_url",
    "strip_query",
]
