"""Protocol steps of the Mastodon OAuth authorization code flow.

This module holds the individual steps; OAuthManager strings them together:
1. Register the application with the instance (cached per instance)
2. Build the authorization URL (with an S256 challenge when supported)
3. Exchange the returned authorization code for an access token
"""

import logging
from typing import Any
from urllib.parse import urlencode

import httpx

from ..config import Config
from .errors import InvalidRegistration, RegistrationFailed, TokenExchangeFailed
from .instance import instance_url
from .pkce import PKCEChallenge
from .store import KeyValueStore
from .tokens import ClientRegistration

logger = logging.getLogger(__name__)

APPS_PATH = "/api/v1/apps"
AUTHORIZE_PATH = "/oauth/authorize"
TOKEN_PATH = "/oauth/token"


def registration_key(instance: str) -> str:
    """Persistent store key for an instance's cached registration."""
    return f"app_{instance}"


def _safe_error_detail(response: httpx.Response) -> str:
    """Extract only the OAuth error fields from a failed response.

    The raw body is never included: it may contain secrets.
    """
    try:
        error_data = response.json()
    except ValueError:
        return ""
    if not isinstance(error_data, dict) or "error" not in error_data:
        return ""
    detail = f": {error_data.get('error', '')}"
    if error_data.get("error_description"):
        detail += f" - {error_data['error_description']}"
    return detail


async def register_application(
    instance: str,
    config: Config,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Register this client with an instance (POST /api/v1/apps).

    Args:
        instance: Bare instance hostname
        config: Client identity (name, website, scopes, redirect URI)
        http_client: Optional HTTP client

    Returns:
        The registration response, verbatim

    Raises:
        RegistrationFailed: If the instance is unreachable or the response
            has no client_id
    """
    url = instance_url(instance, APPS_PATH)

    client = http_client or httpx.AsyncClient(
        timeout=config.http_timeout, follow_redirects=True
    )
    should_close = http_client is None

    try:
        response = await client.post(
            url,
            data={
                "client_name": config.client_name,
                "redirect_uris": config.redirect_uri,
                "scopes": config.scopes,
                "website": config.website,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        try:
            data = response.json()
        except ValueError:
            data = None

        if not isinstance(data, dict) or not data.get("client_id"):
            raise RegistrationFailed(
                f"App registration with {instance} failed "
                f"(HTTP {response.status_code}){_safe_error_detail(response)}"
            )

        logger.debug(f"Registered application with {instance}")
        return data

    except httpx.RequestError as e:
        raise RegistrationFailed(
            f"Network error registering application with {instance}: {e}"
        ) from e
    except httpx.InvalidURL as e:
        raise RegistrationFailed(f"Invalid instance {instance!r}: {e}") from e
    finally:
        if should_close:
            await client.aclose()


async def register_or_get_cached(
    instance: str,
    store: KeyValueStore,
    config: Config,
    http_client: httpx.AsyncClient | None = None,
) -> ClientRegistration:
    """Return the cached registration for an instance, registering if needed.

    A cached entry with a non-empty client_id is returned without any network
    call. A missing or malformed entry is replaced wholesale by a fresh
    registration. If registration fails, the store is left untouched.

    Args:
        instance: Bare instance hostname
        store: The persistent store
        config: Client identity
        http_client: Optional HTTP client

    Returns:
        ClientRegistration

    Raises:
        RegistrationFailed: If a fresh registration fails
    """
    key = registration_key(instance)
    cached = store.get(key)

    if cached is not None:
        try:
            registration = ClientRegistration.from_dict(cached)
            logger.debug(f"Using cached registration for {instance}")
            return registration
        except InvalidRegistration as e:
            logger.warning(f"Ignoring cached registration for {instance}: {e}")

    data = await register_application(instance, config, http_client)
    store.set(key, data)
    return ClientRegistration.from_dict(data)


def build_authorization_url(
    instance: str,
    registration: ClientRegistration,
    config: Config,
    pkce: PKCEChallenge | None = None,
    force_login: bool = False,
) -> tuple[str, str | None]:
    """Build the authorization URL for the browser redirect.

    Args:
        instance: Bare instance hostname
        registration: The client registration for this instance
        config: Scopes and redirect URI
        pkce: Challenge to include; None builds the non-PKCE URL
        force_login: Ask the instance to re-authenticate even with a live session

    Returns:
        (authorization URL, verifier to persist or None)

    Raises:
        InvalidRegistration: If the registration has no client_id
    """
    if not registration.client_id:
        raise InvalidRegistration("Cannot build authorization URL without client_id")

    params: dict[str, str] = {
        "client_id": registration.client_id,
        "response_type": "code",
        "scope": config.scopes,
        "redirect_uri": config.redirect_uri,
    }

    if pkce is not None:
        params["code_challenge"] = pkce.challenge
        params["code_challenge_method"] = pkce.method

    if force_login:
        params["force_login"] = "true"

    url = f"{instance_url(instance, AUTHORIZE_PATH)}?{urlencode(params)}"
    return url, pkce.verifier if pkce is not None else None


async def exchange_code_for_token(
    instance: str,
    client_id: str,
    code: str,
    config: Config,
    client_secret: str | None = None,
    code_verifier: str | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> str:
    """Exchange an authorization code for an access token.

    Makes exactly one request; there is no retry.

    Args:
        instance: Bare instance hostname
        client_id: The registered client id
        code: Authorization code from the callback
        config: Redirect URI (must match the authorization request)
        client_secret: Client secret, sent when present
        code_verifier: PKCE verifier, sent when the PKCE flow was used
        http_client: Optional HTTP client

    Returns:
        The access token

    Raises:
        TokenExchangeFailed: On network failure or a response without access_token
    """
    url = instance_url(instance, TOKEN_PATH)

    http = http_client or httpx.AsyncClient(
        timeout=config.http_timeout, follow_redirects=True
    )
    should_close = http_client is None

    token_request: dict[str, str] = {
        "client_id": client_id,
        "redirect_uri": config.redirect_uri,
        "grant_type": "authorization_code",
        "code": code,
    }
    if client_secret:
        token_request["client_secret"] = client_secret
    if code_verifier:
        token_request["code_verifier"] = code_verifier

    try:
        response = await http.post(
            url,
            data=token_request,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        try:
            token_data = response.json()
        except ValueError:
            token_data = None

        access_token = (
            token_data.get("access_token") if isinstance(token_data, dict) else None
        )
        if not access_token or not isinstance(access_token, str):
            raise TokenExchangeFailed(
                f"Failed to get access token from {instance} "
                f"(HTTP {response.status_code}){_safe_error_detail(response)}"
            )

        return access_token

    except httpx.RequestError as e:
        raise TokenExchangeFailed(f"Network error during token exchange: {e}") from e
    except httpx.InvalidURL as e:
        raise TokenExchangeFailed(f"Invalid instance {instance!r}: {e}") from e
    finally:
        if should_close:
            await http.aclose()
