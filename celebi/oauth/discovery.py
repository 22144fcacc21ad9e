"""Authorization server capability probing per RFC 8414.

Mastodon-compatible servers publish their OAuth metadata at
``/.well-known/oauth-authorization-server`` (Mastodon 4.3+). Older servers
and most forks do not, so the probe is conservative: anything other than a
clean 200 with S256 in ``code_challenge_methods_supported`` means "no PKCE".
"""

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from .instance import instance_url
from .pkce import CHALLENGE_METHOD

logger = logging.getLogger(__name__)

METADATA_PATH = "/.well-known/oauth-authorization-server"

DEFAULT_TIMEOUT = 30.0


def _http_status_hint(status_code: int) -> str:
    """Get a user-friendly hint for common HTTP status codes."""
    hints = {
        404: "Server does not publish OAuth metadata (older Mastodon or a fork)",
        410: "Server is gone",
        429: "Rate limited by the server",
        500: "Server error - the instance may be experiencing issues",
        502: "Bad gateway - there may be a proxy or network issue",
        503: "Service unavailable - the instance may be temporarily down",
    }
    return hints.get(status_code, "")


class DiscoveryError(Exception):
    """Error fetching or parsing authorization server metadata."""

    pass


@dataclass
class AuthServerMetadata:
    """The parts of RFC 8414 metadata this client looks at."""

    issuer: str | None = None
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    registration_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] = field(default_factory=list)

    def supports_pkce(self) -> bool:
        """Check if the server supports PKCE with S256."""
        return CHALLENGE_METHOD in self.code_challenge_methods_supported

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuthServerMetadata":
        """Create from the metadata JSON document.

        A missing or non-list ``code_challenge_methods_supported`` becomes an
        empty list. Unlike generic RFC 8414 defaults, absence here means no
        PKCE.

        Raises:
            DiscoveryError: If the document is not a JSON object
        """
        if not isinstance(data, dict):
            raise DiscoveryError(
                f"Metadata must be a JSON object, got {type(data).__name__}"
            )

        methods = data.get("code_challenge_methods_supported")
        if not isinstance(methods, list):
            methods = []

        return cls(
            issuer=data.get("issuer"),
            authorization_endpoint=data.get("authorization_endpoint"),
            token_endpoint=data.get("token_endpoint"),
            registration_endpoint=data.get("registration_endpoint"),
            scopes_supported=data.get("scopes_supported"),
            code_challenge_methods_supported=methods,
        )


async def fetch_auth_server_metadata(
    instance: str,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> AuthServerMetadata:
    """Fetch authorization server metadata from an instance.

    Args:
        instance: Bare instance hostname
        http_client: Optional HTTP client to use
        timeout: Request timeout in seconds

    Returns:
        AuthServerMetadata instance

    Raises:
        DiscoveryError: On network failure, a non-200 status or bad JSON
    """
    url = instance_url(instance, METADATA_PATH)

    client = http_client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
    should_close = http_client is None

    logger.debug(f"Fetching auth server metadata from {url}")

    try:
        response = await client.get(url)

        if response.status_code != 200:
            hint = _http_status_hint(response.status_code)
            error_msg = f"Failed to fetch metadata from {url}: HTTP {response.status_code}"
            if hint:
                error_msg += f". {hint}"
            raise DiscoveryError(error_msg)

        try:
            data = response.json()
        except (ValueError, TypeError) as e:
            raise DiscoveryError(f"Metadata response was not valid JSON: {e}") from e

        return AuthServerMetadata.from_dict(data)

    except httpx.TimeoutException as e:
        raise DiscoveryError(f"Timeout fetching metadata from {url}: {e}") from e
    except httpx.RequestError as e:
        raise DiscoveryError(f"Network error fetching metadata from {url}: {e}") from e
    except httpx.InvalidURL as e:
        raise DiscoveryError(f"Invalid metadata URL {url}: {e}") from e
    finally:
        if should_close:
            await client.aclose()


async def supports_pkce(
    instance: str,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> bool:
    """Check whether an instance accepts S256 PKCE.

    Never raises. A probe that fails for any reason reads as "not
    supported", so a transient network error downgrades this attempt to the
    non-PKCE flow.

    Args:
        instance: Bare instance hostname
        http_client: Optional HTTP client to use
        timeout: Request timeout in seconds

    Returns:
        True only if the metadata lists S256
    """
    if not instance:
        return False

    try:
        metadata = await fetch_auth_server_metadata(instance, http_client, timeout)
    except DiscoveryError as e:
        logger.debug(f"PKCE probe for {instance} failed, assuming no PKCE: {e}")
        return False

    result = metadata.supports_pkce()
    logger.debug(f"PKCE probe for {instance}: {result}")
    return result
