"""Records exchanged between the login flow and the stores.

Server responses arrive as loosely shaped JSON. These dataclasses check the
fields the flow depends on (``client_id``, ``access_token``) up front and
fail with a typed error instead of passing ``None`` along.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .errors import InvalidRegistration


@dataclass
class ClientRegistration:
    """Client credentials issued by an instance's app registration endpoint.

    Mastodon returns a confidential client (id and secret) plus metadata such
    as ``name``, ``website`` and ``vapid_key``. The full response is kept in
    ``raw`` so it can be cached verbatim.
    """

    client_id: str
    client_secret: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def is_confidential(self) -> bool:
        """Check if this is a confidential client (has a secret)."""
        return bool(self.client_secret)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for storage, preferring the response as the server sent it."""
        if self.raw:
            return dict(self.raw)
        data: dict[str, Any] = {"client_id": self.client_id}
        if self.client_secret:
            data["client_secret"] = self.client_secret
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "ClientRegistration":
        """Build from a registration response or a cached copy of one.

        Raises:
            InvalidRegistration: If data is not a mapping with a non-empty client_id
        """
        if not isinstance(data, dict):
            raise InvalidRegistration("Client registration is not a JSON object")

        client_id = data.get("client_id")
        if not client_id or not isinstance(client_id, str):
            raise InvalidRegistration("Client registration is missing client_id")

        client_secret = data.get("client_secret")
        return cls(
            client_id=client_id,
            client_secret=client_secret if isinstance(client_secret, str) else None,
            raw=dict(data),
        )


@dataclass
class Session:
    """The durable result of a successful login.

    This is the only thing downstream API callers need: the instance to
    talk to and the bearer token to talk to it with.
    """

    instance_url: str
    access_token: str
    created_at: datetime | None = None

    def auth_header(self) -> str:
        """Authorization header value for REST calls to the instance."""
        return f"Bearer {self.access_token}"

    def to_dict(self) -> dict[str, Any]:
        return {"instanceURL": self.instance_url, "accessToken": self.access_token}


@dataclass
class AuthorizationRequest:
    """In-flight login state, reassembled on callback.

    Never stored as one record: the instance and registration come from the
    persistent store, the verifier from the ephemeral store, and the code
    from the landing URL. A missing verifier means the non-PKCE flow was used.
    """

    instance: str
    registration: ClientRegistration
    verifier: str | None = None

    @property
    def uses_pkce(self) -> bool:
        return self.verifier is not None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a stored ISO-8601 timestamp, treating naive values as UTC."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
