"""Home timeline fetching for a logged-in session.

This is the consumer side of the session contract: it only needs the
instance and the access token.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from .oauth.instance import instance_url
from .oauth.tokens import Session

logger = logging.getLogger(__name__)

HOME_TIMELINE_PATH = "/api/v1/timelines/home"

DEFAULT_TIMEOUT = 30.0


class TimelineError(Exception):
    """The instance did not return a timeline."""

    pass


@dataclass
class Post:
    """A status reduced to what a timeline view shows."""

    id: str
    author: str
    username: str
    avatar: str | None
    content: str
    created_at: str | None
    media_attachments: list[dict[str, Any]] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_status(cls, status: dict[str, Any], instance: str) -> "Post":
        """Map a Mastodon status object to a Post.

        Raises:
            TimelineError: If the status has no account
        """
        if not isinstance(status, dict):
            raise TimelineError("Status is not a JSON object")

        account = status.get("account")
        if not isinstance(account, dict):
            raise TimelineError(f"Status {status.get('id')} has no account")

        username = account.get("username", "")
        return cls(
            id=str(status.get("id", "")),
            author=account.get("display_name") or username,
            username=f"@{username}@{instance}",
            avatar=account.get("avatar"),
            content=status.get("content", ""),
            created_at=status.get("created_at"),
            media_attachments=status.get("media_attachments") or [],
            raw=status,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "author": self.author,
            "username": self.username,
            "avatar": self.avatar,
            "content": self.content,
            "created_at": self.created_at,
            "media_attachments": self.media_attachments,
        }


async def fetch_home_timeline(
    session: Session,
    limit: int = 10,
    max_id: str | None = None,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> list[Post]:
    """Fetch the session user's home timeline.

    Args:
        session: The logged-in session
        limit: Maximum number of statuses
        max_id: Return statuses older than this id (for paging)
        http_client: Optional HTTP client
        timeout: Request timeout in seconds

    Returns:
        Posts, newest first

    Raises:
        TimelineError: On network failure, a non-2xx status or bad JSON
    """
    params: dict[str, str] = {"limit": str(limit)}
    if max_id:
        params["max_id"] = max_id

    url = instance_url(session.instance_url, HOME_TIMELINE_PATH)

    client = http_client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
    should_close = http_client is None

    try:
        response = await client.get(
            url,
            params=params,
            headers={"Authorization": session.auth_header(), "Accept": "application/json"},
        )

        if not response.is_success:
            raise TimelineError(
                f"Failed to fetch timeline: {response.status_code} {response.reason_phrase}"
            )

        try:
            statuses = response.json()
        except ValueError as e:
            raise TimelineError(f"Timeline response was not valid JSON: {e}") from e

        if not isinstance(statuses, list):
            raise TimelineError("Timeline response was not a list of statuses")

        logger.debug(f"Fetched {len(statuses)} statuses from {session.instance_url}")
        return [Post.from_status(status, session.instance_url) for status in statuses]

    except httpx.RequestError as e:
        raise TimelineError(f"Network error fetching timeline: {e}") from e
    finally:
        if should_close:
            await client.aclose()
