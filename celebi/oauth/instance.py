"""Canonicalization of user-supplied instance identifiers.

Users type their server in many shapes: ``https://mastodon.example/``,
``mastodon.example``, or a full handle like ``@alice@mastodon.example``.
Every one of them must end up as the same bare hostname, because that
hostname is the cache key for the client registration.
"""

import re

from .errors import InvalidInstance

_SCHEME_RE = re.compile(r"^https?://")
_TRAILING_SLASHES_RE = re.compile(r"/+$")
# Everything up to the last "@" of a handle like "@alice@mastodon.example"
_HANDLE_PREFIX_RE = re.compile(r"^.*@")


def _normalize_once(value: str) -> str:
    instance = _SCHEME_RE.sub("", value.strip())
    instance = _TRAILING_SLASHES_RE.sub("", instance)
    instance = _HANDLE_PREFIX_RE.sub("", instance)
    return instance.strip()


def normalize_instance(value: str | None) -> str:
    """Reduce a server identifier to a bare hostname.

    Steps, in order: strip a leading ``http://``/``https://``, strip trailing
    slashes, strip a leading ``@user@`` account-handle prefix, trim
    whitespace. Surrounding whitespace is also dropped up front so that
    ``" https://host/ "`` normalizes in one pass.

    The steps repeat until nothing changes, so stacked forms such as
    ``https://http://host`` or ``@alice@https://host/`` reduce fully and the
    result always normalizes to itself.

    Args:
        value: What the user typed

    Returns:
        The bare instance hostname

    Raises:
        InvalidInstance: If nothing is left after normalization
    """
    if not isinstance(value, str):
        raise InvalidInstance("Instance URL required")

    instance = value
    while True:
        reduced = _normalize_once(instance)
        if reduced == instance:
            break
        instance = reduced

    if not instance:
        raise InvalidInstance(f"Not a valid instance: {value!r}")

    return instance


def instance_url(instance: str, path: str = "") -> str:
    """Build an HTTPS URL on an instance.

    Args:
        instance: Bare instance hostname (already normalized)
        path: Absolute path such as ``/oauth/token``

    Returns:
        ``https://<instance><path>``
    """
    return f"https://{instance}{path}"
