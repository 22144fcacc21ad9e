"""Configuration loading for Celebi.

Settings come from environment variables, optionally seeded from a .env
file. Every setting has a default, so an empty environment works.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from dotenv import load_dotenv

DEFAULT_CLIENT_NAME = "Celebi.social"
DEFAULT_WEBSITE = "http://localhost:8000"
DEFAULT_SCOPES = "read write follow push"
DEFAULT_REDIRECT_URI = "http://127.0.0.1:8765/callback"
DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "celebi"
DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_CALLBACK_TIMEOUT = 120

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".config" / "celebi" / ".env",
]


class ConfigError(Exception):
    """A setting has a value that cannot be used."""

    pass


def _strip_query(url: str) -> str:
    """Drop query string and fragment, like a page location minus its search."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


@dataclass
class Config:
    """Client identity and local settings used throughout the login flow.

    Attributes:
        client_name: Application name shown on the instance's consent screen
        website: Application website sent with app registration
        scopes: Space-separated scopes requested at registration and authorization
        redirect_uri: Where the instance sends the browser back to
        data_dir: Directory holding the persistent store
        http_timeout: Timeout in seconds for each request to an instance
        callback_timeout: Seconds `celebi login` waits for the browser to return
    """

    client_name: str = DEFAULT_CLIENT_NAME
    website: str = DEFAULT_WEBSITE
    scopes: str = DEFAULT_SCOPES
    redirect_uri: str = DEFAULT_REDIRECT_URI
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    callback_timeout: int = DEFAULT_CALLBACK_TIMEOUT
    env_path: Path | None = None

    def __post_init__(self) -> None:
        self.redirect_uri = _strip_query(self.redirect_uri)


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def _env_number(name: str, default: float, cast: type) -> float:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return cast(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e


def _env_redirect_uri() -> str:
    value = os.environ.get("CELEBI_REDIRECT_URI", DEFAULT_REDIRECT_URI)
    try:
        port = urlsplit(value).port
    except ValueError as e:
        raise ConfigError(f"CELEBI_REDIRECT_URI has an invalid port: {value!r}") from e
    # Port 0 would bind a random port that the registered URI does not name
    if port == 0:
        raise ConfigError(f"CELEBI_REDIRECT_URI must use a fixed port, got {value!r}")
    return value


def load_config(env_path: Path | None = None) -> Config:
    """Load configuration from the environment.

    Loads the .env file first (variables already set in the environment win),
    then reads the CELEBI_* variables.

    Args:
        env_path: Explicit path to a .env file (optional)

    Returns:
        Config object

    Raises:
        ConfigError: If a numeric setting is not a number, or the redirect
            URI has no usable port
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    data_dir = os.environ.get("CELEBI_DATA_DIR")

    return Config(
        client_name=os.environ.get("CELEBI_CLIENT_NAME", DEFAULT_CLIENT_NAME),
        website=os.environ.get("CELEBI_WEBSITE", DEFAULT_WEBSITE),
        scopes=os.environ.get("CELEBI_SCOPES", DEFAULT_SCOPES),
        redirect_uri=_env_redirect_uri(),
        data_dir=Path(data_dir).expanduser() if data_dir else DEFAULT_DATA_DIR,
        http_timeout=_env_number("CELEBI_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT, float),
        callback_timeout=int(
            _env_number("CELEBI_CALLBACK_TIMEOUT", DEFAULT_CALLBACK_TIMEOUT, int)
        ),
        env_path=env_file,
    )
