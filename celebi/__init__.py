"""Celebi - OAuth login and home timeline for Mastodon-compatible instances."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("celebi")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    # Core modules
    "Config",
    "load_config",
    "OAuthManager",
    "Session",
    "get_oauth_manager",
    "OutputHandler",
    # Timeline
    "Post",
    "fetch_home_timeline",
]

# Lazy imports to avoid circular dependencies
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("Config", "load_config"):
        from .config import Config, load_config
        return {"Config": Config, "load_config": load_config}[name]
    elif name in ("OAuthManager", "Session", "get_oauth_manager"):
        from .oauth import OAuthManager, Session, get_oauth_manager
        return {
            "OAuthManager": OAuthManager,
            "Session": Session,
            "get_oauth_manager": get_oauth_manager,
        }[name]
    elif name == "OutputHandler":
        from .output import OutputHandler
        return OutputHandler
    elif name in ("Post", "fetch_home_timeline"):
        from .timeline import Post, fetch_home_timeline
        return {"Post": Post, "fetch_home_timeline": fetch_home_timeline}[name]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
