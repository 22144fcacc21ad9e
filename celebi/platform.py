"""Cross-platform helpers for session-scoped storage."""

import os
import stat
import sys
import tempfile
from pathlib import Path

# Platform detection
IS_WINDOWS = sys.platform == "win32"


def get_session_id() -> str:
    """Get a unique identifier for the current terminal session.

    The ephemeral store is scoped to this id, so a verifier written by one
    session is never visible to another.

    Priority order:
    1. CELEBI_SESSION_ID - explicit override for testing/advanced usage
    2. TERM_SESSION_ID - macOS Terminal.app
    3. WINDOWID - X11 terminals (Linux)
    4. WT_SESSION - Windows Terminal
    5. Parent PID - fallback (works everywhere)
    """
    return (
        os.environ.get("CELEBI_SESSION_ID")
        or os.environ.get("TERM_SESSION_ID")
        or os.environ.get("WINDOWID")
        or os.environ.get("WT_SESSION")
        or str(os.getppid())
    )


def ensure_private_dir(path: Path) -> Path:
    """Create path as an owner-only directory, or verify an existing one.

    On POSIX the directory must be a real directory (not a symlink) owned by
    the current user; group and other bits are cleared if present.

    Raises:
        PermissionError: If the path is a symlink, not a directory, or owned
            by someone else
    """
    try:
        path.mkdir(mode=stat.S_IRWXU)
    except FileExistsError:
        pass

    if IS_WINDOWS:
        return path

    st = os.lstat(path)
    if not stat.S_ISDIR(st.st_mode) or st.st_uid != os.getuid():
        raise PermissionError(f"{path} is not a directory owned by the current user")
    if stat.S_IMODE(st.st_mode) & (stat.S_IRWXG | stat.S_IRWXO):
        os.chmod(path, stat.S_IRWXU)
    return path


def get_ephemeral_dir() -> Path:
    """Get the per-user directory for session-scoped files.

    On Unix: /tmp/celebi-{uid}/
    On Windows: %TEMP%\\celebi-{username}\\
    """
    temp_dir = Path(tempfile.gettempdir())

    if IS_WINDOWS:
        username = os.environ.get("USERNAME", "user")
        return temp_dir / f"celebi-{username}"

    return temp_dir / f"celebi-{os.getuid()}"


def get_ephemeral_store_path() -> Path:
    """Get the path of the session-scoped ephemeral store file.

    The parent directory is created owner-only if needed.

    Raises:
        PermissionError: If the per-user directory is not safe to use
    """
    directory = ensure_private_dir(get_ephemeral_dir())
    return directory / f"session-{get_session_id()}.json"
