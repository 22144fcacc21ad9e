"""Key/value stores that carry login state across the browser round-trip.

Two stores with different lifetimes:

- PersistentStore: survives restarts. Holds the instance, the cached client
  registrations and the session. Encrypted at rest with Fernet, the key kept
  in the OS keyring (Keychain, libsecret, DPAPI) when one is available.
- EphemeralStore: lives in a per-user temp directory under a name scoped to the
  current terminal session. Holds only the PKCE verifier between the
  redirect and the callback.

Both return None from get() for missing and for unreadable entries alike.
"""

import base64
import hashlib
import json
import logging
import os
import stat
import sys
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

import keyring
from cryptography.fernet import Fernet, InvalidToken

from ..config import DEFAULT_DATA_DIR
from ..platform import get_ephemeral_store_path

logger = logging.getLogger(__name__)

# File locking support
if sys.platform != "win32":
    import fcntl

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Unix implementation using fcntl)."""
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r") as lock_file:
            try:
                fcntl.flock(
                    lock_file.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
                )
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
else:
    import msvcrt

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Windows implementation using msvcrt).

        msvcrt has no shared locks, so readers lock exclusively too.
        """
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r+") as lock_file:
            try:
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
                yield
            finally:
                try:
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass


KEYRING_SERVICE = "celebi"
KEYRING_USERNAME = "store-encryption-key"

PERSISTENT_FILE = "store.json"


class StoreError(Exception):
    """Error reading or writing a store file."""

    pass


class KeyValueStore(ABC):
    """Minimal key/value interface shared by both stores.

    Values are JSON-serializable data. A missing or corrupt entry reads as
    None, and callers never need to tell the two apart.
    """

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the value for key, or None if absent or unreadable."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Store value under key, replacing any previous value."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Delete key. Removing a missing key is a no-op."""


class MemoryStore(KeyValueStore):
    """In-process store, used for tests and embedding.

    Values are round-tripped through JSON on write so that callers see the
    same copies-not-references semantics as the file-backed stores.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class FileStore(KeyValueStore):
    """JSON document on disk with file locking and owner-only permissions.

    The whole store is one JSON object; every write rewrites the file under
    an exclusive lock. When a cipher is given the document is Fernet
    encrypted.
    """

    def __init__(self, path: Path, cipher: Fernet | None = None):
        """Initialize a file store.

        Args:
            path: Location of the backing file (parent is created)
            cipher: Optional Fernet cipher for encryption at rest
        """
        self.path = path
        self._cipher = cipher
        self._init_storage()

    def _init_storage(self) -> None:
        """Create the parent directory with owner-only permissions."""
        parent = self.path.parent
        if parent.exists():
            return
        parent.mkdir(parents=True, exist_ok=True)
        try:
            parent.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

    def _encode(self, data: str) -> str:
        if self._cipher is None:
            return data
        return self._cipher.encrypt(data.encode("utf-8")).decode("ascii")

    def _decode(self, data: str) -> str:
        if self._cipher is None:
            return data
        try:
            return self._cipher.decrypt(data.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError) as e:
            raise StoreError(
                f"Cannot decrypt {self.path}. The encryption key may have changed."
            ) from e

    def _read(self) -> dict[str, Any]:
        """Read the whole document.

        Raises:
            StoreError: If the file cannot be decrypted or is not a JSON object
        """
        if not self.path.exists():
            return {}

        try:
            with _file_lock(self.path, exclusive=False):
                raw = self.path.read_text(encoding="utf-8")
            data = json.loads(self._decode(raw))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StoreError(f"Store file {self.path} is corrupted") from e

        if not isinstance(data, dict):
            raise StoreError(f"Store file {self.path} does not hold a JSON object")
        return data

    def _read_or_empty(self) -> dict[str, Any]:
        try:
            return self._read()
        except StoreError as e:
            logger.warning(f"{e}; treating store as empty")
            return {}

    def _write(self, data: dict[str, Any]) -> None:
        """Replace the document with a freshly created owner-only file.

        The new content goes to a temporary file in the same directory that
        is renamed over the target, so a symlink at the target is replaced
        rather than followed.
        """
        encoded = self._encode(json.dumps(data, indent=2))

        with _file_lock(self.path, exclusive=True):
            # mkstemp creates the file 0600 with O_EXCL
            fd, tmp_path = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(encoded)
                os.replace(tmp_path, self.path)
            finally:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)

    def get(self, key: str) -> Any | None:
        return self._read_or_empty().get(key)

    def set(self, key: str, value: Any) -> None:
        data = self._read_or_empty()
        data[key] = value
        self._write(data)
        logger.debug(f"Stored {key} in {self.path.name}")

    def remove(self, key: str) -> None:
        data = self._read_or_empty()
        if key not in data:
            return
        del data[key]
        self._write(data)
        logger.debug(f"Removed {key} from {self.path.name}")

    def keys(self) -> list[str]:
        return list(self._read_or_empty())

    def clear(self) -> None:
        """Delete the backing file and its lock file."""
        for path in (self.path, self.path.with_suffix(self.path.suffix + ".lock")):
            if path.exists():
                path.unlink()


def _derive_fallback_key() -> bytes:
    """Derive an encryption key from machine-specific data.

    Used when no keyring backend is available. Weaker than a keyring-held
    key, but the store is still encrypted at rest.

    Returns:
        URL-safe base64 encoded 32-byte key suitable for Fernet
    """
    components = []

    machine_id_path = Path("/etc/machine-id")
    if machine_id_path.exists():
        components.append(machine_id_path.read_text().strip())

    components.append(str(Path.home()))
    components.append(os.environ.get("USER", os.environ.get("USERNAME", "celebi")))

    key_bytes = hashlib.sha256(":".join(components).encode()).digest()
    return base64.urlsafe_b64encode(key_bytes)


def load_cipher() -> tuple[Fernet, bool]:
    """Build the Fernet cipher for the persistent store.

    Returns:
        (cipher, using_keyring)
    """
    try:
        key = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)

        if key is None:
            key = Fernet.generate_key().decode("ascii")
            keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
            logger.debug("Generated new encryption key in keyring")

        return Fernet(key.encode("ascii")), True

    except Exception as e:
        # Any keyring backend failure (no backend, locked, DBus missing) lands here
        logger.warning(
            f"Keyring not available: {type(e).__name__}: {e}. "
            f"Using fallback encryption (machine-derived key)."
        )
        return Fernet(_derive_fallback_key()), False


class PersistentStore(FileStore):
    """Encrypted store that survives restarts.

    Source of truth for whether the user is logged in.
    """

    def __init__(self, data_dir: Path | None = None, cipher: Fernet | None = None):
        """Initialize the persistent store.

        Args:
            data_dir: Directory for the store file (default ~/.local/share/celebi)
            cipher: Optional cipher; loaded from the keyring when omitted
        """
        self.data_dir = data_dir or DEFAULT_DATA_DIR
        self._using_keyring = False

        if cipher is None:
            cipher, self._using_keyring = load_cipher()

        super().__init__(self.data_dir / PERSISTENT_FILE, cipher=cipher)

    def is_using_keyring(self) -> bool:
        """Check if the encryption key comes from the OS keyring."""
        return self._using_keyring


class EphemeralStore(FileStore):
    """Store that lives only as long as the current terminal session.

    Exists solely to bridge the PKCE verifier across the redirect. The file
    sits in a per-user owner-only directory under the temp directory.
    """

    def __init__(self, path: Path | None = None):
        """Initialize the ephemeral store.

        Raises:
            StoreError: If the per-user temp directory is not safe to use
        """
        if path is None:
            try:
                path = get_ephemeral_store_path()
            except PermissionError as e:
                raise StoreError(f"Refusing to use session storage: {e}") from e
        super().__init__(path)
