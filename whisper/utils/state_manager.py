# state_manager.py - Session persistence: storage backends and the per-peer-pair session store
import json
import logging
import os
import secrets
import tempfile
import threading
import time
import weakref
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import WhisperConfig
from .encoding import b64u_decode, b64u_encode
from .error_handler import ErrorCode, ErrorHandler, StateCorruption, StateError
from ..core.session_state import SessionState

logger = logging.getLogger('whisper.store')

SEPARATOR = "__"


def peer_pair_key(local_identity: str, remote_identity: str) -> str:
    """Storage key for a pair of identities, independent of who initiated."""
    a, b = sorted([local_identity, remote_identity])
    return f"{a}{SEPARATOR}{b}"


class StorageBackend(ABC):
    """Byte-oriented key/value storage used by SessionStore."""

    @abstractmethod
    def get(self, key: bytes) -> Optional[bytes]:
        ...

    @abstractmethod
    def put(self, key: bytes, value: bytes) -> None:
        ...

    @abstractmethod
    def delete(self, key: bytes) -> bool:
        ...

    @abstractmethod
    def list(self) -> List[bytes]:
        ...


class MemoryBackend(StorageBackend):
    def __init__(self):
        self._data: Dict[bytes, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            return self._data.get(key)

    def put(self, key, value):
        with self._lock:
            self._data[key] = bytes(value)

    def delete(self, key):
        with self._lock:
            return self._data.pop(key, None) is not None

    def list(self):
        with self._lock:
            return sorted(self._data)


class FileBackend(StorageBackend):
    """One file per key; writes go through a temporary file and os.replace."""

    SUFFIX = ".json"

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: bytes) -> Path:
        return self.directory / f"{b64u_encode(key)}{self.SUFFIX}"

    def get(self, key):
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def put(self, key, value):
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=".tmp-")
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self._path(key))
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def delete(self, key):
        path = self._path(key)
        if path.exists():
            path.unlink()
            return True
        return False

    def list(self):
        keys = []
        for file in sorted(self.directory.glob(f"*{self.SUFFIX}")):
            try:
                keys.append(b64u_decode(file.name[:-len(self.SUFFIX)]))
            except ValueError:
                logger.warning("Ignoring unexpected file in session directory: %s", file.name)
        return keys


class EncryptedBackend(StorageBackend):
    """Encrypts values at rest with a password (PBKDF2-HMAC-SHA256 + AES-256-GCM)."""

    FORMAT_VERSION = "1.0"

    def __init__(self, inner: StorageBackend, password: str, iterations: int = 100000):
        self.inner = inner
        self._password = password.encode('utf-8')
        self.iterations = iterations

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(self._password)

    def get(self, key):
        data = self.inner.get(key)
        if data is None:
            return None
        try:
            package = json.loads(data)
            salt = b64u_decode(package['salt'])
            nonce = b64u_decode(package['nonce'])
            ciphertext = b64u_decode(package['ciphertext'])
        except (ValueError, KeyError, TypeError) as e:
            raise StateCorruption(f"Encrypted record is malformed: {e}", ErrorCode.STATE_DESERIALIZATION_FAILED)

        try:
            return AESGCM(self._derive_key(salt)).decrypt(nonce, ciphertext, key)
        except InvalidTag:
            raise StateCorruption(
                "Encrypted record could not be decrypted (wrong password or tampered data)",
                ErrorCode.STATE_DESERIALIZATION_FAILED
            )

    def put(self, key, value):
        salt = secrets.token_bytes(16)
        nonce = secrets.token_bytes(12)
        ciphertext = AESGCM(self._derive_key(salt)).encrypt(nonce, bytes(value), key)
        package = {
            'salt': b64u_encode(salt),
            'nonce': b64u_encode(nonce),
            'ciphertext': b64u_encode(ciphertext),
            'version': self.FORMAT_VERSION,
        }
        self.inner.put(key, json.dumps(package).encode('utf-8'))

    def delete(self, key):
        return self.inner.delete(key)

    def list(self):
        return self.inner.list()


class SessionStore:
    """
    Durable mapping from peer pair to SessionState.

    Callers that load, mutate and save a session must hold locked() for that
    pair for the whole sequence.
    """

    def __init__(self, backend: StorageBackend, max_skipped_keys: int = 100,
                 error_handler: Optional[ErrorHandler] = None):
        self.backend = backend
        self.max_skipped_keys = max_skipped_keys
        self.error_handler = error_handler or ErrorHandler()
        # Entries disappear once no caller holds the lock
        self._locks: "weakref.WeakValueDictionary[str, threading.RLock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    @classmethod
    def from_config(cls, config: WhisperConfig, password: Optional[str] = None,
                    error_handler: Optional[ErrorHandler] = None) -> "SessionStore":
        """File-backed store under config.state_dir, encrypted at rest when a password is given."""
        backend: StorageBackend = FileBackend(config.state_dir)
        if password is not None:
            backend = EncryptedBackend(backend, password, iterations=config.kdf_iterations)
        return cls(backend, max_skipped_keys=config.max_skipped_keys, error_handler=error_handler)

    def _lock_for(self, session_key: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(session_key)
            if lock is None:
                lock = threading.RLock()
                self._locks[session_key] = lock
            return lock

    @contextmanager
    def locked(self, local_identity: str, remote_identity: str) -> Iterator[str]:
        session_key = peer_pair_key(local_identity, remote_identity)
        with self._lock_for(session_key):
            yield session_key

    def load(self, local_identity: str, remote_identity: str) -> Optional[SessionState]:
        session_key = peer_pair_key(local_identity, remote_identity)
        data = self.backend.get(session_key.encode('utf-8'))
        if data is None:
            return None

        try:
            document = json.loads(data)
            if not isinstance(document, dict) or 'session' not in document:
                raise StateCorruption("Session record has no 'session' field")
            state = SessionState.from_dict(document['session'])
        except (ValueError, UnicodeDecodeError) as e:
            error = StateCorruption(f"Session record is not valid JSON: {e}",
                                    ErrorCode.STATE_DESERIALIZATION_FAILED)
            self.error_handler.handle_error(error, f"load session {session_key}")
            raise error
        except StateError as e:
            self.error_handler.handle_error(e, f"load session {session_key}")
            raise

        logger.info("Loaded session: %s <-> %s", local_identity, remote_identity)
        return state

    def save(self, local_identity: str, remote_identity: str, state: SessionState,
             max_skipped_keys: Optional[int] = None) -> SessionState:
        """Persist state after pruning skipped keys; returns what was stored."""
        session_key = peer_pair_key(local_identity, remote_identity)
        limit = self.max_skipped_keys if max_skipped_keys is None else max_skipped_keys
        state = self._prune(state, limit)

        document = {
            'localIdentity': local_identity,
            'remoteIdentity': remote_identity,
            'updatedAt': int(time.time() * 1000),
            'session': state.to_dict(),
        }
        self.backend.put(session_key.encode('utf-8'), json.dumps(document).encode('utf-8'))

        logger.info("Saved session: %s <-> %s", local_identity, remote_identity)
        return state

    def exists(self, local_identity: str, remote_identity: str) -> bool:
        return self.backend.get(peer_pair_key(local_identity, remote_identity).encode('utf-8')) is not None

    def delete(self, local_identity: str, remote_identity: str) -> bool:
        session_key = peer_pair_key(local_identity, remote_identity)
        with self._lock_for(session_key):
            deleted = self.backend.delete(session_key.encode('utf-8'))
        if deleted:
            logger.info("Deleted session: %s <-> %s", local_identity, remote_identity)
        return deleted

    def list_sessions(self) -> List[Dict[str, str]]:
        sessions = []
        for key in self.backend.list():
            session_key = key.decode('utf-8')
            first, _, second = session_key.partition(SEPARATOR)
            sessions.append({'sessionKey': session_key, 'identities': [first, second]})
        return sessions

    def cleanup_skipped_keys(self, local_identity: str, remote_identity: str,
                             max_skipped_keys: Optional[int] = None) -> int:
        """Drop the oldest skipped message keys beyond the cap. Returns how many were removed."""
        limit = self.max_skipped_keys if max_skipped_keys is None else max_skipped_keys
        with self.locked(local_identity, remote_identity):
            state = self.load(local_identity, remote_identity)
            if state is None:
                return 0
            removed = max(0, len(state.skipped_message_keys) - limit)
            if removed:
                self.save(local_identity, remote_identity, state, max_skipped_keys=limit)
                logger.info("Cleaned up %d old skipped keys", removed)
            return removed

    @staticmethod
    def _prune(state: SessionState, limit: int) -> SessionState:
        excess = len(state.skipped_message_keys) - limit
        if excess <= 0:
            return state
        kept = dict(list(state.skipped_message_keys.items())[excess:])
        logger.debug("Pruned %d skipped message keys", excess)
        return state.with_skipped_keys(kept)
