# conftest.py - Shared fixtures: fixed-seed keys, parties and in-memory stores
import pytest
from cryptography.hazmat.primitives.asymmetric import ed25519

from whisper.core.keys import KeyPair
from whisper.messenger import Messenger
from whisper.security.profile import LocalIdentity
from whisper.utils.config import WhisperConfig
from whisper.utils.encoding import b64u_encode
from whisper.utils.error_handler import ErrorHandler
from whisper.utils.state_manager import MemoryBackend, SessionStore

ROOT_KEY = b"\x01" * 32


def fixed_key_pair(seed: int) -> KeyPair:
    return KeyPair.from_private_bytes(bytes([seed]) * 32)


def fixed_identity(name: str, seed: int) -> LocalIdentity:
    signing_key = ed25519.Ed25519PrivateKey.from_private_bytes(bytes([seed + 100]) * 32)
    return LocalIdentity(name, fixed_key_pair(seed), signing_key)


def profile_document(identity: LocalIdentity) -> dict:
    return {
        "handle": identity.name,
        "pub": {
            "x25519_pk_b64u": b64u_encode(identity.x25519_key_pair.public_key),
            "ed25519_pk_b64u": b64u_encode(identity.ed25519_public_key),
        },
        "mailboxes": [{"url": f"https://mail.example/{identity.name}", "id": identity.name, "prio": 0}],
    }


@pytest.fixture
def root_key():
    return ROOT_KEY


@pytest.fixture
def alice_keys():
    return fixed_key_pair(1)


@pytest.fixture
def bob_keys():
    return fixed_key_pair(2)


@pytest.fixture
def error_handler():
    return ErrorHandler(enable_logging=False)


@pytest.fixture
def store(error_handler):
    return SessionStore(MemoryBackend(), error_handler=error_handler)


@pytest.fixture
def alice_identity():
    return fixed_identity("alice", 1)


@pytest.fixture
def bob_identity():
    return fixed_identity("bob", 2)


@pytest.fixture
def directory(alice_identity, bob_identity):
    return {
        "alice": profile_document(alice_identity),
        "bob": profile_document(bob_identity),
    }


@pytest.fixture
def config(tmp_path):
    return WhisperConfig(state_dir=tmp_path)


@pytest.fixture
def alice_messenger(alice_identity, directory, config, error_handler):
    store = SessionStore(MemoryBackend(), error_handler=error_handler)
    return Messenger(alice_identity, store, directory.get, config)


@pytest.fixture
def bob_messenger(bob_identity, directory, config, error_handler):
    store = SessionStore(MemoryBackend(), error_handler=error_handler)
    return Messenger(bob_identity, store, directory.get, config)


@pytest.fixture
def make_key_pair():
    return fixed_key_pair
