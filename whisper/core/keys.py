# keys.py - X25519 key pairs with raw-byte import/export
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import x25519

from ..utils.error_handler import CryptographicError, ErrorCode

KEY_SIZE = 32


def public_bytes(public_key: x25519.X25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def load_public_key(raw: bytes) -> x25519.X25519PublicKey:
    if not isinstance(raw, (bytes, bytearray)) or len(raw) != KEY_SIZE:
        raise CryptographicError(
            f"X25519 public key must be {KEY_SIZE} bytes",
            ErrorCode.KEY_INVALID
        )
    return x25519.X25519PublicKey.from_public_bytes(bytes(raw))


def fingerprint(raw: Optional[bytes]) -> str:
    """Short hex tag of a public key for log lines."""
    return bytes(raw[:6]).hex() if raw else "-"


class KeyPair:
    """An X25519 key pair.

    The secret is held in a mutable buffer so that wipe() can zero it once
    the pair has been superseded by a ratchet step.
    """

    def __init__(self, secret_key: bytes):
        if len(secret_key) != KEY_SIZE:
            raise CryptographicError(
                f"X25519 secret key must be {KEY_SIZE} bytes",
                ErrorCode.KEY_INVALID
            )
        self._secret = bytearray(secret_key)
        self._wiped = False
        self.public_key = public_bytes(self._private_key().public_key())

    @classmethod
    def generate(cls) -> "KeyPair":
        sk = x25519.X25519PrivateKey.generate()
        return cls(sk.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption()
        ))

    @classmethod
    def from_private_bytes(cls, secret_key: bytes) -> "KeyPair":
        return cls(secret_key)

    @property
    def secret_key(self) -> bytes:
        if self.wiped:
            raise CryptographicError("Key pair has been wiped", ErrorCode.KEY_INVALID)
        return bytes(self._secret)

    @property
    def wiped(self) -> bool:
        return self._wiped

    def _private_key(self) -> x25519.X25519PrivateKey:
        return x25519.X25519PrivateKey.from_private_bytes(self.secret_key)

    def exchange(self, remote_public_key: bytes) -> bytes:
        """ECDH between this secret and a raw remote public key."""
        try:
            return self._private_key().exchange(load_public_key(remote_public_key))
        except ValueError as e:
            raise CryptographicError(f"DH exchange failed: {e}", ErrorCode.DH_EXCHANGE_FAILED)

    def copy(self) -> "KeyPair":
        return KeyPair(self.secret_key)

    def wipe(self):
        for i in range(len(self._secret)):
            self._secret[i] = 0
        self._wiped = True

    def __eq__(self, other):
        if not isinstance(other, KeyPair):
            return NotImplemented
        return self.public_key == other.public_key and self._secret == other._secret

    def __repr__(self):
        return f"KeyPair(public={fingerprint(self.public_key)}...)"
