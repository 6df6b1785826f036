# kdf.py - Key derivation functions for the Double Ratchet
from typing import Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..utils.error_handler import InvalidParameterError

HASH_LEN = 32
KEY_LEN = 32
MAX_HKDF_BLOCKS = 255

ROOT_KEY_INFO = b"WhisperDoubleRatchetRootKey"
MESSAGE_KEYS_INFO = b"WhisperMessageKeys"

MESSAGE_KEY_CONSTANT = b"\x01"
CHAIN_KEY_CONSTANT = b"\x02"


def hmac_sha256(key: bytes, data: bytes) -> bytes:
    h = hmac.HMAC(bytes(key), hashes.SHA256())
    h.update(bytes(data))
    return h.finalize()


def hkdf(ikm: bytes, salt: Optional[bytes] = None, info: bytes = b"", length: int = KEY_LEN) -> bytes:
    """HKDF-SHA256 extract-and-expand.

    A missing salt is replaced by HASH_LEN zero bytes. Lengths that would
    need more than 255 expand blocks are rejected.
    """
    if not isinstance(length, int) or length <= 0:
        raise InvalidParameterError(f"HKDF length must be a positive integer, got {length!r}")
    if -(-length // HASH_LEN) > MAX_HKDF_BLOCKS:
        raise InvalidParameterError(
            f"HKDF output too long: {length} bytes exceeds {MAX_HKDF_BLOCKS * HASH_LEN}"
        )

    return HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=bytes(salt) if salt is not None else b"\x00" * HASH_LEN,
        info=bytes(info),
    ).derive(bytes(ikm))


def kdf_root_key(root_key: bytes, dh_output: bytes) -> Tuple[bytes, bytes]:
    """Mix a DH output into the root key. Returns (new_root_key, chain_key)."""
    output = hkdf(dh_output, salt=root_key, info=ROOT_KEY_INFO, length=2 * KEY_LEN)
    return output[:KEY_LEN], output[KEY_LEN:]


def kdf_chain_key(chain_key: bytes) -> Tuple[bytes, bytes]:
    """Advance a chain key one step. Returns (next_chain_key, message_key)."""
    if chain_key is None:
        raise InvalidParameterError("Chain key cannot be None")

    next_chain_key = hmac_sha256(chain_key, CHAIN_KEY_CONSTANT)
    message_key = hmac_sha256(chain_key, MESSAGE_KEY_CONSTANT)
    return next_chain_key, message_key


def derive_message_keys(message_key: bytes) -> Tuple[bytes, bytes, bytes]:
    """Expand a message key into (enc_key, auth_key, iv)."""
    output = hkdf(message_key, salt=b"\x00" * HASH_LEN, info=MESSAGE_KEYS_INFO, length=80)
    return output[:32], output[32:64], output[64:80]
