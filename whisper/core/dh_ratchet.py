# dh_ratchet.py - Diffie-Hellman ratchet: key pair rotation and root key updates
import logging
from typing import NamedTuple, Optional

from .kdf import KEY_LEN, kdf_root_key
from .keys import KEY_SIZE, KeyPair, fingerprint
from ..utils.error_handler import PreconditionViolation, validate_parameter

logger = logging.getLogger('whisper.ratchet')


class SendStep(NamedTuple):
    root_key: bytes
    chain_key: bytes
    public_key: bytes


class DHRatchet:
    """
    Owns the root key, the current local key pair and the last seen remote
    public key. The key pair passed in is owned by the ratchet from then on.
    """

    def __init__(self, root_key: bytes, local_key_pair: Optional[KeyPair] = None,
                 remote_public_key: Optional[bytes] = None):
        validate_parameter("root_key", root_key, bytes, exact_length=KEY_LEN)
        if remote_public_key is not None:
            validate_parameter("remote_public_key", remote_public_key, bytes, exact_length=KEY_SIZE)

        self.root_key = root_key
        self.local_key_pair = local_key_pair or KeyPair.generate()
        self.remote_public_key = remote_public_key

    @property
    def has_remote_key(self) -> bool:
        return self.remote_public_key is not None

    def ratchet_receive(self, new_remote_public_key: bytes) -> bytes:
        """Absorb a new remote public key. Returns the receiving chain key."""
        validate_parameter("new_remote_public_key", new_remote_public_key, bytes, exact_length=KEY_SIZE)

        dh_output = self.local_key_pair.exchange(new_remote_public_key)
        self.remote_public_key = new_remote_public_key
        self.root_key, chain_key = kdf_root_key(self.root_key, dh_output)

        logger.debug("DH ratchet receive: remote=%s", fingerprint(new_remote_public_key))
        return chain_key

    def ratchet_send(self) -> SendStep:
        """Rotate the local key pair against the known remote key."""
        if self.remote_public_key is None:
            raise PreconditionViolation("Cannot ratchet send without remote public key")

        new_key_pair = KeyPair.generate()
        dh_output = new_key_pair.exchange(self.remote_public_key)

        self.local_key_pair.wipe()
        self.local_key_pair = new_key_pair
        self.root_key, chain_key = kdf_root_key(self.root_key, dh_output)

        logger.debug("DH ratchet send: local=%s", fingerprint(new_key_pair.public_key))
        return SendStep(self.root_key, chain_key, new_key_pair.public_key)
