# symmetric_ratchet.py - Per-direction chain key ratchet
from typing import Tuple

from .kdf import KEY_LEN, kdf_chain_key
from ..utils.error_handler import validate_parameter


class SymmetricRatchet:
    """
    Chain key ratchet for one direction of a session.

    Every call to ratchet_forward() replaces the chain key with its one-way
    successor and hands out a single-use message key. Message numbers start
    at 0 and grow by one per call.
    """

    def __init__(self, chain_key: bytes, message_number: int = 0):
        validate_parameter("chain_key", chain_key, bytes, exact_length=KEY_LEN)
        validate_parameter("message_number", message_number, int, min_value=0)
        self.chain_key = chain_key
        self.message_number = message_number

    def ratchet_forward(self) -> Tuple[bytes, int]:
        """Returns (message_key, message_number) with the pre-increment number."""
        self.chain_key, message_key = kdf_chain_key(self.chain_key)
        message_number = self.message_number
        self.message_number += 1
        return message_key, message_number

    def copy(self) -> "SymmetricRatchet":
        return SymmetricRatchet(self.chain_key, self.message_number)

    def __eq__(self, other):
        if not isinstance(other, SymmetricRatchet):
            return NotImplemented
        return (self.chain_key, self.message_number) == (other.chain_key, other.message_number)
