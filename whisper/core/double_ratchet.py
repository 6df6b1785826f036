# double_ratchet.py - Double Ratchet session: encrypt/decrypt state machine per peer pair
import json
import logging
from typing import Dict, NamedTuple, Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .dh_ratchet import DHRatchet
from .kdf import derive_message_keys
from .keys import KEY_SIZE, KeyPair, fingerprint
from .session_state import ChainState, DHRatchetState, PendingAgreement, SessionState, SkippedKey
from .symmetric_ratchet import SymmetricRatchet
from ..utils.encoding import b64u_decode, b64u_encode
from ..utils.error_handler import (
    AuthenticationFailure, CryptographicError, DecryptionFailure, DuplicateMessage,
    InvalidParameterError, MalformedHeader, SkippedKeyLimitExceeded, StateCorruption
)

MAX_SKIP = 1000

logger = logging.getLogger('whisper.session')


class Header:
    """Cleartext ratchet header, authenticated as associated data."""

    def __init__(self, dh_public_key: bytes, message_number: int, previous_chain_length: int):
        self.dh_public_key = dh_public_key
        self.message_number = message_number
        self.previous_chain_length = previous_chain_length

    def validate(self):
        if not isinstance(self.dh_public_key, bytes) or len(self.dh_public_key) != KEY_SIZE:
            raise MalformedHeader(f"dhPublicKey must be {KEY_SIZE} bytes")
        for name, value in (("messageNumber", self.message_number),
                            ("previousChainLength", self.previous_chain_length)):
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise MalformedHeader(f"{name} must be a non-negative integer, got {value!r}")

    def canonical_bytes(self) -> bytes:
        """Deterministic encoding bound into the MAC."""
        return json.dumps({
            'dhPublicKey': list(self.dh_public_key),
            'messageNumber': self.message_number,
            'previousChainLength': self.previous_chain_length,
        }, separators=(',', ':')).encode('utf-8')

    def serialize(self):
        return {
            'dhPublicKey': b64u_encode(self.dh_public_key),
            'messageNumber': self.message_number,
            'previousChainLength': self.previous_chain_length,
        }

    @staticmethod
    def deserialize(val) -> "Header":
        if not isinstance(val, dict):
            raise MalformedHeader("Header must be an object")
        try:
            dh = b64u_decode(val['dhPublicKey'])
            header = Header(dh, val['messageNumber'], val['previousChainLength'])
        except KeyError as e:
            raise MalformedHeader(f"Header missing field {e}")
        except ValueError as e:
            raise MalformedHeader(f"Header dhPublicKey is not valid base64url: {e}")
        header.validate()
        return header

    def __eq__(self, other):
        if not isinstance(other, Header):
            return NotImplemented
        return self.canonical_bytes() == other.canonical_bytes()

    def __repr__(self):
        return (f"Header(dh={fingerprint(self.dh_public_key)}, n={self.message_number}, "
                f"pn={self.previous_chain_length})")


class EncryptedMessage(NamedTuple):
    ciphertext: bytes
    mac: bytes
    header: Header


def _mac_input(associated_data: bytes, header: Header, ciphertext: bytes) -> bytes:
    return bytes(associated_data) + header.canonical_bytes() + ciphertext


def _seal(message_key: bytes, plaintext: bytes, header: Header, associated_data: bytes) -> Tuple[bytes, bytes]:
    enc_key, auth_key, iv = derive_message_keys(message_key)

    padder = padding.PKCS7(128).padder()
    padded_plaintext = padder.update(plaintext) + padder.finalize()

    encryptor = Cipher(algorithms.AES256(enc_key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded_plaintext) + encryptor.finalize()

    h = hmac.HMAC(auth_key, hashes.SHA256())
    h.update(_mac_input(associated_data, header, ciphertext))
    return ciphertext, h.finalize()


def _open(message_key: bytes, ciphertext: bytes, mac: bytes, header: Header, associated_data: bytes) -> bytes:
    enc_key, auth_key, iv = derive_message_keys(message_key)

    h = hmac.HMAC(auth_key, hashes.SHA256())
    h.update(_mac_input(associated_data, header, ciphertext))
    try:
        h.verify(mac)
    except InvalidSignature:
        raise AuthenticationFailure(
            "MAC verification failed",
            details={'message_number': header.message_number}
        )

    try:
        decryptor = Cipher(algorithms.AES256(enc_key), modes.CBC(iv)).decryptor()
        padded_plaintext = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        return unpadder.update(padded_plaintext) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionFailure(f"Ciphertext could not be decrypted: {e}")


class DoubleRatchetSession:
    """
    Double Ratchet state for one peer pair.

    The initiator performs a sending DH step at construction; the responder
    waits for the first incoming header. The local key pair passed in is
    copied into the DH ratchet, which wipes it once it is superseded.
    """

    def __init__(self, root_key: bytes, local_key_pair: KeyPair,
                 remote_public_key: Optional[bytes], is_initiator: bool,
                 max_skip: int = MAX_SKIP):
        self.dh_ratchet = DHRatchet(root_key, local_key_pair.copy(), remote_public_key)
        self.sending_chain: Optional[SymmetricRatchet] = None
        self.receiving_chain: Optional[SymmetricRatchet] = None
        self.current_dh_public_key: Optional[bytes] = None
        self.previous_chain_length = 0
        self.skipped_message_keys: Dict[SkippedKey, bytes] = {}
        self.max_skip = max_skip
        # Set by the initiator after key agreement; dropped once the peer replies
        self.pending_agreement: Optional[PendingAgreement] = None

        if is_initiator:
            self._start_sending_chain()

    def _start_sending_chain(self):
        step = self.dh_ratchet.ratchet_send()
        self.sending_chain = SymmetricRatchet(step.chain_key)
        self.current_dh_public_key = step.public_key

    def encrypt(self, plaintext: Union[bytes, str], associated_data: bytes = b"") -> EncryptedMessage:
        if isinstance(plaintext, str):
            plaintext = plaintext.encode('utf-8')
        if not isinstance(plaintext, (bytes, bytearray)):
            raise InvalidParameterError("plaintext must be bytes or str")

        if self.sending_chain is None:
            self._start_sending_chain()

        message_key, message_number = self.sending_chain.ratchet_forward()
        header = Header(self.current_dh_public_key, message_number, self.previous_chain_length)
        ciphertext, mac = _seal(message_key, bytes(plaintext), header, associated_data)

        logger.debug("Encrypted message %s", header)
        return EncryptedMessage(ciphertext, mac, header)

    def decrypt(self, ciphertext: bytes, mac: bytes, header: Header, associated_data: bytes = b"") -> bytes:
        if not isinstance(header, Header):
            raise MalformedHeader(f"Expected Header, got {type(header).__name__}")
        header.validate()
        if not isinstance(ciphertext, bytes) or not isinstance(mac, bytes):
            raise InvalidParameterError("ciphertext and mac must be bytes")

        skipped = (header.dh_public_key, header.message_number)
        if skipped in self.skipped_message_keys:
            plaintext = _open(self.skipped_message_keys[skipped], ciphertext, mac, header, associated_data)
            del self.skipped_message_keys[skipped]
            logger.debug("Decrypted skipped message %s", header)
            return plaintext

        checkpoint = self._checkpoint()
        try:
            message_key = self._next_receiving_key(header)
            plaintext = _open(message_key, ciphertext, mac, header, associated_data)
        except Exception:
            self._rollback(checkpoint)
            raise

        self.pending_agreement = None
        logger.debug("Decrypted message %s", header)
        return plaintext

    def _next_receiving_key(self, header: Header) -> bytes:
        needs_ratchet = (
            self.receiving_chain is None
            or self.dh_ratchet.remote_public_key is None
            or header.dh_public_key != self.dh_ratchet.remote_public_key
        )

        if needs_ratchet:
            if self.receiving_chain is not None:
                self._skip_message_keys(header.previous_chain_length)

            self.previous_chain_length = self.sending_chain.message_number if self.sending_chain else 0
            try:
                chain_key = self.dh_ratchet.ratchet_receive(header.dh_public_key)
            except CryptographicError as e:
                raise AuthenticationFailure(f"Header DH key rejected: {e.message}")
            self.receiving_chain = SymmetricRatchet(chain_key)
            self.sending_chain = None
            self.current_dh_public_key = self.dh_ratchet.local_key_pair.public_key

        if header.message_number < self.receiving_chain.message_number:
            raise DuplicateMessage(
                f"Message {header.message_number} was already consumed",
                details={'dh': fingerprint(header.dh_public_key)}
            )

        self._skip_message_keys(header.message_number)
        message_key, _ = self.receiving_chain.ratchet_forward()
        return message_key

    def _skip_message_keys(self, until: int):
        if self.receiving_chain is None:
            return
        if until - self.receiving_chain.message_number > self.max_skip:
            raise SkippedKeyLimitExceeded(
                f"Refusing to skip {until - self.receiving_chain.message_number} messages "
                f"(limit {self.max_skip})"
            )

        while self.receiving_chain.message_number < until:
            message_key, message_number = self.receiving_chain.ratchet_forward()
            self.skipped_message_keys[(self.dh_ratchet.remote_public_key, message_number)] = message_key

    def _checkpoint(self):
        return (
            self.dh_ratchet.root_key,
            self.dh_ratchet.remote_public_key,
            self.sending_chain.copy() if self.sending_chain else None,
            self.receiving_chain.copy() if self.receiving_chain else None,
            self.current_dh_public_key,
            self.previous_chain_length,
            dict(self.skipped_message_keys),
        )

    def _rollback(self, checkpoint):
        (self.dh_ratchet.root_key,
         self.dh_ratchet.remote_public_key,
         self.sending_chain,
         self.receiving_chain,
         self.current_dh_public_key,
         self.previous_chain_length,
         self.skipped_message_keys) = checkpoint

    def to_state(self) -> SessionState:
        dh = self.dh_ratchet
        return SessionState(
            dh_ratchet=DHRatchetState(
                root_key=dh.root_key,
                local_public_key=dh.local_key_pair.public_key,
                local_secret_key=dh.local_key_pair.secret_key,
                remote_public_key=dh.remote_public_key,
            ),
            sending_chain=_chain_state(self.sending_chain),
            receiving_chain=_chain_state(self.receiving_chain),
            current_dh_public_key=self.current_dh_public_key,
            previous_chain_length=self.previous_chain_length,
            skipped_message_keys=dict(self.skipped_message_keys),
            pending_agreement=self.pending_agreement,
        )

    @classmethod
    def from_state(cls, state: SessionState, max_skip: int = MAX_SKIP) -> "DoubleRatchetSession":
        session = cls.__new__(cls)
        key_pair = KeyPair.from_private_bytes(state.dh_ratchet.local_secret_key)
        if key_pair.public_key != state.dh_ratchet.local_public_key:
            raise StateCorruption("Stored local key pair is inconsistent")
        session.dh_ratchet = DHRatchet(
            state.dh_ratchet.root_key, key_pair, state.dh_ratchet.remote_public_key
        )
        session.sending_chain = _chain_from_state(state.sending_chain)
        session.receiving_chain = _chain_from_state(state.receiving_chain)
        session.current_dh_public_key = state.current_dh_public_key
        session.previous_chain_length = state.previous_chain_length
        session.skipped_message_keys = dict(state.skipped_message_keys)
        session.pending_agreement = state.pending_agreement
        session.max_skip = max_skip
        return session


def _chain_state(chain: Optional[SymmetricRatchet]) -> Optional[ChainState]:
    if chain is None:
        return None
    return ChainState(chain.chain_key, chain.message_number)


def _chain_from_state(state: Optional[ChainState]) -> Optional[SymmetricRatchet]:
    if state is None:
        return None
    return SymmetricRatchet(state.chain_key, state.message_number)
