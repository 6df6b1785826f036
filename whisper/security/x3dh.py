# x3dh.py - Simplified X3DH initial key agreement
import hashlib
from typing import NamedTuple, Optional

from cryptography.hazmat.primitives import constant_time, hashes, hmac

from ..core.keys import KEY_SIZE, KeyPair
from ..core.session_state import CONFIRMATION_LEN
from ..utils.error_handler import KeyAgreementMismatch, validate_parameter

ROOT_KEY_LABEL = b"WhisperX3DHRootKey"
CONFIRMATION_LABEL = b"WhisperX3DHKeyConfirmation"

class InitiatorAgreement(NamedTuple):
    root_key: bytes
    ephemeral_key_pair: KeyPair
    ephemeral_public_key: bytes


class ResponderAgreement(NamedTuple):
    root_key: bytes


def _root_key(dh1: bytes, dh2: bytes) -> bytes:
    h = hashlib.sha256()
    h.update(dh1 + dh2)
    h.update(ROOT_KEY_LABEL)
    return h.digest()


def initiator_key_agreement(local_identity: KeyPair, remote_identity_public_key: bytes,
                            ephemeral_key_pair: Optional[KeyPair] = None) -> InitiatorAgreement:
    """
    Perform the initial agreement as the party sending first.

    DH1 = DH(IK_local, IK_remote)
    DH2 = DH(EK_local, IK_remote)
    """
    validate_parameter("remote_identity_public_key", remote_identity_public_key, bytes, exact_length=KEY_SIZE)
    ephemeral = ephemeral_key_pair or KeyPair.generate()

    dh1 = local_identity.exchange(remote_identity_public_key)
    dh2 = ephemeral.exchange(remote_identity_public_key)

    return InitiatorAgreement(_root_key(dh1, dh2), ephemeral, ephemeral.public_key)


def responder_key_agreement(local_identity: KeyPair, remote_identity_public_key: bytes,
                            remote_ephemeral_public_key: bytes) -> ResponderAgreement:
    """
    Perform the initial agreement as the receiving party.

    DH1 = DH(IK_local, IK_remote)
    DH2 = DH(IK_local, EK_remote), equal to the initiator's DH(EK, IK_local)
    """
    validate_parameter("remote_identity_public_key", remote_identity_public_key, bytes, exact_length=KEY_SIZE)
    validate_parameter("remote_ephemeral_public_key", remote_ephemeral_public_key, bytes, exact_length=KEY_SIZE)

    dh1 = local_identity.exchange(remote_identity_public_key)
    dh2 = local_identity.exchange(remote_ephemeral_public_key)

    return ResponderAgreement(_root_key(dh1, dh2))


def key_confirmation(root_key: bytes) -> bytes:
    """Short tag proving knowledge of the root key without revealing it."""
    h = hmac.HMAC(root_key, hashes.SHA256())
    h.update(CONFIRMATION_LABEL)
    return h.finalize()[:CONFIRMATION_LEN]


def verify_key_confirmation(root_key: bytes, confirmation: bytes):
    """Raise KeyAgreementMismatch unless the peer derived the same root key."""
    if not isinstance(confirmation, bytes) or not constant_time.bytes_eq(key_confirmation(root_key), confirmation):
        raise KeyAgreementMismatch(
            "Initiator and responder derived different root keys",
            details={'confirmation_length': len(confirmation) if isinstance(confirmation, bytes) else None}
        )
