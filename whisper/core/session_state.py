"""Versioned, validated snapshot of a Double Ratchet session.

Binary fields are serialised as lists of ints (byte arrays) rather than
Python bytes so the document stays portable between implementations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .kdf import KEY_LEN
from .keys import KEY_SIZE
from ..utils.error_handler import StateCorruption

STATE_VERSION = 1
CONFIRMATION_LEN = 16

SkippedKey = Tuple[bytes, int]


def _to_array(value: Optional[bytes]) -> Optional[List[int]]:
    return list(value) if value is not None else None


def _require(data: Dict[str, Any], name: str) -> Any:
    if not isinstance(data, dict):
        raise StateCorruption(f"Expected an object holding '{name}', got {type(data).__name__}")
    if name not in data:
        raise StateCorruption(f"Missing field '{name}'")
    return data[name]


def _bytes_field(data: Dict[str, Any], name: str, length: int, optional: bool = False) -> Optional[bytes]:
    value = _require(data, name)
    if value is None and optional:
        return None
    if (not isinstance(value, list) or len(value) != length
            or not all(isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in value)):
        raise StateCorruption(f"Field '{name}' must be an array of {length} bytes")
    return bytes(value)


def _int_field(data: Dict[str, Any], name: str) -> int:
    value = _require(data, name)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise StateCorruption(f"Field '{name}' must be a non-negative integer")
    return value


@dataclass(frozen=True)
class ChainState:
    chain_key: bytes
    message_number: int

    def to_dict(self) -> Dict[str, Any]:
        return {"chainKey": _to_array(self.chain_key), "messageNumber": self.message_number}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ChainState"]:
        if data is None:
            return None
        return cls(
            chain_key=_bytes_field(data, "chainKey", KEY_LEN),
            message_number=_int_field(data, "messageNumber"),
        )


@dataclass(frozen=True)
class DHRatchetState:
    root_key: bytes
    local_public_key: bytes
    local_secret_key: bytes
    remote_public_key: Optional[bytes]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rootKey": _to_array(self.root_key),
            "localKeyPair": {
                "publicKey": _to_array(self.local_public_key),
                "secretKey": _to_array(self.local_secret_key),
            },
            "remotePublicKey": _to_array(self.remote_public_key),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DHRatchetState":
        key_pair = _require(data, "localKeyPair")
        return cls(
            root_key=_bytes_field(data, "rootKey", KEY_LEN),
            local_public_key=_bytes_field(key_pair, "publicKey", KEY_SIZE),
            local_secret_key=_bytes_field(key_pair, "secretKey", KEY_SIZE),
            remote_public_key=_bytes_field(data, "remotePublicKey", KEY_SIZE, optional=True),
        )


@dataclass(frozen=True)
class PendingAgreement:
    """Initial key material an initiator resends until the peer first replies."""
    ephemeral_public_key: bytes
    key_confirmation: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ephemeralPublicKey": _to_array(self.ephemeral_public_key),
            "keyConfirmation": _to_array(self.key_confirmation),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["PendingAgreement"]:
        if data is None:
            return None
        return cls(
            ephemeral_public_key=_bytes_field(data, "ephemeralPublicKey", KEY_SIZE),
            key_confirmation=_bytes_field(data, "keyConfirmation", CONFIRMATION_LEN),
        )


@dataclass(frozen=True)
class SessionState:
    dh_ratchet: DHRatchetState
    sending_chain: Optional[ChainState]
    receiving_chain: Optional[ChainState]
    current_dh_public_key: Optional[bytes]
    previous_chain_length: int
    # Insertion order is age order; the store prunes from the front.
    skipped_message_keys: Dict[SkippedKey, bytes] = field(default_factory=dict)
    pending_agreement: Optional[PendingAgreement] = None
    version: int = STATE_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "dhRatchet": self.dh_ratchet.to_dict(),
            "sendingChain": self.sending_chain.to_dict() if self.sending_chain else None,
            "receivingChain": self.receiving_chain.to_dict() if self.receiving_chain else None,
            "currentDHPublicKey": _to_array(self.current_dh_public_key),
            "previousChainLength": self.previous_chain_length,
            "skippedMessageKeys": [
                {
                    "dhPublicKey": _to_array(dh_public_key),
                    "messageNumber": message_number,
                    "messageKey": _to_array(message_key),
                }
                for (dh_public_key, message_number), message_key in self.skipped_message_keys.items()
            ],
            "pendingAgreement": self.pending_agreement.to_dict() if self.pending_agreement else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionState":
        version = _require(data, "version")
        if isinstance(version, bool) or version != STATE_VERSION:
            raise StateCorruption(f"Unsupported session state version: {version!r}")

        entries = _require(data, "skippedMessageKeys")
        if not isinstance(entries, list):
            raise StateCorruption("Field 'skippedMessageKeys' must be an array")

        skipped: Dict[SkippedKey, bytes] = {}
        for entry in entries:
            key = (_bytes_field(entry, "dhPublicKey", KEY_SIZE), _int_field(entry, "messageNumber"))
            skipped[key] = _bytes_field(entry, "messageKey", KEY_LEN)

        return cls(
            dh_ratchet=DHRatchetState.from_dict(_require(data, "dhRatchet")),
            sending_chain=ChainState.from_dict(_require(data, "sendingChain")),
            receiving_chain=ChainState.from_dict(_require(data, "receivingChain")),
            current_dh_public_key=_bytes_field(data, "currentDHPublicKey", KEY_SIZE, optional=True),
            previous_chain_length=_int_field(data, "previousChainLength"),
            skipped_message_keys=skipped,
            # Absent in records written before the field existed
            pending_agreement=PendingAgreement.from_dict(data.get("pendingAgreement")),
            version=version,
        )

    def with_skipped_keys(self, skipped_message_keys: Dict[SkippedKey, bytes]) -> "SessionState":
        return SessionState(
            dh_ratchet=self.dh_ratchet,
            sending_chain=self.sending_chain,
            receiving_chain=self.receiving_chain,
            current_dh_public_key=self.current_dh_public_key,
            previous_chain_length=self.previous_chain_length,
            skipped_message_keys=skipped_message_keys,
            pending_agreement=self.pending_agreement,
            version=self.version,
        )
