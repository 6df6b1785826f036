# envelope.py - Signed delivery envelope around a Double Ratchet message
import json
import time
from typing import Any, Dict, NamedTuple, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ed25519

from ..core.double_ratchet import EncryptedMessage, Header
from ..utils.encoding import b64u_decode, b64u_encode
from ..utils.error_handler import (
    MalformedEnvelope, SignatureVerificationFailed
)


class InitialKeys(NamedTuple):
    """First-contact material the responder needs to run its key agreement."""
    ephemeral_public_key: bytes
    key_confirmation: bytes


def _compact_json(obj) -> bytes:
    return json.dumps(obj, separators=(',', ':'), ensure_ascii=False).encode('utf-8')


class EnvelopeHandler:
    ENVELOPE_VERSION = 2
    REQUIRED_FIELDS = ('version', 'from', 'to', 'timestamp', 'ratchet', 'signature')

    def __init__(self):
        self._last_timestamp = 0

    def _next_timestamp(self) -> int:
        # Milliseconds, strictly increasing for envelopes built by this handler
        now = int(time.time() * 1000)
        self._last_timestamp = max(now, self._last_timestamp + 1)
        return self._last_timestamp

    @staticmethod
    def signing_payload(envelope: Dict[str, Any]) -> bytes:
        return _compact_json({
            'from': envelope['from'],
            'to': envelope['to'],
            'timestamp': envelope['timestamp'],
            'ratchet_header': envelope['ratchet']['header'],
        })

    def create_envelope(self, sender: str, recipient: str, message: EncryptedMessage,
                        signing_key: ed25519.Ed25519PrivateKey,
                        initial: Optional[InitialKeys] = None) -> Dict[str, Any]:
        envelope = {
            'version': self.ENVELOPE_VERSION,
            'from': sender,
            'to': recipient,
            'timestamp': self._next_timestamp(),
            'ratchet': {
                'ciphertext': b64u_encode(message.ciphertext),
                'mac': b64u_encode(message.mac),
                'header': message.header.serialize(),
            },
        }

        if initial is not None:
            envelope['initialEphemeralKey'] = b64u_encode(initial.ephemeral_public_key)
            envelope['keyConfirmation'] = b64u_encode(initial.key_confirmation)

        envelope['signature'] = b64u_encode(signing_key.sign(self.signing_payload(envelope)))
        return envelope

    def validate_envelope(self, envelope: Dict[str, Any]):
        """Check envelope structure; raises MalformedEnvelope."""
        if not isinstance(envelope, dict):
            raise MalformedEnvelope("Envelope must be a JSON object")

        for field in self.REQUIRED_FIELDS:
            if field not in envelope:
                raise MalformedEnvelope(f"Missing required field: {field}")

        if envelope['version'] != self.ENVELOPE_VERSION:
            raise MalformedEnvelope(f"Unsupported envelope version: {envelope['version']}")
        if not isinstance(envelope['from'], str) or not isinstance(envelope['to'], str):
            raise MalformedEnvelope("Sender and recipient must be strings")
        if not isinstance(envelope['timestamp'], int) or isinstance(envelope['timestamp'], bool):
            raise MalformedEnvelope("Timestamp must be an integer")

        ratchet = envelope['ratchet']
        if not isinstance(ratchet, dict) or not all(k in ratchet for k in ('ciphertext', 'mac', 'header')):
            raise MalformedEnvelope("Ratchet section must hold ciphertext, mac and header")

    def verify_signature(self, envelope: Dict[str, Any], ed25519_public_key: bytes):
        try:
            signature = b64u_decode(envelope['signature'])
            public_key = ed25519.Ed25519PublicKey.from_public_bytes(ed25519_public_key)
            public_key.verify(signature, self.signing_payload(envelope))
        except (InvalidSignature, ValueError) as e:
            raise SignatureVerificationFailed(
                f"Invalid envelope signature from {envelope.get('from')}",
                details={'reason': str(e) or type(e).__name__}
            )

    def extract_message(self, envelope: Dict[str, Any]) -> EncryptedMessage:
        ratchet = envelope['ratchet']
        try:
            ciphertext = b64u_decode(ratchet['ciphertext'])
            mac = b64u_decode(ratchet['mac'])
        except ValueError as e:
            raise MalformedEnvelope(f"Ciphertext or mac is not valid base64url: {e}")
        header = Header.deserialize(ratchet['header'])
        return EncryptedMessage(ciphertext, mac, header)

    def extract_initial_keys(self, envelope: Dict[str, Any]) -> Optional[InitialKeys]:
        if 'initialEphemeralKey' not in envelope:
            return None
        try:
            ephemeral = b64u_decode(envelope['initialEphemeralKey'])
            confirmation = b64u_decode(envelope.get('keyConfirmation', ''))
        except ValueError as e:
            raise MalformedEnvelope(f"Initial key material is not valid base64url: {e}")
        if len(ephemeral) != 32:
            raise MalformedEnvelope("initialEphemeralKey must be 32 bytes")
        return InitialKeys(ephemeral, confirmation)

    def serialize_envelope(self, envelope: Dict[str, Any]) -> str:
        """Serialize envelope to JSON for the delivery layer"""
        return json.dumps(envelope)

    def deserialize_envelope(self, envelope_json) -> Dict[str, Any]:
        try:
            envelope = json.loads(envelope_json)
        except (json.JSONDecodeError, TypeError) as e:
            raise MalformedEnvelope(f"Invalid JSON envelope: {e}")
        self.validate_envelope(envelope)
        return envelope
