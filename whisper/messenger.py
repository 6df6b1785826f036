# messenger.py - Load, mutate and persist sessions around each send and receive
import json
import logging
from typing import Any, Callable, Dict, NamedTuple, Optional, Union

from .core.double_ratchet import DoubleRatchetSession
from .core.session_state import PendingAgreement
from .security.envelope import EnvelopeHandler, InitialKeys
from .security.profile import IdentityProfile, LocalIdentity
from .security.x3dh import (
    initiator_key_agreement, key_confirmation, responder_key_agreement, verify_key_confirmation
)
from .utils.config import WhisperConfig
from .utils.error_handler import (
    ErrorCode, ErrorHandler, MalformedEnvelope, PreconditionViolation, ProfileError,
    SignatureVerificationFailed, WhisperError
)
from .utils.state_manager import SessionStore

logger = logging.getLogger('whisper.messenger')

ProfileResolver = Callable[[str], Optional[Dict[str, Any]]]


class ReceivedMessage(NamedTuple):
    sender: str
    plaintext: bytes
    timestamp: int

    @property
    def text(self) -> str:
        return self.plaintext.decode('utf-8')


def associated_data(sender: str, recipient: str) -> bytes:
    """Binds both identity names into every message MAC."""
    return json.dumps([sender, recipient], separators=(',', ':')).encode('utf-8')


class Messenger:
    """
    Send and receive for one local identity.

    Every operation holds the store lock for the peer pair from load to save,
    and the stored session is only replaced after the ratchet step succeeded.
    Profiles are looked up through resolve_profile, which returns the
    resolved JSON document for a name (or None when the name is unknown).
    """

    def __init__(self, identity: LocalIdentity, store: SessionStore,
                 resolve_profile: ProfileResolver,
                 config: Optional[WhisperConfig] = None,
                 error_handler: Optional[ErrorHandler] = None):
        self.identity = identity
        self.store = store
        self.resolve_profile = resolve_profile
        self.config = config or WhisperConfig()
        self.error_handler = error_handler or store.error_handler
        self.envelope_handler = EnvelopeHandler()

    def _profile(self, name: str) -> IdentityProfile:
        try:
            document = self.resolve_profile(name)
        except LookupError:
            document = None
        if document is None:
            raise ProfileError(f"No profile found for {name}", ErrorCode.PROFILE_NOT_FOUND)
        return IdentityProfile.from_document(name, document)

    def _open_session(self, peer: str) -> Optional[DoubleRatchetSession]:
        state = self.store.load(self.identity.name, peer)
        if state is None:
            return None
        return DoubleRatchetSession.from_state(state, max_skip=self.config.max_skip)

    def send(self, recipient: str, plaintext: Union[str, bytes]) -> Dict[str, Any]:
        """Encrypt plaintext for recipient and return the signed envelope."""
        try:
            if self.identity.ed25519_private_key is None:
                raise PreconditionViolation(f"Identity {self.identity.name} has no Ed25519 signing key")
            profile = self._profile(recipient)

            with self.store.locked(self.identity.name, recipient):
                session = self._open_session(recipient)
                if session is None:
                    agreement = initiator_key_agreement(self.identity.x25519_key_pair, profile.x25519_public_key)
                    session = DoubleRatchetSession(
                        agreement.root_key, self.identity.x25519_key_pair, profile.x25519_public_key,
                        is_initiator=True, max_skip=self.config.max_skip
                    )
                    session.pending_agreement = PendingAgreement(
                        agreement.ephemeral_public_key, key_confirmation(agreement.root_key)
                    )
                    agreement.ephemeral_key_pair.wipe()
                    logger.info("Established session with %s", recipient)

                message = session.encrypt(plaintext, associated_data(self.identity.name, recipient))
                # Repeated on every envelope until the peer replies, so any of them can open the session
                initial = None
                if session.pending_agreement is not None:
                    initial = InitialKeys(session.pending_agreement.ephemeral_public_key,
                                          session.pending_agreement.key_confirmation)
                self.store.save(self.identity.name, recipient, session.to_state(),
                                max_skipped_keys=self.config.max_skipped_keys)
        except WhisperError as e:
            self.error_handler.handle_error(e, f"send to {recipient}")
            raise

        envelope = self.envelope_handler.create_envelope(
            self.identity.name, recipient, message, self.identity.ed25519_private_key, initial
        )
        logger.debug("Built envelope for %s at %d", recipient, envelope['timestamp'])
        return envelope

    def receive(self, envelope: Union[str, bytes, Dict[str, Any]]) -> ReceivedMessage:
        """Verify, decrypt and persist an incoming envelope."""
        sender = None
        try:
            if isinstance(envelope, (str, bytes)):
                envelope = self.envelope_handler.deserialize_envelope(envelope)
            else:
                self.envelope_handler.validate_envelope(envelope)

            sender = envelope['from']
            if envelope['to'] != self.identity.name:
                raise MalformedEnvelope(f"Envelope is addressed to {envelope['to']}, not {self.identity.name}")

            profile = self._profile(sender)
            if profile.ed25519_public_key is None:
                raise SignatureVerificationFailed(f"Profile for {sender} has no Ed25519 key")
            self.envelope_handler.verify_signature(envelope, profile.ed25519_public_key)
            message = self.envelope_handler.extract_message(envelope)

            with self.store.locked(self.identity.name, sender):
                session = self._open_session(sender)
                if session is None:
                    session = self._accept_session(sender, profile, envelope)

                plaintext = session.decrypt(
                    message.ciphertext, message.mac, message.header,
                    associated_data(sender, self.identity.name)
                )
                self.store.save(self.identity.name, sender, session.to_state(),
                                max_skipped_keys=self.config.max_skipped_keys)
        except WhisperError as e:
            if not isinstance(e, (ProfileError, MalformedEnvelope)):
                logger.warning("Rejected message from %s: %s", sender, e.error_code.value)
            self.error_handler.handle_error(e, f"receive from {sender}")
            raise

        return ReceivedMessage(sender, plaintext, envelope['timestamp'])

    def _accept_session(self, sender: str, profile: IdentityProfile,
                        envelope: Dict[str, Any]) -> DoubleRatchetSession:
        initial = self.envelope_handler.extract_initial_keys(envelope)
        if initial is None:
            raise PreconditionViolation(f"No session with {sender} and no initial key material in envelope")

        agreement = responder_key_agreement(
            self.identity.x25519_key_pair, profile.x25519_public_key, initial.ephemeral_public_key
        )
        verify_key_confirmation(agreement.root_key, initial.key_confirmation)
        logger.info("Accepted session from %s", sender)

        return DoubleRatchetSession(
            agreement.root_key, self.identity.x25519_key_pair, profile.x25519_public_key,
            is_initiator=False, max_skip=self.config.max_skip
        )

    def reset_session(self, peer: str) -> bool:
        """Forget the session with peer; the next send starts a new agreement."""
        return self.store.delete(self.identity.name, peer)
