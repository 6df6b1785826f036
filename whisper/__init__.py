# Whisper end-to-end encrypted messaging
"""
Double Ratchet messaging for asynchronous, end-to-end encrypted conversations.

The package provides:
- HKDF/HMAC key derivation and the symmetric and Diffie-Hellman ratchets
- A simplified X3DH initial key agreement with key confirmation
- Double Ratchet sessions with out-of-order delivery and skipped-key caching
- Versioned session persistence over pluggable storage backends
- Signed delivery envelopes and a Messenger that ties them together
"""

__version__ = "1.0.0"

from .core.double_ratchet import DoubleRatchetSession, EncryptedMessage, Header
from .core.keys import KeyPair
from .core.session_state import SessionState
from .messenger import Messenger, ReceivedMessage
from .security.envelope import EnvelopeHandler
from .security.profile import IdentityProfile, LocalIdentity
from .security.x3dh import initiator_key_agreement, responder_key_agreement
from .utils.config import WhisperConfig
from .utils.error_handler import ErrorHandler, WhisperError
from .utils.state_manager import FileBackend, MemoryBackend, SessionStore

__all__ = [
    'DoubleRatchetSession',
    'EncryptedMessage',
    'Header',
    'KeyPair',
    'SessionState',
    'Messenger',
    'ReceivedMessage',
    'EnvelopeHandler',
    'IdentityProfile',
    'LocalIdentity',
    'initiator_key_agreement',
    'responder_key_agreement',
    'WhisperConfig',
    'ErrorHandler',
    'WhisperError',
    'FileBackend',
    'MemoryBackend',
    'SessionStore',
]
