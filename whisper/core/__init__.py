# Core Double Ratchet Implementation Module
"""
Key derivation, ratchets and the Double Ratchet session state machine.
"""

from .dh_ratchet import DHRatchet
from .double_ratchet import DoubleRatchetSession, EncryptedMessage, Header
from .keys import KeyPair
from .session_state import SessionState
from .symmetric_ratchet import SymmetricRatchet

__all__ = ['DHRatchet', 'DoubleRatchetSession', 'EncryptedMessage', 'Header',
           'KeyPair', 'SessionState', 'SymmetricRatchet']
