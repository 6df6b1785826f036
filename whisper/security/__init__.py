# Security Module
"""
Initial key agreement, identity profiles and signed delivery envelopes.
"""

from .envelope import EnvelopeHandler, InitialKeys
from .profile import IdentityProfile, LocalIdentity
from .x3dh import initiator_key_agreement, responder_key_agreement

__all__ = ['EnvelopeHandler', 'InitialKeys', 'IdentityProfile', 'LocalIdentity',
           'initiator_key_agreement', 'responder_key_agreement']
