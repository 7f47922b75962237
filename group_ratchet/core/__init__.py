# Core Ratchet Module
"""
Ratchet, per-message encryption, and the outbound session aggregate.
"""

from .ratchet import Ratchet
from .message_cipher import MessageCipher, MessageEnvelope
from .outbound_session import OutboundGroupSession

__all__ = ['Ratchet', 'MessageCipher', 'MessageEnvelope', 'OutboundGroupSession']
