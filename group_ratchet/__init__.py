# Group Ratchet
"""
Sending side of a group-messaging ratchet session.

One outbound session encrypts messages for every member of a group. The
session key export lets new members decrypt from the current index onward
without being able to read earlier messages, and the encrypted pickle lets
the sender suspend and resume the session under a passphrase.
"""

__version__ = "1.0.0"

from .config import SessionConfig
from .core.outbound_session import (
    OutboundGroupSession, create, release, session_id, message_index,
    session_key, encrypt, pickle, unpickle
)
from .core.ratchet import Ratchet
from .core.message_cipher import MessageCipher, MessageEnvelope
from .utils.session_codec import SessionCodec, SessionKeyExport
from .utils.error_handler import (
    ErrorHandler, ErrorCode, GroupRatchetError, InitializationFailure,
    SessionExhausted, InvalidPassphrase, UnpickleAuthenticationFailure,
    UnpickleFormatError, EncryptionInputTooLarge, UseAfterRelease,
    SessionKeyFormatError
)

__all__ = [
    'SessionConfig',
    'OutboundGroupSession',
    'create',
    'release',
    'session_id',
    'message_index',
    'session_key',
    'encrypt',
    'pickle',
    'unpickle',
    'Ratchet',
    'MessageCipher',
    'MessageEnvelope',
    'SessionCodec',
    'SessionKeyExport',
    'ErrorHandler',
    'ErrorCode',
    'GroupRatchetError',
    'InitializationFailure',
    'SessionExhausted',
    'InvalidPassphrase',
    'UnpickleAuthenticationFailure',
    'UnpickleFormatError',
    'EncryptionInputTooLarge',
    'UseAfterRelease',
    'SessionKeyFormatError',
]
