# outbound_session.py - Sending side of a group ratchet session
"""
An outbound group session owns one Ratchet and one Ed25519 signing keypair.

Each encrypt uses the keys of the current message index and then advances
the ratchet, so the first message carries index 0 and ``message_index()``
always names the index the next message will use.
"""

import dataclasses
import secrets
import threading

from ..config import SessionConfig
from ..security.signing import SigningKeypair
from ..utils.encoding import b64
from ..utils.error_handler import ErrorHandler, GroupRatchetError, UseAfterRelease
from ..utils.session_codec import SessionCodec
from .message_cipher import MessageCipher
from .ratchet import Ratchet


class OutboundGroupSession:
    """Outbound group session; one instance per group, never shared"""

    def __init__(self, config=None, error_handler=None):
        self._setup(config, error_handler)
        self._init_outbound_group_session()

    def _setup(self, config, error_handler):
        self.config = config or SessionConfig()
        self.error_handler = error_handler or ErrorHandler()
        self._lock = threading.RLock()
        self._codec = SessionCodec(self.config, self.error_handler)
        self._cipher = MessageCipher(self.config.max_plaintext_length, self.error_handler)
        self._ratchet = None
        self._signing_keypair = None

    def _init_outbound_group_session(self):
        ratchet = None
        try:
            ratchet = Ratchet.create(self.config.max_message_index)
            signing_keypair = SigningKeypair.generate()
        except GroupRatchetError as e:
            if ratchet is not None:
                ratchet.erase()
            self.error_handler.handle_error(
                e, "init_outbound_group_session",
                recovery_action=self.error_handler.create_recovery_suggestion(e)
            )
            raise
        self._ratchet = ratchet
        self._signing_keypair = signing_keypair
        self.error_handler.logger.debug(f"Created outbound group session {self.session_identifier()}")

    @classmethod
    def from_state(cls, ratchet, signing_keypair, config=None, error_handler=None):
        """Build a session around existing state (used by unpickle and tests)"""
        session = cls.__new__(cls)
        session._setup(config, error_handler)
        session._ratchet = ratchet
        session._signing_keypair = signing_keypair
        return session

    def _check_live(self, operation):
        if self._ratchet is None:
            raise UseAfterRelease(f"{operation}() called on a released session")

    def _run(self, operation, func, *args):
        """Run ``func`` under the session lock, logging failures before re-raising"""
        with self._lock:
            try:
                self._check_live(operation)
                return func(*args)
            except GroupRatchetError as e:
                self.error_handler.handle_error(
                    e, operation,
                    recovery_action=self.error_handler.create_recovery_suggestion(e)
                )
                raise

    def session_identifier(self) -> str:
        """Base64 of the public signing key; stable for the session's lifetime"""
        return self._run('session_identifier', lambda: b64(self._signing_keypair.public_key))

    def message_index(self) -> int:
        """Index the next encrypted message will carry"""
        return self._run('message_index', lambda: self._ratchet.index)

    def session_key(self) -> str:
        """Export letting recipients decrypt from the current index onwards"""
        return self._run(
            'session_key',
            lambda: self._codec.export_session_key(self._ratchet, self._signing_keypair)
        )

    def _encrypt(self, plaintext):
        envelope = self._cipher.encrypt(self._ratchet, plaintext, self._signing_keypair)
        self._ratchet.advance()
        return envelope

    def encrypt_envelope(self, plaintext):
        """Encrypt and return the parsed MessageEnvelope"""
        return self._run('encrypt', self._encrypt, plaintext)

    def encrypt_message(self, plaintext) -> str:
        """Encrypt and return the base64 envelope string"""
        return self.encrypt_envelope(plaintext).serialize()

    def pickle(self, passphrase) -> str:
        """Encrypt the full private state under ``passphrase``"""
        return self._run(
            'pickle',
            lambda: self._codec.pickle(self._ratchet, self._signing_keypair, passphrase)
        )

    @classmethod
    def unpickle(cls, blob, passphrase, config=None, error_handler=None):
        """Restore a session from :meth:`pickle` output"""
        config = config or SessionConfig()
        error_handler = error_handler or ErrorHandler()
        try:
            ratchet, signing_keypair = SessionCodec(config, error_handler).unpickle(blob, passphrase)
        except GroupRatchetError as e:
            error_handler.handle_error(
                e, "unpickle",
                recovery_action=error_handler.create_recovery_suggestion(e)
            )
            raise
        session = cls.from_state(ratchet, signing_keypair, config, error_handler)
        error_handler.logger.debug(
            f"Unpickled outbound group session {session.session_identifier()} at index {ratchet.index}"
        )
        return session

    def release_session(self):
        """Erase all secret state. Safe to call more than once."""
        with self._lock:
            if self._ratchet is None:
                return
            session_id = b64(self._signing_keypair.public_key)
            self._ratchet.erase()
            self._signing_keypair.erase()
            self._ratchet = None
            self._signing_keypair = None
        self.error_handler.logger.debug(f"Released outbound group session {session_id}")

    def is_released(self) -> bool:
        return self._ratchet is None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release_session()
        return False

    def __getstate__(self):
        """Native pickle support: state is encrypted under a fresh random key"""
        key = b64(secrets.token_bytes(32))
        return {
            'key': key,
            'pickle': self.pickle(key),
            'config': dataclasses.asdict(self.config),
        }

    def __setstate__(self, state):
        self._setup(SessionConfig(**state['config']), None)
        self._ratchet, self._signing_keypair = self._codec.unpickle(state['pickle'], state['key'])

    def __repr__(self):
        if self.is_released():
            return "OutboundGroupSession(released)"
        return f"OutboundGroupSession(index={self._ratchet.index})"


# Functional contract for binding layers

def create(config=None, error_handler=None) -> OutboundGroupSession:
    return OutboundGroupSession(config, error_handler)


def release(session: OutboundGroupSession) -> None:
    session.release_session()


def session_id(session: OutboundGroupSession) -> str:
    return session.session_identifier()


def message_index(session: OutboundGroupSession) -> int:
    return session.message_index()


def session_key(session: OutboundGroupSession) -> str:
    return session.session_key()


def encrypt(session: OutboundGroupSession, plaintext) -> str:
    return session.encrypt_message(plaintext)


def pickle(session: OutboundGroupSession, passphrase) -> str:
    return session.pickle(passphrase)


def unpickle(blob, passphrase, config=None, error_handler=None) -> OutboundGroupSession:
    return OutboundGroupSession.unpickle(blob, passphrase, config, error_handler)
