# conftest.py - Shared fixtures for group ratchet tests
import os
import sys

import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

# Make the package importable without installing it
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from group_ratchet import ErrorHandler, SessionConfig, OutboundGroupSession
from group_ratchet.core.message_cipher import MessageEnvelope, compute_mac, derive_message_keys
from group_ratchet.core.ratchet import Ratchet, RATCHET_LENGTH
from group_ratchet.security.signing import SigningKeypair
from group_ratchet.utils.session_codec import SessionCodec


@pytest.fixture
def fast_config():
    """Low PBKDF2 cost so pickling tests stay quick"""
    return SessionConfig(pbkdf2_iterations=1000)


@pytest.fixture
def quiet_handler():
    return ErrorHandler(enable_logging=False)


@pytest.fixture
def session(fast_config, quiet_handler):
    s = OutboundGroupSession(fast_config, quiet_handler)
    yield s
    s.release_session()


@pytest.fixture
def fixed_seed():
    return bytes(range(RATCHET_LENGTH))


@pytest.fixture
def fixed_signing_seed():
    return bytes([0x42] * 32)


@pytest.fixture
def make_fixed_session(fixed_seed, fixed_signing_seed, fast_config, quiet_handler):
    """Factory for sessions with identical injected initial state"""
    def _make():
        return OutboundGroupSession.from_state(
            Ratchet(fixed_seed, 0, fast_config.max_message_index),
            SigningKeypair(fixed_signing_seed),
            fast_config,
            quiet_handler,
        )
    return _make


def _inbound_decrypt(session_key, message):
    """Minimal receiving side: returns (plaintext, message_index)"""
    export = SessionCodec().import_session_key(session_key)
    envelope = MessageEnvelope.deserialize(message)
    if not envelope.verify(export.public_key):
        raise AssertionError("Envelope signature does not verify")

    ratchet = export.to_ratchet()
    ratchet.advance_to(envelope.message_index)
    aes_key, mac_key, iv = derive_message_keys(ratchet.data)
    if compute_mac(mac_key, envelope.body) != envelope.mac:
        raise AssertionError("Envelope MAC does not verify")

    decryptor = Cipher(algorithms.AES256(bytes(aes_key)), modes.CBC(bytes(iv))).decryptor()
    padded = decryptor.update(envelope.ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    return unpadder.update(padded) + unpadder.finalize(), envelope.message_index


@pytest.fixture
def inbound_decrypt():
    return _inbound_decrypt
