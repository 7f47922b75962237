# session_codec.py - Encrypted pickles and session-key exports for outbound group sessions
import secrets
import struct

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..config import SessionConfig
from ..core.ratchet import Ratchet, RATCHET_LENGTH
from ..security.signing import (
    SigningKeypair, verify_signature, ED25519_PUBLIC_KEY_LENGTH,
    ED25519_PRIVATE_KEY_LENGTH, ED25519_SIGNATURE_LENGTH
)
from .encoding import b64, ub64, to_bytes
from .error_handler import (
    ErrorCode, ErrorHandler, GroupRatchetError, InvalidPassphrase, SessionKeyFormatError,
    UnpickleAuthenticationFailure, UnpickleFormatError, create_state_error
)
from .memory import erase_all

PICKLE_FORMAT_VERSION = 1
PICKLE_STATE_VERSION = 1
SALT_LENGTH = 16
IV_LENGTH = 16
PICKLE_MAC_LENGTH = 32

# version | ratchet | counter | public key | private seed
PICKLE_STATE_LENGTH = 4 + RATCHET_LENGTH + 4 + ED25519_PUBLIC_KEY_LENGTH + ED25519_PRIVATE_KEY_LENGTH

SESSION_KEY_VERSION = 2
SESSION_KEY_LENGTH = 1 + 4 + RATCHET_LENGTH + ED25519_PUBLIC_KEY_LENGTH + ED25519_SIGNATURE_LENGTH


class SessionKeyExport:
    """Forward-derivable state handed to recipients; carries no private key"""

    def __init__(self, message_index, chain, public_key):
        self.message_index = message_index
        self.chain = chain
        self.public_key = public_key

    def to_ratchet(self) -> Ratchet:
        return Ratchet.from_export(self.message_index, self.chain)

    def __repr__(self):
        return f"SessionKeyExport(index={self.message_index}, session_id={b64(self.public_key)})"


class SessionCodec:
    """Serializes ratchet and signing key state to and from opaque strings"""

    def __init__(self, config=None, error_handler=None):
        self.config = config or SessionConfig()
        self.error_handler = error_handler or ErrorHandler(enable_logging=False)

    def _passphrase_bytes(self, passphrase):
        try:
            self.error_handler.validate_parameter(
                "passphrase", passphrase, expected_type=(str, bytes, bytearray), min_length=1
            )
        except GroupRatchetError as e:
            raise InvalidPassphrase(e.message)
        return to_bytes(passphrase)

    def _derive_keys(self, passphrase: bytes, salt: bytes):
        """Derive (encryption key, MAC key) from the passphrase using PBKDF2"""
        try:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=64,
                salt=salt,
                iterations=self.config.pbkdf2_iterations,
            )
            derived = bytearray(kdf.derive(passphrase))
        except Exception as e:
            raise create_state_error(
                ErrorCode.STATE_SERIALIZATION_FAILED,
                f"Key derivation failed: {e}"
            )
        enc_key, mac_key = derived[:32], derived[32:]
        erase_all(derived)
        return enc_key, mac_key

    def _serialize_state(self, ratchet: Ratchet, signing_keypair: SigningKeypair) -> bytearray:
        state = bytearray(PICKLE_STATE_LENGTH)
        struct.pack_into(">I", state, 0, PICKLE_STATE_VERSION)
        pos = 4
        ratchet.write_chain(state, pos)
        pos += RATCHET_LENGTH
        struct.pack_into(">I", state, pos, ratchet.index)
        pos += 4
        state[pos:pos + ED25519_PUBLIC_KEY_LENGTH] = signing_keypair.public_key
        pos += ED25519_PUBLIC_KEY_LENGTH
        signing_keypair.write_seed(state, pos)
        return state

    def _deserialize_state(self, state: bytearray):
        if len(state) != PICKLE_STATE_LENGTH:
            raise UnpickleFormatError(
                f"Pickled state has wrong length {len(state)}",
                {'expected': PICKLE_STATE_LENGTH}
            )
        (version,) = struct.unpack_from(">I", state, 0)
        if version != PICKLE_STATE_VERSION:
            raise UnpickleFormatError(f"Unknown pickled state version: {version}")

        pos = 4
        chain = state[pos:pos + RATCHET_LENGTH]
        pos += RATCHET_LENGTH
        (counter,) = struct.unpack_from(">I", state, pos)
        pos += 4
        public_key = bytes(state[pos:pos + ED25519_PUBLIC_KEY_LENGTH])
        pos += ED25519_PUBLIC_KEY_LENGTH
        seed = state[pos:pos + ED25519_PRIVATE_KEY_LENGTH]

        try:
            ratchet = Ratchet(chain, counter, self.config.max_message_index)
            try:
                signing_keypair = SigningKeypair(seed, public_key)
            except ValueError:
                ratchet.erase()
                raise
        except ValueError as e:
            raise UnpickleFormatError(f"Pickled state is inconsistent: {e}")
        finally:
            erase_all(chain, seed)
        return ratchet, signing_keypair

    def pickle(self, ratchet: Ratchet, signing_keypair: SigningKeypair, passphrase) -> str:
        """
        Encrypt the full private state under ``passphrase``.

        Layout: version | salt | iv | AES-256-CBC ciphertext | HMAC-SHA256.
        """
        key = self._passphrase_bytes(passphrase)

        salt = secrets.token_bytes(SALT_LENGTH)
        iv = secrets.token_bytes(IV_LENGTH)
        enc_key, mac_key = self._derive_keys(key, salt)
        state = self._serialize_state(ratchet, signing_keypair)
        padded_state = bytearray()
        try:
            padder = padding.PKCS7(algorithms.AES.block_size).padder()
            padded_state = bytearray(padder.update(state) + padder.finalize())

            cipher = Cipher(algorithms.AES256(enc_key), modes.CBC(iv))
            encryptor = cipher.encryptor()
            ciphertext = encryptor.update(padded_state) + encryptor.finalize()

            header = bytes([PICKLE_FORMAT_VERSION]) + salt + iv
            h = hmac.HMAC(mac_key, hashes.SHA256())
            h.update(header + ciphertext)
            mac = h.finalize()
        finally:
            erase_all(enc_key, mac_key, state, padded_state)

        return b64(header + ciphertext + mac)

    def unpickle(self, blob, passphrase):
        """
        Returns (ratchet, signing_keypair).

        A structurally bad blob still costs one key derivation before the
        format error is raised, so both failure kinds take the same time.
        """
        key = self._passphrase_bytes(passphrase)

        format_problem = None
        try:
            raw = ub64(blob)
        except (ValueError, TypeError) as e:
            raw = b""
            format_problem = f"Pickle is not valid base64: {e}"

        min_length = 1 + SALT_LENGTH + IV_LENGTH + algorithms.AES.block_size // 8 + PICKLE_MAC_LENGTH
        if format_problem is None:
            if len(raw) < min_length:
                format_problem = f"Pickle too short: {len(raw)} bytes"
            elif raw[0] != PICKLE_FORMAT_VERSION:
                format_problem = f"Unknown pickle version: {raw[0]}"
            elif (len(raw) - (1 + SALT_LENGTH + IV_LENGTH + PICKLE_MAC_LENGTH)) % (algorithms.AES.block_size // 8):
                format_problem = "Pickle ciphertext is not block aligned"

        if format_problem is not None:
            enc_key, mac_key = self._derive_keys(key, b"\x00" * SALT_LENGTH)
            erase_all(enc_key, mac_key)
            raise UnpickleFormatError(format_problem)

        salt = raw[1:1 + SALT_LENGTH]
        iv = raw[1 + SALT_LENGTH:1 + SALT_LENGTH + IV_LENGTH]
        ciphertext = raw[1 + SALT_LENGTH + IV_LENGTH:-PICKLE_MAC_LENGTH]
        mac = raw[-PICKLE_MAC_LENGTH:]

        enc_key, mac_key = self._derive_keys(key, salt)
        state = bytearray()
        try:
            h = hmac.HMAC(mac_key, hashes.SHA256())
            h.update(raw[:-PICKLE_MAC_LENGTH])
            try:
                h.verify(mac)
            except InvalidSignature:
                raise UnpickleAuthenticationFailure(
                    "Pickle MAC verification failed (wrong passphrase or corrupted data)"
                )

            cipher = Cipher(algorithms.AES256(enc_key), modes.CBC(iv))
            decryptor = cipher.decryptor()
            padded_state = bytearray(decryptor.update(ciphertext) + decryptor.finalize())
            try:
                unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
                state = bytearray(unpadder.update(padded_state) + unpadder.finalize())
            except ValueError:
                raise UnpickleFormatError("Pickle padding is invalid")
            finally:
                erase_all(padded_state)

            return self._deserialize_state(state)
        finally:
            erase_all(enc_key, mac_key, state)

    def export_session_key(self, ratchet: Ratchet, signing_keypair: SigningKeypair) -> str:
        """
        Unencrypted export: version | index | chain | public key | signature.

        Confidentiality is the transport's job.
        """
        raw = bytearray(SESSION_KEY_LENGTH)
        raw[0] = SESSION_KEY_VERSION
        struct.pack_into(">I", raw, 1, ratchet.index)
        ratchet.write_chain(raw, 5)
        pos = 5 + RATCHET_LENGTH
        raw[pos:pos + ED25519_PUBLIC_KEY_LENGTH] = signing_keypair.public_key
        body = raw[:-ED25519_SIGNATURE_LENGTH]
        try:
            raw[-ED25519_SIGNATURE_LENGTH:] = signing_keypair.sign(body)
            return b64(raw)
        finally:
            erase_all(raw, body)

    def import_session_key(self, session_key) -> SessionKeyExport:
        """Parse and verify a session key string"""
        try:
            raw = ub64(session_key)
        except (ValueError, TypeError) as e:
            raise SessionKeyFormatError(f"Session key is not valid base64: {e}")
        if len(raw) != SESSION_KEY_LENGTH:
            raise SessionKeyFormatError(
                f"Session key has wrong length {len(raw)}",
                {'expected': SESSION_KEY_LENGTH}
            )
        if raw[0] != SESSION_KEY_VERSION:
            raise SessionKeyFormatError(f"Unknown session key version: {raw[0]}")

        body = raw[:-ED25519_SIGNATURE_LENGTH]
        signature = raw[-ED25519_SIGNATURE_LENGTH:]
        (index,) = struct.unpack_from(">I", raw, 1)
        chain = raw[5:5 + RATCHET_LENGTH]
        public_key = raw[5 + RATCHET_LENGTH:5 + RATCHET_LENGTH + ED25519_PUBLIC_KEY_LENGTH]

        if not verify_signature(public_key, signature, body):
            raise SessionKeyFormatError("Session key signature is invalid")
        return SessionKeyExport(index, chain, public_key)
