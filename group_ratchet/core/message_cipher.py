# message_cipher.py - Per-message keys, encryption and envelope format
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives import hmac
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..config import MAX_PLAINTEXT_LENGTH
from ..security.signing import ED25519_SIGNATURE_LENGTH, verify_signature
from ..utils.encoding import TEXT_OR_BYTES, b64, ub64, to_bytes
from ..utils.error_handler import (
    ErrorCode, ErrorHandler, EncryptionInputTooLarge, GroupRatchetError, SessionExhausted,
    create_crypto_error, create_message_error
)
from ..utils.memory import erase_all
from .ratchet import RATCHET_LENGTH

MESSAGE_VERSION = 3
MAC_LENGTH = 8

# Protobuf-style field tags
INDEX_TAG = 0x08
CIPHERTEXT_TAG = 0x12

KEYS_INFO = b"MEGOLM_KEYS"
AES_KEY_LENGTH = 32
HMAC_KEY_LENGTH = 32
AES_IV_LENGTH = 16


def encode_varint(value: int) -> bytes:
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def decode_varint(buf: bytes, pos: int):
    """Returns (value, new_pos)"""
    value = 0
    shift = 0
    while True:
        if pos >= len(buf):
            raise ValueError("Truncated varint")
        byte = buf[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, pos
        shift += 7
        if shift > 63:
            raise ValueError("Varint too long")


def derive_message_keys(ratchet_data):
    """
    Split one HKDF-SHA256 expansion of the chain into (aes_key, mac_key, iv).

    All three are returned as bytearrays so callers can erase them.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=AES_KEY_LENGTH + HMAC_KEY_LENGTH + AES_IV_LENGTH,
        salt=None,
        info=KEYS_INFO,
    )
    hkdf_out = bytearray(hkdf.derive(ratchet_data))
    aes_key = hkdf_out[:AES_KEY_LENGTH]
    mac_key = hkdf_out[AES_KEY_LENGTH:AES_KEY_LENGTH + HMAC_KEY_LENGTH]
    iv = hkdf_out[AES_KEY_LENGTH + HMAC_KEY_LENGTH:]
    erase_all(hkdf_out)
    return aes_key, mac_key, iv


def compute_mac(mac_key, data: bytes) -> bytes:
    h = hmac.HMAC(mac_key, hashes.SHA256())
    h.update(data)
    return h.finalize()[:MAC_LENGTH]


class MessageEnvelope:
    """
    One encrypted group message.

    Wire layout: version | 0x08 varint(index) | 0x12 varint(len) ciphertext |
    MAC (8) | Ed25519 signature (64).
    """

    def __init__(self, message_index, ciphertext, mac, signature, version=MESSAGE_VERSION):
        self.version = version
        self.message_index = message_index
        self.ciphertext = ciphertext
        self.mac = mac
        self.signature = signature

    @staticmethod
    def encode_body(version, message_index, ciphertext) -> bytes:
        return (
            bytes([version])
            + bytes([INDEX_TAG]) + encode_varint(message_index)
            + bytes([CIPHERTEXT_TAG]) + encode_varint(len(ciphertext)) + ciphertext
        )

    @property
    def body(self) -> bytes:
        return self.encode_body(self.version, self.message_index, self.ciphertext)

    @property
    def signed_part(self) -> bytes:
        return self.body + self.mac

    def to_bytes(self) -> bytes:
        return self.signed_part + self.signature

    def serialize(self) -> str:
        return b64(self.to_bytes())

    @classmethod
    def from_bytes(cls, raw: bytes):
        trailer = MAC_LENGTH + ED25519_SIGNATURE_LENGTH
        if len(raw) < 1 + trailer:
            raise create_message_error(ErrorCode.INVALID_PARAMETER, "Envelope too short")
        version = raw[0]
        if version != MESSAGE_VERSION:
            raise create_message_error(
                ErrorCode.INVALID_PARAMETER,
                f"Unsupported message version: {version}"
            )
        body = raw[:-trailer]
        message_index = None
        ciphertext = None
        pos = 1
        try:
            while pos < len(body):
                tag = body[pos]
                pos += 1
                if tag == INDEX_TAG:
                    message_index, pos = decode_varint(body, pos)
                elif tag == CIPHERTEXT_TAG:
                    length, pos = decode_varint(body, pos)
                    if pos + length > len(body):
                        raise ValueError("Ciphertext length overruns envelope")
                    ciphertext = bytes(body[pos:pos + length])
                    pos += length
                else:
                    raise ValueError(f"Unknown field tag: {tag:#x}")
        except ValueError as e:
            raise create_message_error(ErrorCode.INVALID_PARAMETER, f"Malformed envelope: {e}")
        if message_index is None or ciphertext is None:
            raise create_message_error(ErrorCode.INVALID_PARAMETER, "Envelope missing index or ciphertext")
        mac = bytes(raw[-trailer:-ED25519_SIGNATURE_LENGTH])
        signature = bytes(raw[-ED25519_SIGNATURE_LENGTH:])
        return cls(message_index, ciphertext, mac, signature, version)

    @classmethod
    def deserialize(cls, value: str):
        try:
            raw = ub64(value)
        except ValueError as e:
            raise create_message_error(ErrorCode.INVALID_PARAMETER, f"Envelope is not base64: {e}")
        return cls.from_bytes(raw)

    def verify(self, public_key: bytes) -> bool:
        """Check the sender signature over the envelope"""
        return verify_signature(public_key, self.signature, self.signed_part)

    def __repr__(self):
        return f"MessageEnvelope(index={self.message_index}, ciphertext={len(self.ciphertext)} bytes)"


class MessageCipher:
    """Encrypts one plaintext under the keys of the ratchet's current index"""

    def __init__(self, max_plaintext_length=MAX_PLAINTEXT_LENGTH, error_handler=None):
        self.max_plaintext_length = max_plaintext_length
        self.error_handler = error_handler or ErrorHandler(enable_logging=False)

    def _plaintext_bytes(self, plaintext) -> bytes:
        try:
            self.error_handler.validate_parameter("plaintext", plaintext, expected_type=TEXT_OR_BYTES)
        except GroupRatchetError as e:
            raise create_message_error(
                ErrorCode.INVALID_PARAMETER, e.message, {'type': type(plaintext).__name__}
            )
        return to_bytes(plaintext)

    def encrypt(self, ratchet, plaintext, signing_keypair) -> MessageEnvelope:
        """
        Encrypt ``plaintext`` at ``ratchet.index``. Does not advance the ratchet.
        """
        plaintext = self._plaintext_bytes(plaintext)
        if ratchet.exhausted():
            raise SessionExhausted(
                "Message index reached its maximum",
                {'index': ratchet.index, 'max_index': ratchet.max_index}
            )
        if len(plaintext) > self.max_plaintext_length:
            raise EncryptionInputTooLarge(
                f"Plaintext of {len(plaintext)} bytes exceeds {self.max_plaintext_length}",
                {'length': len(plaintext), 'max_length': self.max_plaintext_length}
            )

        chain = bytearray(RATCHET_LENGTH)
        try:
            ratchet.write_chain(chain)
            aes_key, mac_key, iv = derive_message_keys(chain)
        finally:
            erase_all(chain)
        try:
            padder = padding.PKCS7(algorithms.AES.block_size).padder()
            padded_plaintext = padder.update(plaintext) + padder.finalize()

            cipher = Cipher(algorithms.AES256(aes_key), modes.CBC(iv))
            encryptor = cipher.encryptor()
            ciphertext = encryptor.update(padded_plaintext) + encryptor.finalize()

            body = MessageEnvelope.encode_body(MESSAGE_VERSION, ratchet.index, ciphertext)
            mac = compute_mac(mac_key, body)
        except (ValueError, TypeError) as e:
            raise create_crypto_error(ErrorCode.ENCRYPTION_FAILED, f"Message encryption failed: {e}")
        finally:
            erase_all(aes_key, mac_key, iv)

        signature = signing_keypair.sign(body + mac)
        return MessageEnvelope(ratchet.index, ciphertext, mac, signature)
