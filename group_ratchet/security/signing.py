# signing.py - Ed25519 signing keypair owned by an outbound group session
from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.hazmat.primitives import serialization
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm

from ..utils.error_handler import ErrorCode, InitializationFailure, create_crypto_error
from ..utils.memory import secure_erase

ED25519_PUBLIC_KEY_LENGTH = 32
ED25519_PRIVATE_KEY_LENGTH = 32
ED25519_SIGNATURE_LENGTH = 64


class SigningKeypair:
    """
    Ed25519 keypair generated once per session.

    Only the 32-byte private seed is retained, in an erasable buffer; the
    backend key object is rebuilt for each signature and dropped straight
    after.
    """

    def __init__(self, private_seed, public_key: bytes = None):
        if len(private_seed) != ED25519_PRIVATE_KEY_LENGTH:
            raise ValueError(f"Ed25519 seed must be {ED25519_PRIVATE_KEY_LENGTH} bytes")
        self._seed = bytearray(private_seed)
        derived = self._private_key().public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )
        if public_key is not None and bytes(public_key) != derived:
            secure_erase(self._seed)
            raise ValueError("Public key does not match private seed")
        self._public = derived

    @classmethod
    def generate(cls):
        """Generate a fresh keypair"""
        try:
            private_key = ed25519.Ed25519PrivateKey.generate()
            seed = bytearray(private_key.private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption()
            ))
        except (UnsupportedAlgorithm, OSError) as e:
            raise InitializationFailure(f"Failed to generate signing key: {e}")
        try:
            return cls(seed)
        finally:
            secure_erase(seed)

    def _private_key(self):
        return ed25519.Ed25519PrivateKey.from_private_bytes(self._seed)

    @property
    def public_key(self) -> bytes:
        return self._public

    def write_seed(self, buf: bytearray, offset: int = 0) -> None:
        """Copy the private seed into a caller-owned buffer, for pickling only"""
        buf[offset:offset + ED25519_PRIVATE_KEY_LENGTH] = self._seed

    def sign(self, data: bytes) -> bytes:
        try:
            return self._private_key().sign(data)
        except Exception as e:
            raise create_crypto_error(
                ErrorCode.SIGNATURE_FAILED,
                f"Failed to sign data: {e}"
            )

    def erase(self) -> None:
        secure_erase(self._seed)


def verify_signature(public_key: bytes, signature: bytes, data: bytes) -> bool:
    """Verify an Ed25519 signature. Returns True if valid."""
    try:
        ed25519.Ed25519PublicKey.from_public_bytes(public_key).verify(signature, data)
        return True
    except (InvalidSignature, ValueError):
        return False
