# Security Module
"""
Ed25519 signing keys for outbound sessions.
"""

from .signing import SigningKeypair, verify_signature

__all__ = ['SigningKeypair', 'verify_signature']
