# encoding.py - Unpadded base64 used by every external string format
import base64
import binascii

TEXT_OR_BYTES = (str, bytes, bytearray, memoryview)


def b64(b: bytes) -> str:
    return base64.standard_b64encode(b).decode('ascii').rstrip('=')


def ub64(s) -> bytes:
    """Decode standard base64 with or without trailing padding"""
    if isinstance(s, str):
        s = s.encode('ascii')
    if not isinstance(s, (bytes, bytearray)):
        raise TypeError(f"Expected str or bytes, got {type(s).__name__}")
    s = bytes(s).rstrip(b'=')
    if len(s) % 4 == 1:
        raise ValueError("Invalid base64 length")
    try:
        return base64.b64decode(s + b'=' * (-len(s) % 4), validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64: {e}")


def to_bytes(value, encoding='utf-8') -> bytes:
    """Accept text or bytes at the API boundary"""
    if isinstance(value, str):
        return value.encode(encoding)
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise TypeError(f"Expected str or bytes, got {type(value).__name__}")
    return bytes(value)
