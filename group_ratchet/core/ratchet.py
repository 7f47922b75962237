# ratchet.py - Four-part forward-only hash ratchet for group sessions
"""
The chain state is four 32-byte parts R0..R3. Part j is rekeyed every
2**(8 * (3 - j)) steps, so each part consumes one byte of the 32-bit index.
Rekeying is one-way (HMAC-SHA256 keyed by the source part), which means a
holder of the state at index j cannot recover any state at i < j, while a
holder of the state at i can derive every later state.
"""

import secrets

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac

from ..config import MAX_MESSAGE_INDEX
from ..utils.error_handler import (
    ErrorCode, InitializationFailure, SessionExhausted, UseAfterRelease, create_session_error
)
from ..utils.memory import secure_erase

RATCHET_PARTS = 4
RATCHET_PART_LENGTH = 32
RATCHET_LENGTH = RATCHET_PARTS * RATCHET_PART_LENGTH

# Seeds mixed into each rehash, one per destination part
HASH_KEY_SEEDS = (b"\x00", b"\x01", b"\x02", b"\x03")


def _part(i):
    return slice(i * RATCHET_PART_LENGTH, (i + 1) * RATCHET_PART_LENGTH)


def _rehash_part(data: bytearray, rehash_from_part: int, rehash_to_part: int) -> None:
    key = data[_part(rehash_from_part)]
    try:
        h = hmac.HMAC(key, hashes.SHA256())
        h.update(HASH_KEY_SEEDS[rehash_to_part])
        data[_part(rehash_to_part)] = h.finalize()
    finally:
        secure_erase(key)


class Ratchet:
    """Ratchet state owned exclusively by one session"""

    def __init__(self, data, counter=0, max_index=MAX_MESSAGE_INDEX):
        if len(data) != RATCHET_LENGTH:
            raise ValueError(f"Ratchet data must be {RATCHET_LENGTH} bytes, got {len(data)}")
        if not 0 <= counter <= MAX_MESSAGE_INDEX:
            raise ValueError(f"Ratchet counter out of range: {counter}")
        self._data = bytearray(data)
        self._counter = counter
        self._max_index = max_index
        self._erased = False

    @classmethod
    def create(cls, max_index=MAX_MESSAGE_INDEX):
        """Fresh ratchet at index 0 seeded from the system CSPRNG"""
        try:
            seed = bytearray(secrets.token_bytes(RATCHET_LENGTH))
        except (NotImplementedError, OSError) as e:
            raise InitializationFailure(f"Secure random source unavailable: {e}")
        try:
            return cls(seed, 0, max_index)
        finally:
            secure_erase(seed)

    @classmethod
    def from_export(cls, index, chain, max_index=MAX_MESSAGE_INDEX):
        """Rebuild a ratchet from an export, e.g. to derive forward from it"""
        return cls(chain, index, max_index)

    @property
    def index(self) -> int:
        return self._counter

    @property
    def max_index(self) -> int:
        return self._max_index

    @property
    def data(self) -> bytes:
        """Snapshot of the 128-byte chain"""
        self._check_live()
        return bytes(self._data)

    def exhausted(self) -> bool:
        return self._counter >= self._max_index

    def advance(self) -> None:
        """Move the ratchet to index + 1"""
        self._check_live()
        if self.exhausted():
            raise SessionExhausted(
                "Message index reached its maximum",
                {'index': self._counter, 'max_index': self._max_index}
            )

        counter = self._counter + 1

        # Find the most significant part whose byte changes
        mask = 0x00FFFFFF
        h = 0
        while h < RATCHET_PARTS:
            if not counter & mask:
                break
            h += 1
            mask >>= 8

        # R(h) is the key for every rehash, so it is replaced last
        for i in range(RATCHET_PARTS - 1, h - 1, -1):
            _rehash_part(self._data, h, i)

        self._counter = counter

    def advance_to(self, advance_to: int) -> None:
        """
        Jump forward to ``advance_to`` without stepping through every index.

        Produces the same state as calling advance() repeatedly. Moving
        backwards is impossible by construction and is rejected.
        """
        self._check_live()
        if advance_to < self._counter:
            raise create_session_error(
                ErrorCode.RATCHET_REWIND,
                f"Cannot move ratchet back from {self._counter} to {advance_to}"
            )
        if advance_to > self._max_index:
            raise SessionExhausted(
                f"Index {advance_to} is beyond the maximum",
                {'index': advance_to, 'max_index': self._max_index}
            )

        for j in range(RATCHET_PARTS):
            shift = (RATCHET_PARTS - j - 1) * 8
            mask = (MAX_MESSAGE_INDEX << shift) & MAX_MESSAGE_INDEX

            steps = ((advance_to >> shift) - (self._counter >> shift)) & 0xFF
            if steps == 0:
                continue

            # All but the last step only touch R(j)
            while steps > 1:
                _rehash_part(self._data, j, j)
                steps -= 1

            for k in range(RATCHET_PARTS - 1, j - 1, -1):
                _rehash_part(self._data, j, k)

            self._counter = advance_to & mask

    def write_chain(self, buf: bytearray, offset: int = 0) -> None:
        """Copy the chain into a caller-owned buffer the caller will erase"""
        self._check_live()
        buf[offset:offset + RATCHET_LENGTH] = self._data

    def export_at_current_index(self):
        """Return (index, chain snapshot) for forward derivation"""
        return self._counter, self.data

    def erase(self) -> None:
        secure_erase(self._data)
        self._erased = True

    def is_erased(self) -> bool:
        return self._erased

    def _check_live(self):
        if self._erased:
            raise UseAfterRelease("Ratchet state has been erased")

    def __eq__(self, other):
        if not isinstance(other, Ratchet):
            return NotImplemented
        return self._counter == other._counter and secrets.compare_digest(self._data, other._data)

    __hash__ = None

    def __repr__(self):
        return f"Ratchet(index={self._counter}, erased={self._erased})"
