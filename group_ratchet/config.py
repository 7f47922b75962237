# config.py - Tunables for outbound group sessions
from dataclasses import dataclass

# Message index is an unsigned 32-bit counter
MAX_MESSAGE_INDEX = 0xFFFFFFFF

MAX_PLAINTEXT_LENGTH = 64 * 1024

PBKDF2_ITERATIONS = 100000


@dataclass(frozen=True)
class SessionConfig:
    """Limits applied to a session and its pickles"""
    max_message_index: int = MAX_MESSAGE_INDEX
    max_plaintext_length: int = MAX_PLAINTEXT_LENGTH
    pbkdf2_iterations: int = PBKDF2_ITERATIONS

    def __post_init__(self):
        if not 0 < self.max_message_index <= MAX_MESSAGE_INDEX:
            raise ValueError(f"max_message_index must be in 1..{MAX_MESSAGE_INDEX}")
        if self.max_plaintext_length < 0:
            raise ValueError("max_plaintext_length cannot be negative")
        if self.pbkdf2_iterations < 1:
            raise ValueError("pbkdf2_iterations must be positive")
