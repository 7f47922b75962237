# memory.py - In-place erasure of secret buffers
from typing import Optional, Union


def secure_erase(key_material: Optional[Union[bytearray, memoryview]]) -> None:
    """
    Overwrite a mutable secret buffer with zeros in place.

    Immutable ``bytes`` cannot be wiped, so secrets that must be erased are
    held in ``bytearray`` buffers throughout the package.
    """
    if key_material is None:
        return
    if not isinstance(key_material, (bytearray, memoryview)):
        raise TypeError(f"Cannot erase immutable {type(key_material).__name__} in place")
    for i in range(len(key_material)):
        key_material[i] = 0


def erase_all(*buffers) -> None:
    """Erase several buffers, skipping None"""
    for buf in buffers:
        secure_erase(buf)
