"""
Deterministic hashes used to spread and bucket contacts.

Python's built-in ``hash`` is salted per process, so anything that must give
the same answer in every worker goes through these helpers instead.
"""

import hashlib


def string_hash32(value: str) -> int:
    """
    Signed 32-bit rolling hash (``h * 31 + ord(c)``) of a string.

    Example:
        >>> string_hash32('a')
        97
    """
    h = 0
    for char in str(value):
        h = ((h << 5) - h + ord(char)) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 0x100000000
    return h


def stable_bucket(value, buckets: int) -> int:
    """Map any value onto ``range(buckets)`` the same way in every process"""
    if buckets <= 0:
        raise ValueError("buckets must be positive")
    digest = hashlib.md5(str(value).encode('utf-8')).hexdigest()
    return int(digest[:12], 16) % buckets
