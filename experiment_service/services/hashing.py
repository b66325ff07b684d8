# hashing.py

from typing import Union

_MASK = 0xFFFFFFFF
_C1 = 0xCC9E2D51
_C2 = 0x1B873593

BUCKET_COUNT = 100
TRAFFIC_PREFIX = "traffic"


def _rotl32(x: int, r: int) -> int:
    return ((x << r) | (x >> (32 - r))) & _MASK


def murmurhash3_32(key: Union[str, bytes], seed: int = 0) -> int:
    """
    32-bit Murmur3-style hash returning an unsigned integer in [0, 2**32).

    Each UTF-8 byte is mixed in on its own (no 4-byte blocks), the byte
    length is folded in, then the standard fmix32 finalizer is applied.
    All arithmetic wraps at 32 bits so results are identical to the
    browser SDK and any other port.
    """
    data = key.encode("utf-8") if isinstance(key, str) else key
    h = seed & _MASK

    for byte in data:
        k = (byte * _C1) & _MASK
        k = _rotl32(k, 15)
        k = (k * _C2) & _MASK

        h ^= k
        h = _rotl32(h, 13)
        h = (h * 5 + 0xE6546B64) & _MASK

    h ^= len(data)
    h ^= h >> 16
    h = (h * 0x85EBCA6B) & _MASK
    h ^= h >> 13
    h = (h * 0xC2B2AE35) & _MASK
    h ^= h >> 16
    return h


def bucket(key: str) -> int:
    """Map a key to a stable bucket in [0, 100)."""
    return murmurhash3_32(key) % BUCKET_COUNT


def scoped_bucket(scope_id: str, visitor_id: str) -> int:
    """Bucket for a (scope, visitor) pair; scope is an experiment id or flag key."""
    return bucket(f"{scope_id}:{visitor_id}")


def traffic_bucket(experiment_id: str, visitor_id: str) -> int:
    """
    Bucket used for traffic allocation only. The extra prefix decorrelates
    admission from variant choice for the same visitor.
    """
    return bucket(f"{TRAFFIC_PREFIX}:{experiment_id}:{visitor_id}")
