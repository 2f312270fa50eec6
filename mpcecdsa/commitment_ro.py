"""
Commitment scheme using a hash function(ROM) and fixed length blinding factor.

Please refer to https://eprint.iacr.org/2020/540.pdf section 2.6

The label binds a commitment to the session and party that produced it so a
decommitment cannot be replayed into another session.
"""

import secrets
import hashlib
from collections import namedtuple

blind_length = 32

Commitment = namedtuple("Commitment", "digest blinding")


def commit(value: bytes, label: bytes = b"") -> Commitment:
    if not value:
        raise ValueError("refusing to commit to an empty value")
    r = secrets.token_bytes(blind_length)
    return Commitment(hashlib.sha3_256(label + value + r).digest(), r)


def verify_commitment(digest: bytes, blinding: bytes, value: bytes, label: bytes = b"") -> bool:
    if len(digest) != 32 or len(blinding) != blind_length or not value:
        return False
    return secrets.compare_digest(hashlib.sha3_256(label + value + blinding).digest(), digest)
