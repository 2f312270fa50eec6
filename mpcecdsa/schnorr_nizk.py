"""
This module is an implementation of the Schnorr's NIZK over elliptic curve SECP256k1
Please refer to https://tools.ietf.org/html/rfc8235#section-3.2

The proof is bound to a context (session id and participant) through the
Fiat-Shamir challenge so it cannot be lifted into another session.
"""

from collections import namedtuple
from hashlib import sha256

from .ecdsa_op import (ec_add, ec_scalar_mul, order, pub_key_from_priv, generator,
                       is_public_point, compressed_hex, decode_point)
from .toyrand import int_sample


SchnorrNIZK = namedtuple('SchnorrNIZK', ['V', 'A', 'r', 'c', 'user_id'])


def _challenge(V, A, user_id: bytes) -> int:
    return int.from_bytes(sha256(
        bytes.fromhex(compressed_hex(generator)) +
        bytes.fromhex(compressed_hex(V)) +
        bytes.fromhex(compressed_hex(A)) +
        user_id).digest(), byteorder='big')


def prove(secret: int, user_id: bytes = b"DEFAULT") -> SchnorrNIZK:
    """
    Non Interactive zero knowledge proof that the prover knows the secret.
    """
    v = int_sample(order)
    A = pub_key_from_priv(v)
    V = pub_key_from_priv(secret)
    c = _challenge(V, A, user_id)
    r = (secret - v * c) % order
    return SchnorrNIZK(V=V, A=A, r=r, c=c, user_id=user_id)


def verify(proof: SchnorrNIZK, expected_user_id: bytes = None) -> bool:
    """
    Verify the above zero knowledge proof.
    """
    if not (is_public_point(proof.V) and is_public_point(proof.A)):
        return False
    if expected_user_id is not None and proof.user_id != expected_user_id:
        return False
    if proof.c != _challenge(proof.V, proof.A, proof.user_id):
        return False
    # V = G * [r] + A * [c]
    return proof.V == ec_add(ec_scalar_mul(generator, proof.r), ec_scalar_mul(proof.A, proof.c))


def to_dict(proof: SchnorrNIZK) -> dict:
    return {
        "V": compressed_hex(proof.V),
        "A": compressed_hex(proof.A),
        "r": f"{proof.r:x}",
        "c": f"{proof.c:x}",
        "user_id": proof.user_id.hex(),
    }


def from_dict(data: dict) -> SchnorrNIZK:
    """Raises ValueError on malformed input."""
    return SchnorrNIZK(
        V=decode_point(data["V"]),
        A=decode_point(data["A"]),
        r=int(data["r"], 16),
        c=int(data["c"], 16),
        user_id=bytes.fromhex(data["user_id"]),
    )
