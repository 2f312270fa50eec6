"""
Implementation of Section 3.2 of the below:
https://eprint.iacr.org/2018/057.pdf

Proves that a Paillier modulus N is square free by publishing N-th roots of
m pseudo random points derived from N with the Fiat-Shamir transform.
"""

from functools import lru_cache
from hashlib import sha256
from typing import List

import math


salt = b"mpcecdsa"

# below values are from sections 6.2.3
# https://eprint.iacr.org/2018/987.pdf
m = 11
alpha = 6370


def i2osp(x: int, xLen: int) -> bytes:
    """
    https://tools.ietf.org/html/rfc8017#section-4.1
    """
    if xLen < 0 or x >= pow(256, xLen):
        raise ValueError("Input integer is too big for the xLen.")
    return x.to_bytes(xLen, byteorder='big')


def mgf1(seed: bytes, mask_len: int) -> bytes:
    """
    This implements the below:
    https://tools.ietf.org/html/rfc8017#appendix-B.2.1
    """
    if mask_len > pow(2, 32):
        raise ValueError("Mask Length is too long.")
    hlen = 32  # SHA-256
    res = bytearray()
    for i in range(math.ceil(mask_len / hlen)):
        res.extend(sha256(seed + i2osp(i, 4)).digest())
    return bytes(res[:mask_len])


def rho_vec(N: int, label: bytes = salt) -> List[int]:
    byte_size_N = math.ceil(N.bit_length() / 8)
    N_bytes = N.to_bytes(byte_size_N, byteorder='big')
    rho = []
    for index in range(m):
        seed = sha256(N_bytes + label + index.to_bytes(4, byteorder='big')).digest()
        rho.append(int.from_bytes(mgf1(seed, byte_size_N), byteorder='big') % N)
    return rho


@lru_cache(maxsize=None)
def primes_up_to(limit: int) -> tuple:
    """Sieve of Eratosthenes."""
    sieve = bytearray([1]) * (limit + 1)
    sieve[0:2] = b"\x00\x00"
    for i in range(2, math.isqrt(limit) + 1):
        if sieve[i]:
            sieve[i * i::i] = bytearray(len(sieve[i * i::i]))
    return tuple(i for i, is_prime in enumerate(sieve) if is_prime)


@lru_cache(maxsize=None)
def _small_prime_product() -> int:
    return math.prod(primes_up_to(alpha))


def prove(p: int, q: int, label: bytes = salt) -> List[int]:
    """
    Return the N-th roots of the Fiat-Shamir points for N = p * q.
    """
    if p == q:
        raise ValueError("p and q must differ")
    totient = (p - 1) * (q - 1)
    N = p * q
    N_inv = pow(N, -1, totient)
    return [pow(rho, N_inv, N) for rho in rho_vec(N, label)]


def verify(proof: List[int], N: int, label: bytes = salt) -> bool:
    if N <= 0:
        return False
    # N must not be divisible by any prime less than alpha
    if math.gcd(_small_prime_product(), N) != 1:
        return False
    expected = rho_vec(N, label)
    if len(expected) != len(proof):
        return False
    for rho, sigma in zip(expected, proof):
        if not 0 <= sigma < N or pow(sigma, N, N) != rho:
            return False
    return True
