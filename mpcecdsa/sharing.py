"""
Shamir secret sharing over the secp256k1 scalar field, with Feldman
commitments so a receiver can check its share against the dealer's
published polynomial.

The threshold t here is the number of shares needed to recover a value,
so a polynomial has degree t - 1.

Lagrange interpolation at x:
    f(x) = sum_j y_j * prod_{m != j} (x - x_m) / (x_j - x_m)   (mod order)
"""

import logging
from typing import Dict, Iterable, List, Sequence, Tuple

from .ecdsa_op import O, order, ec_add, ec_scalar_mul, pub_key_from_priv, scalar_inv_mod_order
from .errors import InvalidParameters, InsufficientShares, DuplicateIndex
from .toyrand import int_sample

logger = logging.getLogger(__name__)

Share = Tuple[int, int]


def validate_parameters(t: int, n: int) -> None:
    if n < 2:
        raise InvalidParameters(f"need at least 2 parties, got n={n}")
    if t < 2:
        raise InvalidParameters(f"threshold must be at least 2, got t={t}")
    if t > n:
        raise InvalidParameters(f"threshold t={t} exceeds party count n={n}")


def eval_poly(coef: Sequence[int], x: int) -> int:
    """
    Horner evaluation. coef[0] is the constant term.
    For y = ax^2 + bx + c, coef = [c, b, a] and y = (a*x + b)*x + c.
    """
    y = 0
    for c in reversed(coef):
        y = (y * x + c) % order
    return y


class Polynomial:
    """
    Random polynomial of degree t - 1 with a chosen (or random) constant term.
    Holds secret coefficients; call wipe() when done with it.
    """

    def __init__(self, t: int, secret: int = None):
        if t < 1:
            raise InvalidParameters("polynomial needs at least one coefficient")
        constant = int_sample(order) if secret is None else secret % order
        self.coef = [constant] + [int_sample(order) for _ in range(t - 1)]

    @property
    def degree(self) -> int:
        return len(self.coef) - 1

    @property
    def secret(self) -> int:
        return self.coef[0]

    def __call__(self, x: int) -> int:
        return eval_poly(self.coef, x)

    def commitments(self) -> List:
        """Feldman commitments: coef_k * G for every coefficient."""
        return commit_polynomial(self.coef)

    def wipe(self) -> None:
        for i in range(len(self.coef)):
            self.coef[i] = 0
        self.coef = []


def share(secret: int, t: int, n: int) -> List[Share]:
    """
    Split secret into n shares evaluated at x = 1..n, any t of which recover it.
    """
    validate_parameters(t, n)
    poly = Polynomial(t, secret)
    try:
        return [(i, poly(i)) for i in range(1, n + 1)]
    finally:
        poly.wipe()


def _check_indices(shares: Iterable[Share]) -> None:
    seen = set()
    for x, _ in shares:
        if x % order == 0:
            raise InvalidParameters("share index must be non-zero")
        if x in seen:
            raise DuplicateIndex(f"index {x} appears more than once")
        seen.add(x)


def lagrange_coefficient(index: int, quorum: Iterable[int], x: int = 0) -> int:
    """
    lambda_index for interpolating at x from the points in quorum.
    """
    num = 1
    denom = 1
    for j in quorum:
        if j == index:
            continue
        num = num * (x - j) % order
        denom = denom * (index - j) % order
    return num * scalar_inv_mod_order(denom) % order


def combine_at_point(shares: Sequence[Share], t: int, x: int) -> int:
    """
    Evaluate the shared polynomial at x from the t shares with the smallest
    indices. Raises InsufficientShares / DuplicateIndex.
    """
    if t < 1:
        raise InvalidParameters(f"threshold must be positive, got {t}")
    _check_indices(shares)
    if len(shares) < t:
        raise InsufficientShares(f"need {t} shares, got {len(shares)}")
    chosen = sorted(shares)[:t]
    quorum = [i for i, _ in chosen]
    value = 0
    for i, y in chosen:
        value = (value + y * lagrange_coefficient(i, quorum, x)) % order
    return value


def reconstruct(shares: Sequence[Share], t: int) -> int:
    """
    Recover the constant term. Only for explicit recovery or export paths;
    key generation and signing never call this.
    """
    logger.warning(f"Reconstructing a shared secret from {min(len(shares), t)} shares")
    return combine_at_point(shares, t, 0)


def commit_polynomial(coef: Sequence[int]) -> List:
    return [pub_key_from_priv(c) for c in coef]


def commitment_eval(commitments: Sequence, index: int):
    """
    sum_k C_k * index^k, the public image of f(index) in the exponent.
    """
    point = O
    power = 1
    for C in commitments:
        point = ec_add(point, ec_scalar_mul(C, power))
        power = power * index % order
    return point


def verify_share(index: int, value: int, commitments: Sequence) -> bool:
    """Feldman check: value * G == sum_k C_k * index^k."""
    return pub_key_from_priv(value) == commitment_eval(commitments, index)


def expected_public_share(index: int, commitments_by_dealer: Dict[int, Sequence]):
    """
    Public image x_index * G of the merged share of `index`, computed only from
    every dealer's published commitments.
    """
    point = O
    for dealer in sorted(commitments_by_dealer):
        point = ec_add(point, commitment_eval(commitments_by_dealer[dealer], index))
    return point
