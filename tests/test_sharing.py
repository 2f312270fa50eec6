"""
Tests
"""

import itertools
import os
import random

import pytest

from mpcecdsa.ecdsa_op import order, pub_key_from_priv
from mpcecdsa.errors import InvalidParameters, InsufficientShares, DuplicateIndex
from mpcecdsa.sharing import (Polynomial, share, reconstruct, combine_at_point, lagrange_coefficient,
                              verify_share, commit_polynomial, expected_public_share, eval_poly)


def generate_t_n():
    t = random.randint(2, 7)
    n = random.randint(t, 9)
    return t, n


def test_eval_poly():
    # 3x^2 + 2x + 1
    assert eval_poly([1, 2, 3], 2) == 17
    assert eval_poly([1, 2, 3], 0) == 1


def test_polynomial():
    for _ in range(5):
        t, _ = generate_t_n()
        poly = Polynomial(t)
        assert poly.degree == t - 1
        assert poly(0) == poly.secret
    poly = Polynomial(3, secret=42)
    assert poly.secret == 42
    poly.wipe()
    assert poly.coef == []


@pytest.mark.parametrize("t,n", [(2, 2), (2, 3), (3, 5)])
def test_any_t_subset_reconstructs(t, n):
    secret = random.randint(1, order - 1)
    shares = share(secret, t, n)
    assert len(shares) == n
    for subset in itertools.combinations(shares, t):
        assert reconstruct(list(subset), t) == secret


@pytest.mark.skipif(not os.environ.get('SOAK_TEST'), reason="No need to run every time.")
def test_random_threshold_reconstruct():
    for _ in range(20):
        t, n = generate_t_n()
        print(f"t={t} n={n}")
        secret = random.randint(1, order - 1)
        shares = random.sample(share(secret, t, n), t)
        assert reconstruct(shares, t) == secret


def test_too_few_shares():
    shares = share(random.randint(1, order - 1), 3, 5)
    for t_prime in (1, 2):
        pytest.raises(InsufficientShares, reconstruct, shares[:t_prime], 3)


def test_duplicate_index():
    shares = share(7, 2, 3)
    pytest.raises(DuplicateIndex, reconstruct, [shares[0], shares[0]], 2)


@pytest.mark.parametrize("t,n", [(1, 3), (4, 3), (2, 1), (0, 0)])
def test_invalid_parameters(t, n):
    pytest.raises(InvalidParameters, share, 5, t, n)


def test_combine_at_point():
    secret = random.randint(1, order - 1)
    shares = share(secret, 3, 5)
    # interpolating at an existing index gives that party's share back
    assert combine_at_point(shares[1:4], 3, 1) == shares[0][1]
    # only the t smallest indices are used
    assert combine_at_point(shares, 3, 0) == secret


def test_lagrange_weights_sum_to_secret():
    secret = random.randint(1, order - 1)
    shares = dict(share(secret, 2, 3))
    quorum = [1, 3]
    total = sum(lagrange_coefficient(i, quorum) * shares[i] for i in quorum) % order
    assert total == secret


def test_feldman_commitments():
    poly = Polynomial(3)
    commitments = commit_polynomial(poly.coef)
    assert commitments[0] == pub_key_from_priv(poly.secret)
    assert verify_share(2, poly(2), commitments)
    assert not verify_share(2, poly(2) + 1, commitments)
    assert not verify_share(3, poly(2), commitments)


def test_expected_public_share():
    dealers = {d: Polynomial(2) for d in (1, 2, 3)}
    commitments = {d: commit_polynomial(p.coef) for d, p in dealers.items()}
    merged = sum(p(2) for p in dealers.values()) % order
    assert expected_public_share(2, commitments) == pub_key_from_priv(merged)
    assert expected_public_share(1, commitments) != pub_key_from_priv(merged)
