from mpcecdsa.schnorr_nizk import SchnorrNIZK, prove, verify, to_dict, from_dict
from mpcecdsa.ecdsa_op import order, pub_key_from_priv

import random


def test_schnorr_nizk_proof():
    secret = random.randint(1, order - 1)
    proof = prove(secret)
    assert verify(proof)
    assert proof.V == pub_key_from_priv(secret)
    bad_proof = SchnorrNIZK(A=proof.A, V=proof.V, c=proof.c, r=proof.r, user_id=b"WRONG")
    assert not verify(bad_proof)


def test_proof_is_bound_to_context():
    proof = prove(random.randint(1, order - 1), b"session:keygen-r1:2")
    assert verify(proof, b"session:keygen-r1:2")
    assert not verify(proof, b"session:keygen-r1:3")


def test_proof_for_another_key_fails():
    proof = prove(random.randint(1, order - 1))
    forged = proof._replace(V=pub_key_from_priv(random.randint(1, order - 1)))
    assert not verify(forged)


def test_dict_form():
    proof = prove(random.randint(1, order - 1), b"ctx")
    data = to_dict(proof)
    assert data["user_id"] == b"ctx".hex()
    assert verify(from_dict(data), b"ctx")
