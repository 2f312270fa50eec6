"""
Distributed key generation.

Every party deals its own random polynomial of degree t - 1 and the group
secret is the sum of all constant terms, so nobody ever sees it:

1. each party publishes Feldman commitments to its coefficients, a Schnorr
   proof for the constant term, a Paillier public key (used later for MtA
   during signing) with a square-free proof, and an ephemeral encryption key.
2. each party sends f_i(j) to every other party j, encrypted to j.
3. each party checks what it received against the dealers' commitments, adds
   everything up into its share x_i = sum_j f_j(i) and publishes X_i = x_i*G
   with a proof of knowledge.

The aggregate public key is the sum of the dealers' constant term
commitments; every X_i is checked against the value implied by the
commitments before the key is accepted.
"""

import logging
import time
from dataclasses import dataclass, field, asdict
from typing import Dict, Mapping, Optional

from phe import paillier

from . import envelope
from . import schnorr_nizk
from .address import derive_address
from .config import Settings
from .ecdsa_op import (Point, O, ec_add, pub_key_from_priv, compressed_hex, decode_point,
                       encode_point, order)
from .errors import (CommitmentVerificationFailed, InvalidParameters, ParticipantCountMismatch,
                     SealError)
from .paillier_squarefree_nizk import prove as squarefree_prove
from .paillier_squarefree_nizk import verify as squarefree_verify
from .payloads import KeygenRound1, KeygenRound2, KeygenRound3, SchnorrProofModel
from .sharing import Polynomial, validate_parameters, verify_share, expected_public_share

logger = logging.getLogger(__name__)

# MtA plaintexts stay below N/3 only if N has at least this many bits
MIN_PAILLIER_BITS = 1024


def proof_label(session_id: str, stage: str, index: int) -> bytes:
    return f"{session_id}:{stage}:{index}".encode()


def share_aad(session_id: str, dealer: int, recipient: int) -> bytes:
    return f"{session_id}:share:{dealer}->{recipient}".encode()


def proof_to_model(proof) -> SchnorrProofModel:
    return SchnorrProofModel(**schnorr_nizk.to_dict(proof))


def proof_from_model(model: SchnorrProofModel):
    try:
        return schnorr_nizk.from_dict(model.model_dump())
    except ValueError as e:
        raise CommitmentVerificationFailed(f"malformed proof: {e}") from None


def _point(hex_point: str, what: str) -> Point:
    try:
        return decode_point(hex_point)
    except ValueError as e:
        raise CommitmentVerificationFailed(f"{what}: {e}") from None


@dataclass(frozen=True)
class DealerCommitment:
    """What a party published in round 1, after verification."""
    index: int
    commitments: tuple
    paillier_n: int
    enc_key: str


def verify_round1(session_id: str, index: int, payload: KeygenRound1, threshold: int) -> DealerCommitment:
    """
    Check a round 1 contribution: t non-identity points on the curve, a proof
    of knowledge for the constant term and a square-free Paillier modulus.
    """
    if len(payload.commitments) != threshold:
        raise CommitmentVerificationFailed(
            f"party {index} committed to {len(payload.commitments)} coefficients, expected {threshold}")
    commitments = tuple(_point(c, f"party {index} commitment") for c in payload.commitments)
    proof = proof_from_model(payload.proof)
    if proof.V != commitments[0] or not schnorr_nizk.verify(proof, proof_label(session_id, "keygen-r1", index)):
        raise CommitmentVerificationFailed(f"party {index} constant term proof does not verify")
    n = int(payload.paillier_n, 16)
    if n.bit_length() < MIN_PAILLIER_BITS:
        raise CommitmentVerificationFailed(f"party {index} Paillier modulus is only {n.bit_length()} bits")
    proof_n = [int(x, 16) for x in payload.paillier_proof]
    if not squarefree_verify(proof_n, n, proof_label(session_id, "paillier", index)):
        raise CommitmentVerificationFailed(f"party {index} Paillier modulus proof does not verify")
    _point(payload.enc_key, f"party {index} encryption key")
    return DealerCommitment(index, commitments, n, payload.enc_key)


def verify_round2_addressing(index: int, payload: KeygenRound2, indices) -> None:
    expected = set(indices) - {index}
    if set(payload.shares) != expected:
        raise ParticipantCountMismatch(
            f"party {index} sent shares to {sorted(payload.shares)}, expected {sorted(expected)}")


def verify_round3(session_id: str, index: int, payload: KeygenRound3, dealers: Mapping[int, DealerCommitment]) -> Point:
    X = _point(payload.public_share, f"party {index} public share")
    expected = expected_public_share(index, {d: c.commitments for d, c in dealers.items()})
    if X != expected:
        raise CommitmentVerificationFailed(f"party {index} public share does not match the dealt commitments")
    proof = proof_from_model(payload.proof)
    if proof.V != X or not schnorr_nizk.verify(proof, proof_label(session_id, "keygen-r3", index)):
        raise CommitmentVerificationFailed(f"party {index} public share proof does not verify")
    return X


def aggregate_public_key(dealers: Mapping[int, DealerCommitment]) -> Point:
    pub = O
    for d in sorted(dealers):
        pub = ec_add(pub, dealers[d].commitments[0])
    if pub is O:
        raise CommitmentVerificationFailed("aggregate public key is the point at infinity")
    return pub


@dataclass
class KeygenResult:
    """
    Public outcome of a key generation session. Safe to store and share:
    contains no secret material.
    """
    public_key: str
    address: str
    chain: str
    threshold: int
    total_parties: int
    participants: Dict[str, int]
    public_shares: Dict[int, str]
    paillier_public: Dict[int, str]

    @property
    def public_point(self) -> Point:
        return decode_point(self.public_key)

    def public_share_point(self, index: int) -> Point:
        return decode_point(self.public_shares[index])

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "KeygenResult":
        data = dict(data)
        data["public_shares"] = {int(k): v for k, v in data["public_shares"].items()}
        data["paillier_public"] = {int(k): v for k, v in data["paillier_public"].items()}
        return cls(**data)


@dataclass
class KeyShare:
    """
    One party's share of the group key plus the public material it needs to
    sign later. value and the Paillier factors are secret; to_sealed() is the
    only way they should leave process memory.
    """
    participant_id: str
    index: int
    value: int = field(repr=False)
    public_key: str
    address: str
    chain: str
    threshold: int
    total_parties: int
    public_shares: Dict[int, str]
    participants: Dict[str, int]
    paillier_public: Dict[int, str]
    paillier_p: int = field(repr=False)
    paillier_q: int = field(repr=False)
    created_at: float = field(default_factory=time.time)

    def public_result(self) -> KeygenResult:
        return KeygenResult(
            public_key=self.public_key, address=self.address, chain=self.chain,
            threshold=self.threshold, total_parties=self.total_parties,
            participants=dict(self.participants), public_shares=dict(self.public_shares),
            paillier_public=dict(self.paillier_public))

    def paillier_keypair(self):
        pub = paillier.PaillierPublicKey(self.paillier_p * self.paillier_q)
        return pub, paillier.PaillierPrivateKey(pub, self.paillier_p, self.paillier_q)

    def _aad(self) -> bytes:
        return f"{self.public_key}:{self.participant_id}:{self.index}".encode()

    def to_sealed(self, passphrase: bytes) -> dict:
        record = self.public_result().to_dict()
        record.update(participant_id=self.participant_id, index=self.index, created_at=self.created_at)
        secret = f"{self.value:x}:{self.paillier_p:x}:{self.paillier_q:x}".encode()
        record["sealed"] = envelope.seal(secret, passphrase, self._aad())
        return record

    @classmethod
    def from_sealed(cls, record: dict, passphrase: bytes) -> "KeyShare":
        public = KeygenResult.from_dict({k: record[k] for k in KeygenResult.__dataclass_fields__})
        share = cls(
            participant_id=record["participant_id"], index=record["index"], value=0,
            public_key=public.public_key, address=public.address, chain=public.chain,
            threshold=public.threshold, total_parties=public.total_parties,
            public_shares=public.public_shares, participants=public.participants,
            paillier_public=public.paillier_public, paillier_p=0, paillier_q=0,
            created_at=record["created_at"])
        secret = envelope.unseal(record["sealed"], passphrase, share._aad()).decode()
        try:
            value, p, q = (int(x, 16) for x in secret.split(":"))
        except ValueError:
            raise SealError("sealed share has an unexpected layout") from None
        share.value, share.paillier_p, share.paillier_q = value, p, q
        if compressed_hex(pub_key_from_priv(value)) != public.public_shares[share.index]:
            raise SealError("unsealed share does not match its public share")
        return share

    def wipe(self) -> None:
        self.value = 0
        self.paillier_p = 0
        self.paillier_q = 0


class KeyShareGenerator:
    """
    The party-local side of key generation. One instance per party per
    session; it holds the polynomial and the decrypted incoming shares and
    never hands them to anyone.
    """

    def __init__(self, session_id: str, participant_id: str, index: int, settings: Settings = None):
        self.session_id = session_id
        self.participant_id = participant_id
        self.index = index
        self.settings = settings or Settings()
        self.round = 0
        self.threshold = None
        self.total_parties = None
        self._poly: Optional[Polynomial] = None
        self._enc_key = None
        self._paillier_priv = None
        self._dealers: Dict[int, DealerCommitment] = {}
        self._share: Optional[int] = None

    def begin_generation(self, threshold: int, total_parties: int) -> KeygenRound1:
        validate_parameters(threshold, total_parties)
        if not 1 <= self.index <= total_parties:
            raise InvalidParameters(f"index {self.index} outside 1..{total_parties}")
        self.threshold, self.total_parties = threshold, total_parties
        self._poly = Polynomial(threshold)
        commitments = self._poly.commitments()
        proof = schnorr_nizk.prove(self._poly.secret, proof_label(self.session_id, "keygen-r1", self.index))
        pub, self._paillier_priv = paillier.generate_paillier_keypair(n_length=self.settings.paillier_bits)
        self._enc_key = envelope.generate_encryption_key()
        self.round = 1
        logger.debug(f"Party {self.index} dealt a degree {threshold - 1} polynomial in session {self.session_id}")
        return KeygenRound1(
            commitments=[compressed_hex(C) for C in commitments],
            proof=proof_to_model(proof),
            paillier_n=f"{pub.n:x}",
            paillier_proof=[f"{x:x}" for x in squarefree_prove(
                self._paillier_priv.p, self._paillier_priv.q,
                proof_label(self.session_id, "paillier", self.index))],
            enc_key=envelope.public_key_hex(self._enc_key),
        )

    def accept_contribution(self, bundle: Mapping[int, object]):
        """
        Feed the closed round's bundle (index -> payload) and get this party's
        payload for the next round.
        """
        if set(bundle) != set(range(1, self.total_parties + 1)):
            raise ParticipantCountMismatch(
                f"round {self.round} bundle has parties {sorted(bundle)}, expected 1..{self.total_parties}")
        if self.round == 1:
            return self._deal_shares(bundle)
        if self.round == 2:
            return self._merge_shares(bundle)
        raise InvalidParameters(f"no contribution expected after round {self.round}")

    def _deal_shares(self, bundle) -> KeygenRound2:
        for index, payload in bundle.items():
            self._dealers[index] = verify_round1(self.session_id, index, payload, self.threshold)
        mine = self._dealers[self.index]
        if mine.commitments != tuple(self._poly.commitments()):
            raise CommitmentVerificationFailed("round 1 bundle does not carry our own commitments")
        shares = {}
        for j, dealer in self._dealers.items():
            if j == self.index:
                continue
            plaintext = self._poly(j).to_bytes(32, "big")
            shares[j] = envelope.ecies_encrypt(dealer.enc_key, plaintext, share_aad(self.session_id, self.index, j))
        self.round = 2
        return KeygenRound2(shares=shares)

    def _merge_shares(self, bundle) -> KeygenRound3:
        total = self._poly(self.index)
        for j, payload in bundle.items():
            if j == self.index:
                continue
            verify_round2_addressing(j, payload, bundle.keys())
            try:
                raw = envelope.ecies_decrypt(self._enc_key, payload.shares[self.index].model_dump(),
                                             share_aad(self.session_id, j, self.index))
            except SealError as e:
                raise CommitmentVerificationFailed(f"share from party {j}: {e}") from None
            value = int.from_bytes(raw, "big")
            if value >= order or not verify_share(self.index, value, self._dealers[j].commitments):
                raise CommitmentVerificationFailed(f"share from party {j} does not match its commitments")
            total = (total + value) % order
        self._poly.wipe()
        self._poly = None
        self._enc_key = None
        self._share = total
        X = pub_key_from_priv(total)
        proof = schnorr_nizk.prove(total, proof_label(self.session_id, "keygen-r3", self.index))
        self.round = 3
        return KeygenRound3(public_share=compressed_hex(X), proof=proof_to_model(proof))

    def finalize(self, bundle: Mapping[int, KeygenRound3], participants: Mapping[str, int],
                 chain: str = None) -> KeyShare:
        """Build this party's KeyShare once every public share is in."""
        if self.round != 3 or self._share is None:
            raise InvalidParameters("finalize called before all shares were merged")
        if set(bundle) != set(self._dealers):
            raise ParticipantCountMismatch("round 3 bundle is missing parties")
        public_shares = {}
        for j, payload in bundle.items():
            public_shares[j] = compressed_hex(verify_round3(self.session_id, j, payload, self._dealers))
        chain = chain or self.settings.default_chain
        pub = aggregate_public_key(self._dealers)
        key_share = KeyShare(
            participant_id=self.participant_id,
            index=self.index,
            value=self._share,
            public_key=encode_point(pub).hex(),
            address=derive_address(pub, chain),
            chain=chain,
            threshold=self.threshold,
            total_parties=self.total_parties,
            public_shares=public_shares,
            participants=dict(participants),
            paillier_public={j: f"{d.paillier_n:x}" for j, d in self._dealers.items()},
            paillier_p=self._paillier_priv.p,
            paillier_q=self._paillier_priv.q,
        )
        self.wipe()
        logger.info(f"Party {self.index} holds its key share for {key_share.address}")
        return key_share

    def wipe(self) -> None:
        if self._poly is not None:
            self._poly.wipe()
        self._poly = None
        self._enc_key = None
        self._paillier_priv = None
        self._share = None


class KeygenAggregator:
    """
    Coordinator side of key generation: sees only public payloads, verifies
    them as they arrive and computes the public result once round 3 closes.
    """

    kind = "keygen"

    def __init__(self, session_id: str, threshold: int, total_parties: int, chain: str):
        self.session_id = session_id
        self.threshold = threshold
        self.total_parties = total_parties
        self.chain = chain
        self._dealers: Dict[int, DealerCommitment] = {}

    def quorum_needed(self, round: int) -> int:
        return self.total_parties

    def accept(self, round: int, index: int, payload, participants: Mapping[str, int]) -> None:
        if round == 1:
            self._dealers[index] = verify_round1(self.session_id, index, payload, self.threshold)
        elif round == 2:
            verify_round2_addressing(index, payload, participants.values())
        elif round == 3:
            verify_round3(self.session_id, index, payload, self._dealers)

    def close_round(self, round: int, bundle: Mapping[int, object], participants: Mapping[str, int]):
        if round < 3:
            return None
        public_shares = {j: bundle[j].public_share for j in sorted(bundle)}
        pub = aggregate_public_key(self._dealers)
        result = KeygenResult(
            public_key=encode_point(pub).hex(),
            address=derive_address(pub, self.chain),
            chain=self.chain,
            threshold=self.threshold,
            total_parties=self.total_parties,
            participants=dict(participants),
            public_shares=public_shares,
            paillier_public={j: f"{d.paillier_n:x}" for j, d in sorted(self._dealers.items())},
        )
        return result

    def discard(self) -> None:
        self._dealers.clear()
