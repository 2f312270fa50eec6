"""
Toy implementation of ECDSA threshold signing as described here:
https://eprint.iacr.org/2020/540.pdf

t parties holding Shamir shares x_i of the group key sign a digest without
anyone learning x or the nonce:

1. each signer samples k_i and gamma_i, commits to Gamma_i = gamma_i*G and
   publishes Enc_i(k_i) under its own Paillier key.
2. multiplicative to additive (MtA) conversion: for every peer j, signer i
   returns Enc_j(k_j*gamma_i + beta') and Enc_j(k_j*w_i + nu'), where
   w_i = lambda_i * x_i is its additive share for the active quorum.
3. each signer decrypts what it was sent and ends up with additive shares
   delta_i of k*gamma and sigma_i of k*x, then opens Gamma_i and delta_i.
4. R = (sum Gamma_i) * delta^-1 = k^-1 * G, r = R.x mod n and each signer
   returns s_i = m*k_i + r*sigma_i. s = sum s_i = k*(m + r*x) is a standard
   ECDSA signature with nonce k^-1.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Sequence

from phe import paillier

from . import schnorr_nizk
from .commitment_ro import commit, verify_commitment
from .ecdsa_op import (Point, Signature, O, order, ec_add, ec_scalar_mul, pub_key_from_priv,
                       scalar_inv_mod_order, compressed_hex, decode_point, digest_to_int,
                       normalize_s, recovery_id, ecdsa_verify)
from .errors import (CommitmentVerificationFailed, DegenerateNonce, DuplicateIndex,
                     InsufficientQuorum, InsufficientShares, InvalidParameters,
                     ParticipantCountMismatch, SignatureVerificationFailed)
from .keygen import KeyShare, KeygenResult, proof_to_model, proof_from_model
from .payloads import SignRound1, SignRound2, SignRound3, SignRound4, MtaLeg, MtaResponse
from .sharing import lagrange_coefficient
from .toyrand import int_sample

logger = logging.getLogger(__name__)

CombinedSignature = Signature

# MtA masks are drawn below q^3 so the masked product k*b < q^2 is hidden to
# within 2^-256. The plaintext stays under 2^770, below N/3 for any N of at
# least 1024 bits, so decryption never wraps.
MTA_MASK_BOUND = order ** 3


@dataclass(frozen=True)
class SigningRequest:
    """What a signing session signs and with which (public) key."""
    message_hash: bytes
    key: KeygenResult

    def __post_init__(self):
        if len(self.message_hash) != 32:
            raise InvalidParameters("message_hash must be a 32 byte digest")


@dataclass(frozen=True)
class JointNonce:
    R: Point
    r: int


@dataclass(frozen=True)
class PartialSignatureShare:
    participant_id: str
    index: int
    value: int = field(repr=False)
    message_hash: bytes
    timestamp: float = field(default_factory=time.time)


def commitment_label(session_id: str, index: int) -> bytes:
    return f"{session_id}:gamma:{index}".encode()


def mta_label(session_id: str, sender: int, recipient: int, leg: str, which: str) -> bytes:
    return f"{session_id}:mta:{sender}->{recipient}:{leg}:{which}".encode()


def additive_share_point(key: KeygenResult, index: int, quorum: Sequence[int]) -> Point:
    """W_i = lambda_i * X_i, the public image of signer i's additive share."""
    return ec_scalar_mul(key.public_share_point(index), lagrange_coefficient(index, quorum))


def _paillier_public(key: KeygenResult, index: int) -> paillier.PaillierPublicKey:
    return paillier.PaillierPublicKey(int(key.paillier_public[index], 16))


def _ciphertext(pub: paillier.PaillierPublicKey, hex_value: str, what: str) -> paillier.EncryptedNumber:
    c = int(hex_value, 16)
    if not 0 < c < pub.nsquare:
        raise CommitmentVerificationFailed(f"{what}: ciphertext out of range")
    return paillier.EncryptedNumber(pub, c, 0)


def _leg_point(hex_point: str, what: str) -> Point:
    try:
        return decode_point(hex_point)
    except ValueError as e:
        raise CommitmentVerificationFailed(f"{what}: {e}") from None


def verify_mta_leg(session_id: str, sender: int, recipient: int, name: str, leg: MtaLeg):
    """
    Check the proofs attached to one MtA leg and return (B, B').
    B is b*G for the sender's multiplicand, B' is beta'*G for its mask.
    """
    B = _leg_point(leg.B, f"party {sender} {name} leg")
    B_prime = _leg_point(leg.B_prime, f"party {sender} {name} leg")
    B_proof = proof_from_model(leg.B_proof)
    B_prime_proof = proof_from_model(leg.B_prime_proof)
    if (B_proof.V != B or
            not schnorr_nizk.verify(B_proof, mta_label(session_id, sender, recipient, name, "B"))):
        raise CommitmentVerificationFailed(f"party {sender} {name} leg proof for B does not verify")
    if (B_prime_proof.V != B_prime or
            not schnorr_nizk.verify(B_prime_proof, mta_label(session_id, sender, recipient, name, "B'"))):
        raise CommitmentVerificationFailed(f"party {sender} {name} leg proof for B' does not verify")
    return B, B_prime


def verify_mta_addressing(index: int, payload: SignRound2, quorum: Sequence[int]) -> None:
    expected = set(quorum) - {index}
    if set(payload.mta) != expected:
        raise ParticipantCountMismatch(
            f"party {index} answered MtA for {sorted(payload.mta)}, expected {sorted(expected)}")


def combine_nonce_commitments(session_id: str,
                              commitments: Mapping[int, SignRound1],
                              reveals: Mapping[int, SignRound3]) -> JointNonce:
    """
    Open every Gamma_i against its round 1 commitment and compute the joint
    nonce point R = delta^-1 * sum Gamma_i and r = R.x mod n.
    """
    if set(commitments) != set(reveals):
        raise ParticipantCountMismatch(
            f"nonce reveals from {sorted(reveals)} do not match commitments from {sorted(commitments)}")
    gamma = O
    delta = 0
    for index in sorted(reveals):
        reveal = reveals[index]
        Gamma = _leg_point(reveal.gamma_point, f"party {index} nonce reveal")
        if not verify_commitment(bytes.fromhex(commitments[index].commitment),
                                 bytes.fromhex(reveal.blinding),
                                 bytes.fromhex(reveal.gamma_point),
                                 commitment_label(session_id, index)):
            raise CommitmentVerificationFailed(f"party {index} nonce reveal does not open its commitment")
        gamma = ec_add(gamma, Gamma)
        delta = (delta + int(reveal.delta, 16)) % order
    if delta == 0 or gamma is O:
        raise DegenerateNonce("joint nonce is degenerate, restart with fresh nonces")
    R = ec_scalar_mul(gamma, scalar_inv_mod_order(delta))
    r = R.x % order
    if r == 0:
        raise DegenerateNonce("r = 0, restart with fresh nonces")
    return JointNonce(R, r)


def combine(partials: Sequence[PartialSignatureShare], threshold: int, joint_nonce: JointNonce) -> CombinedSignature:
    """
    Sum the s_i of a full quorum. The partials are already additive (the
    Lagrange weights went into sigma_i) so this is combine_at_point with
    unit weights. The result is low-s normalised with its recovery id.
    """
    if len(partials) < threshold:
        raise InsufficientShares(f"need {threshold} partial signatures, got {len(partials)}")
    indices = [p.index for p in partials]
    if len(set(indices)) != len(indices):
        raise DuplicateIndex(f"duplicate partial signature indices {sorted(indices)}")
    if len({p.message_hash for p in partials}) != 1:
        raise CommitmentVerificationFailed("partial signatures are over different digests")
    s = 0
    for partial in partials:
        s = (s + partial.value) % order
    if s == 0:
        raise DegenerateNonce("s = 0, restart with fresh nonces")
    s, flipped = normalize_s(s)
    return CombinedSignature(joint_nonce.r, s, recovery_id(joint_nonce.R, flipped))


def verify(message_hash: bytes, signature, public_key) -> bool:
    return ecdsa_verify(message_hash, signature, public_key)


class ThresholdSigner:
    """
    The party-local side of one signing session. Holds k_i, gamma_i and the
    MtA masks for the duration of the session and wipes them once its
    partial signature is out.
    """

    def __init__(self, session_id: str, key_share: KeyShare):
        self.session_id = session_id
        self.key_share = key_share
        self.index = key_share.index
        self.key = key_share.public_result()
        self.round = 0
        self.message_hash = None
        self.quorum: List[int] = []
        self._k = None
        self._gamma = None
        self._w = None
        self._commitment = None
        self._betas: Dict[int, int] = {}
        self._nus: Dict[int, int] = {}
        self._round1: Dict[int, SignRound1] = {}
        self._claimed_gammas: Dict[int, Point] = {}
        self._delta = None
        self._sigma = None
        self._pub, self._priv = key_share.paillier_keypair()

    def begin_signing(self, message_hash: bytes, threshold: int = None) -> SignRound1:
        if len(message_hash) != 32:
            raise InvalidParameters("message_hash must be a 32 byte digest")
        if threshold is not None and threshold != self.key_share.threshold:
            raise InvalidParameters(f"key was generated for threshold {self.key_share.threshold}, not {threshold}")
        self.message_hash = message_hash
        self._k = int_sample(order)
        self._gamma = int_sample(order)
        gamma_point = bytes.fromhex(compressed_hex(pub_key_from_priv(self._gamma)))
        self._commitment = commit(gamma_point, commitment_label(self.session_id, self.index))
        self.round = 1
        return SignRound1(
            commitment=self._commitment.digest.hex(),
            enc_k=f"{self._pub.encrypt(self._k).ciphertext():x}",
        )

    def respond_mta(self, bundle: Mapping[int, SignRound1]) -> SignRound2:
        """Round 2: answer every other quorum member's Enc_j(k_j)."""
        if self.round != 1:
            raise InvalidParameters(f"MtA responses belong after round 1, we are at {self.round}")
        quorum = sorted(bundle)
        if len(quorum) != self.key_share.threshold:
            raise InsufficientQuorum(f"signing needs exactly {self.key_share.threshold} parties, got {len(quorum)}")
        if self.index not in quorum:
            raise InsufficientQuorum(f"party {self.index} is not part of the signing quorum {quorum}")
        if bundle[self.index].commitment != self._commitment.digest.hex():
            raise CommitmentVerificationFailed("round 1 bundle does not carry our own commitment")
        self.quorum = quorum
        self._round1 = dict(bundle)
        self._w = lagrange_coefficient(self.index, quorum) * self.key_share.value % order
        responses = {}
        for j in quorum:
            if j == self.index:
                continue
            enc_kj = _ciphertext(_paillier_public(self.key, j), bundle[j].enc_k, f"party {j} Enc(k)")
            gamma_leg, beta = self._mta_leg(enc_kj, self._gamma, j, "gamma")
            w_leg, nu = self._mta_leg(enc_kj, self._w, j, "w")
            self._betas[j] = beta
            self._nus[j] = nu
            responses[j] = MtaResponse(gamma=gamma_leg, w=w_leg)
        self.round = 2
        return SignRound2(mta=responses)

    def _mta_leg(self, enc_a: paillier.EncryptedNumber, b: int, recipient: int, name: str):
        """
        Enc(a) * b + beta' for the recipient; we keep beta = -beta'.
        """
        mask = int_sample(MTA_MASK_BOUND)
        alpha = enc_a * b + mask
        B_proof = schnorr_nizk.prove(b, mta_label(self.session_id, self.index, recipient, name, "B"))
        B_prime_proof = schnorr_nizk.prove(mask, mta_label(self.session_id, self.index, recipient, name, "B'"))
        leg = MtaLeg(
            ciphertext=f"{alpha.ciphertext():x}",
            B=compressed_hex(B_proof.V),
            B_prime=compressed_hex(B_prime_proof.V),
            B_proof=proof_to_model(B_proof),
            B_prime_proof=proof_to_model(B_prime_proof),
        )
        return leg, (-mask) % order

    def _open_leg(self, sender: int, name: str, leg: MtaLeg):
        B, B_prime = verify_mta_leg(self.session_id, sender, self.index, name, leg)
        alpha = self._priv.decrypt(_ciphertext(self._pub, leg.ciphertext, f"party {sender} {name} leg"))
        # alice verifies Bob's Proof. Please refer to section 5 in:
        # https://eprint.iacr.org/2019/114.pdf
        if pub_key_from_priv(alpha) != ec_add(ec_scalar_mul(B, self._k), B_prime):
            raise CommitmentVerificationFailed(f"party {sender} {name} MtA share is inconsistent")
        return alpha % order, B

    def reveal_nonce(self, bundle: Mapping[int, SignRound2]) -> SignRound3:
        """Round 3: finish MtA, derive delta_i and sigma_i, open Gamma_i."""
        if self.round != 2:
            raise InvalidParameters(f"nonce reveal belongs after round 2, we are at {self.round}")
        if sorted(bundle) != self.quorum:
            raise ParticipantCountMismatch(f"round 2 bundle has parties {sorted(bundle)}, quorum is {self.quorum}")
        delta = self._k * self._gamma % order
        sigma = self._k * self._w % order
        for j in self.quorum:
            if j == self.index:
                continue
            verify_mta_addressing(j, bundle[j], self.quorum)
            response = bundle[j].mta[self.index]
            alpha, Gamma_j = self._open_leg(j, "gamma", response.gamma)
            mu, W_j = self._open_leg(j, "w", response.w)
            if W_j != additive_share_point(self.key, j, self.quorum):
                raise CommitmentVerificationFailed(f"party {j} used a share that does not match its public share")
            self._claimed_gammas[j] = Gamma_j
            delta = (delta + alpha + self._betas[j]) % order
            sigma = (sigma + mu + self._nus[j]) % order
        self._delta, self._sigma = delta, sigma
        self._betas.clear()
        self._nus.clear()
        self.round = 3
        return SignRound3(
            gamma_point=compressed_hex(pub_key_from_priv(self._gamma)),
            blinding=self._commitment.blinding.hex(),
            delta=f"{delta:x}",
        )

    def joint_nonce(self, bundle: Mapping[int, SignRound3]) -> JointNonce:
        """Compute R from the round 3 bundle, cross-checking every Gamma_j against MtA."""
        for j, Gamma in self._claimed_gammas.items():
            if bundle[j].gamma_point != compressed_hex(Gamma):
                raise CommitmentVerificationFailed(f"party {j} revealed a Gamma it did not use in MtA")
        return combine_nonce_commitments(self.session_id, self._round1, bundle)

    def partial_sign(self, message_hash: bytes, joint_nonce: JointNonce) -> PartialSignatureShare:
        """
        s_i = m*k_i + r*sigma_i mod n. k_i and sigma_i are wiped afterwards,
        so a signer contributes at most once per nonce.
        """
        if self.round != 3 or self._k is None:
            raise InvalidParameters("partial_sign needs a completed nonce reveal")
        if message_hash != self.message_hash:
            raise InvalidParameters("asked to sign a different digest than the session's")
        m = digest_to_int(message_hash)
        s_i = (m * self._k + joint_nonce.r * self._sigma) % order
        self.wipe()
        self.round = 4
        return PartialSignatureShare(
            participant_id=self.key_share.participant_id,
            index=self.index,
            value=s_i,
            message_hash=message_hash,
        )

    @staticmethod
    def to_payload(partial: PartialSignatureShare) -> SignRound4:
        return SignRound4(s=f"{partial.value:x}")

    def wipe(self) -> None:
        self._k = None
        self._gamma = None
        self._w = None
        self._delta = None
        self._sigma = None
        self._betas.clear()
        self._nus.clear()


class SigningAggregator:
    """
    Coordinator side of signing: verifies public MtA material as it arrives,
    fixes the quorum, combines the nonce and the partial signatures and
    checks the result against the group key.
    """

    kind = "signing"

    def __init__(self, session_id: str, request: SigningRequest):
        self.session_id = session_id
        self.request = request
        self.threshold = request.key.threshold
        self.quorum: List[int] = []
        self._round1: Dict[int, SignRound1] = {}
        self._gamma_claims: Dict[int, Point] = {}
        self.joint: JointNonce = None

    def quorum_needed(self, round: int) -> int:
        return self.threshold

    def accept(self, round: int, index: int, payload, participants: Mapping[str, int]) -> None:
        key = self.request.key
        if round == 1:
            _ciphertext(_paillier_public(key, index), payload.enc_k, f"party {index} Enc(k)")
        elif round == 2:
            verify_mta_addressing(index, payload, self.quorum)
            W = additive_share_point(key, index, self.quorum)
            for j, response in payload.mta.items():
                Gamma, _ = verify_mta_leg(self.session_id, index, j, "gamma", response.gamma)
                W_claim, _ = verify_mta_leg(self.session_id, index, j, "w", response.w)
                if W_claim != W:
                    raise CommitmentVerificationFailed(f"party {index} used a share that does not match its public share")
                previous = self._gamma_claims.setdefault(index, Gamma)
                if previous != Gamma:
                    raise CommitmentVerificationFailed(f"party {index} used different Gammas across MtA")
        elif round == 4:
            if not 0 <= int(payload.s, 16) < order:
                raise CommitmentVerificationFailed(f"party {index} partial signature out of range")

    def close_round(self, round: int, bundle: Mapping[int, object], participants: Mapping[str, int]):
        if round == 1:
            self.quorum = sorted(bundle)
            self._round1 = dict(bundle)
            logger.debug(f"Signing quorum for session {self.session_id} is {self.quorum}")
            return None
        if round == 3:
            for j, Gamma in self._gamma_claims.items():
                if bundle[j].gamma_point != compressed_hex(Gamma):
                    raise CommitmentVerificationFailed(f"party {j} revealed a Gamma it did not use in MtA")
            self.joint = combine_nonce_commitments(self.session_id, self._round1, bundle)
            return None
        if round == 4:
            by_index = {index: pid for pid, index in participants.items()}
            partials = [
                PartialSignatureShare(by_index[i], i, int(bundle[i].s, 16), self.request.message_hash)
                for i in sorted(bundle)
            ]
            signature = combine(partials, self.threshold, self.joint)
            if not verify(self.request.message_hash, signature, self.request.key.public_key):
                raise SignatureVerificationFailed("combined signature does not verify against the group key")
            return signature
        return None

    def discard(self) -> None:
        self._round1.clear()
        self._gamma_claims.clear()
        self.joint = None
