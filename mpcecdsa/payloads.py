"""
Round payload schemas.

Every payload is a tagged variant keyed by (session kind, round) with a fixed
schema per tag. Bytes coming off a transport are decoded and validated here
before keygen/signing code touches them. Structural problems raise
InvalidPayload; cryptographic checks (points on the curve, proofs) belong to
the protocol code and raise CommitmentVerificationFailed.

Scalars and Paillier ciphertexts travel as lowercase hex, points as
compressed SEC1 hex.
"""

from enum import Enum
from typing import Annotated, Dict, List, Literal, Type

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, ValidationError

from .errors import InvalidPayload

Hex = Annotated[str, StringConstraints(pattern=r"^[0-9a-fA-F]+$", max_length=4096)]
PointHex = Annotated[str, StringConstraints(pattern=r"^0[23][0-9a-fA-F]{64}$")]


class SessionKind(str, Enum):
    KEYGEN = "keygen"
    SIGNING = "signing"


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")


class SchnorrProofModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    V: PointHex
    A: PointHex
    r: Hex
    c: Hex
    user_id: Hex


class EncryptedBox(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    epk: PointHex
    nonce: Annotated[str, StringConstraints(pattern=r"^[0-9a-f]{24}$")]
    ct: Hex


class KeygenRound1(_Payload):
    kind: Literal["keygen"] = "keygen"
    round: Literal[1] = 1
    commitments: List[PointHex] = Field(min_length=2)
    proof: SchnorrProofModel
    paillier_n: Hex
    paillier_proof: List[Hex]
    enc_key: PointHex


class KeygenRound2(_Payload):
    kind: Literal["keygen"] = "keygen"
    round: Literal[2] = 2
    shares: Dict[int, EncryptedBox]


class KeygenRound3(_Payload):
    kind: Literal["keygen"] = "keygen"
    round: Literal[3] = 3
    public_share: PointHex
    proof: SchnorrProofModel


class SignRound1(_Payload):
    kind: Literal["signing"] = "signing"
    round: Literal[1] = 1
    commitment: Annotated[str, StringConstraints(pattern=r"^[0-9a-f]{64}$")]
    enc_k: Hex


class MtaLeg(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    ciphertext: Hex
    B: PointHex
    B_prime: PointHex
    B_proof: SchnorrProofModel
    B_prime_proof: SchnorrProofModel


class MtaResponse(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    gamma: MtaLeg
    w: MtaLeg


class SignRound2(_Payload):
    kind: Literal["signing"] = "signing"
    round: Literal[2] = 2
    mta: Dict[int, MtaResponse]


class SignRound3(_Payload):
    kind: Literal["signing"] = "signing"
    round: Literal[3] = 3
    gamma_point: PointHex
    blinding: Annotated[str, StringConstraints(pattern=r"^[0-9a-f]{64}$")]
    delta: Hex


class SignRound4(_Payload):
    kind: Literal["signing"] = "signing"
    round: Literal[4] = 4
    s: Hex


SCHEMAS: Dict[tuple, Type[_Payload]] = {
    (SessionKind.KEYGEN, 1): KeygenRound1,
    (SessionKind.KEYGEN, 2): KeygenRound2,
    (SessionKind.KEYGEN, 3): KeygenRound3,
    (SessionKind.SIGNING, 1): SignRound1,
    (SessionKind.SIGNING, 2): SignRound2,
    (SessionKind.SIGNING, 3): SignRound3,
    (SessionKind.SIGNING, 4): SignRound4,
}

MAX_ROUNDS = {
    SessionKind.KEYGEN: 3,
    SessionKind.SIGNING: 4,
}


def decode_payload(kind: SessionKind, round: int, data: bytes) -> _Payload:
    """Parse and validate payload bytes against the schema for (kind, round)."""
    try:
        schema = SCHEMAS[(SessionKind(kind), round)]
    except (KeyError, ValueError):
        raise InvalidPayload(f"no payload schema for {kind} round {round}") from None
    try:
        return schema.model_validate_json(data)
    except ValidationError as e:
        raise InvalidPayload(
            f"{kind.value if isinstance(kind, SessionKind) else kind} round {round} payload "
            f"rejected: {e.error_count()} validation error(s)") from e
