"""
Run every party of a session inside one process.

Used by the demo CLI and the tests: it plays all parties, pushes their
payloads through a transport and submits whatever comes out on the other
side to the coordinator, exactly as separate devices would.
"""

import logging
from typing import Dict, Iterable, Mapping, Tuple

from .errors import InsufficientQuorum
from .keygen import KeyShare, KeyShareGenerator, KeygenResult
from .payloads import SessionKind
from .session import SessionCoordinator
from .signing import CombinedSignature, SigningRequest, ThresholdSigner
from .transport import InMemoryTransport, QRChunkTransport, Transport

logger = logging.getLogger(__name__)


def relay_round(coordinator: SessionCoordinator, transport: Transport, session_id: str, round: int,
                payloads: Mapping[str, object]) -> Dict[int, object]:
    """Send each party's payload, submit what arrives, return the closed round's bundle."""
    for pid, payload in payloads.items():
        if not transport.send(session_id, round, pid, payload.to_bytes()):
            raise RuntimeError(f"transport refused round {round} payload from {pid}")
    if isinstance(transport, QRChunkTransport):
        frames, transport.outbox = transport.outbox, []
        # camera reads the display back to front
        for frame in reversed(frames):
            transport.scan(frame)
    received = transport.receive(session_id, round)
    for pid in payloads:
        coordinator.submit_round_payload(session_id, pid, round, received[pid])
    return coordinator.round_bundle(session_id, round)


def run_keygen(coordinator: SessionCoordinator, participant_ids: Iterable[str], threshold: int,
               chain: str = None, transport: Transport = None) -> Tuple[KeygenResult, Dict[str, KeyShare]]:
    participant_ids = list(participant_ids)
    transport = transport or InMemoryTransport()
    total = len(participant_ids)
    session_id = coordinator.create(SessionKind.KEYGEN, threshold, total, chain=chain)
    generators = {}
    for pid in participant_ids:
        participant = coordinator.join(session_id, pid)
        generators[pid] = KeyShareGenerator(session_id, pid, participant.index, coordinator.settings)
    indices = coordinator.participants(session_id)

    bundle = relay_round(coordinator, transport, session_id, 1,
                         {pid: g.begin_generation(threshold, total) for pid, g in generators.items()})
    for round in (2, 3):
        bundle = relay_round(coordinator, transport, session_id, round,
                             {pid: g.accept_contribution(bundle) for pid, g in generators.items()})
    result = coordinator.result(session_id)
    shares = {pid: g.finalize(bundle, indices, result.chain) for pid, g in generators.items()}
    logger.info(f"Key generation {session_id} produced {result.address}")
    return result, shares


def run_signing(coordinator: SessionCoordinator, key_shares: Mapping[str, KeyShare], message_hash: bytes,
                transport: Transport = None) -> CombinedSignature:
    transport = transport or InMemoryTransport()
    first = next(iter(key_shares.values()))
    key = first.public_result()
    if len(key_shares) != key.threshold:
        raise InsufficientQuorum(f"pass exactly {key.threshold} signers, got {len(key_shares)}")
    session_id = coordinator.create(SessionKind.SIGNING, key.threshold, key.total_parties,
                                    request=SigningRequest(message_hash, key))
    signers = {}
    for pid, share in key_shares.items():
        coordinator.join(session_id, pid)
        signers[pid] = ThresholdSigner(session_id, share)

    bundle = relay_round(coordinator, transport, session_id, 1,
                         {pid: s.begin_signing(message_hash, key.threshold) for pid, s in signers.items()})
    bundle = relay_round(coordinator, transport, session_id, 2,
                         {pid: s.respond_mta(bundle) for pid, s in signers.items()})
    bundle = relay_round(coordinator, transport, session_id, 3,
                         {pid: s.reveal_nonce(bundle) for pid, s in signers.items()})
    partials = {}
    for pid, signer in signers.items():
        partials[pid] = signer.to_payload(signer.partial_sign(message_hash, signer.joint_nonce(bundle)))
    relay_round(coordinator, transport, session_id, 4, partials)
    return coordinator.result(session_id)
