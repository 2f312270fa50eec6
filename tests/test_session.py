"""
Tests
"""

import threading
import time
import warnings
from pathlib import Path
from hashlib import sha256

import pytest

from mpcecdsa import address, session
from mpcecdsa.config import Settings
from mpcecdsa.errors import (DuplicateSubmission, InvalidParameters, InvalidPayload, RoundMismatch,
                             CommitmentVerificationFailed, SessionClosed, SessionExpired, SessionFull,
                             SessionNotFound, UnknownParticipant, UnsupportedChain)
from mpcecdsa.keygen import KeyShareGenerator
from mpcecdsa.local import relay_round
from mpcecdsa.payloads import SessionKind, SignRound3
from mpcecdsa.session import SessionCoordinator, SessionState, SessionSweeper
from mpcecdsa.signing import SigningRequest, ThresholdSigner, verify
from mpcecdsa.transport import InMemoryTransport


def signing_session(coordinator, shares, pids, digest, rounds=3):
    """Create a signing session and drive it through `rounds` rounds."""
    key = shares[pids[0]].public_result()
    sid = coordinator.create(SessionKind.SIGNING, key.threshold, key.total_parties,
                             request=SigningRequest(digest, key))
    signers = {}
    for pid in pids:
        coordinator.join(sid, pid)
        signers[pid] = ThresholdSigner(sid, shares[pid])
    transport = InMemoryTransport()
    bundle = relay_round(coordinator, transport, sid, 1, {pid: s.begin_signing(digest) for pid, s in signers.items()})
    if rounds >= 2:
        bundle = relay_round(coordinator, transport, sid, 2, {pid: s.respond_mta(bundle) for pid, s in signers.items()})
    if rounds >= 3:
        bundle = relay_round(coordinator, transport, sid, 3, {pid: s.reveal_nonce(bundle) for pid, s in signers.items()})
    return sid, signers, bundle


def round4_payloads(signers, bundle, digest):
    return {pid: s.to_payload(s.partial_sign(digest, s.joint_nonce(bundle))).to_bytes() for pid, s in signers.items()}


@pytest.fixture
def fake_clock():
    now = [0.0]
    return now


@pytest.fixture
def timed_coordinator(fake_clock):
    settings = Settings(paillier_bits=1024, session_ttl=60, retention=30)
    return SessionCoordinator(settings, clock=lambda: fake_clock[0])


def test_signing_quorum_gating(coordinator, keygen_2_of_3):
    result, shares = keygen_2_of_3
    digest = sha256(b"quorum").digest()
    sid, signers, bundle = signing_session(coordinator, shares, ["alice", "carol"], digest)
    partials = round4_payloads(signers, bundle, digest)

    status = coordinator.submit_round_payload(sid, "alice", 4, partials["alice"])
    assert status.state is SessionState.COLLECTING
    assert status.round == 4
    pytest.raises(SessionClosed, coordinator.result, sid)

    status = coordinator.submit_round_payload(sid, "carol", 4, partials["carol"])
    assert status.state is SessionState.COMPLETED
    signature = coordinator.result(sid)
    assert verify(digest, signature, result.public_key)
    assert coordinator.list_active() == []


def test_round_completes_exactly_once_under_racing_submissions(coordinator, keygen_2_of_3):
    _, shares = keygen_2_of_3
    digest = sha256(b"race").digest()
    sid, signers, bundle = signing_session(coordinator, shares, ["bob", "carol"], digest)
    partials = round4_payloads(signers, bundle, digest)

    protocol = coordinator.store.get(sid).protocol
    calls = []
    close_round = protocol.close_round

    def counting_close_round(round, *args):
        calls.append(round)
        return close_round(round, *args)

    protocol.close_round = counting_close_round
    barrier = threading.Barrier(len(partials))
    states = []

    def submit(pid):
        barrier.wait()
        states.append(coordinator.submit_round_payload(sid, pid, 4, partials[pid]).state)

    threads = [threading.Thread(target=submit, args=(pid,)) for pid in partials]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert calls == [4]
    assert sorted(s.value for s in states) == ["collecting", "completed"]


def test_first_submitters_fix_the_signing_quorum(coordinator, keygen_2_of_3):
    _, shares = keygen_2_of_3
    digest = sha256(b"who signs").digest()
    key = shares["alice"].public_result()
    sid = coordinator.create(SessionKind.SIGNING, 2, 3, request=SigningRequest(digest, key))
    payloads = {}
    for pid in ("alice", "bob", "carol"):
        coordinator.join(sid, pid)
        payloads[pid] = ThresholdSigner(sid, shares[pid]).begin_signing(digest).to_bytes()
    coordinator.submit_round_payload(sid, "alice", 1, payloads["alice"])
    status = coordinator.submit_round_payload(sid, "bob", 1, payloads["bob"])
    assert status.round == 2
    assert coordinator.store.get(sid).protocol.quorum == [1, 2]
    pytest.raises(RoundMismatch, coordinator.submit_round_payload, sid, "carol", 1, payloads["carol"])
    pytest.raises(UnknownParticipant, coordinator.submit_round_payload, sid, "carol", 2, b"{}")
    assert coordinator.status(sid).participant_count == 3


def test_protocol_fault_fails_the_session(coordinator, keygen_2_of_3):
    _, shares = keygen_2_of_3
    digest = sha256(b"cheat").digest()
    sid, signers, bundle = signing_session(coordinator, shares, ["alice", "bob"], digest, rounds=2)
    reveals = {pid: s.reveal_nonce(bundle) for pid, s in signers.items()}
    # bob opens alice's Gamma instead of his own
    cheat = SignRound3(gamma_point=reveals["alice"].gamma_point, blinding=reveals["bob"].blinding,
                       delta=reveals["bob"].delta)
    coordinator.submit_round_payload(sid, "alice", 3, reveals["alice"].to_bytes())
    with pytest.raises(CommitmentVerificationFailed):
        coordinator.submit_round_payload(sid, "bob", 3, cheat.to_bytes())
    assert coordinator.status(sid).state is SessionState.FAILED
    pytest.raises(SessionClosed, coordinator.round_bundle, sid, 2)
    pytest.raises(SessionClosed, coordinator.submit_round_payload, sid, "bob", 3, reveals["bob"].to_bytes())


def test_completed_session_keeps_only_the_final_round(coordinator, keygen_2_of_3):
    _, shares = keygen_2_of_3
    digest = sha256(b"bundle").digest()
    sid, signers, bundle = signing_session(coordinator, shares, ["alice", "bob"], digest)
    relay_round(coordinator, InMemoryTransport(), sid, 4, {
        pid: s.to_payload(s.partial_sign(digest, s.joint_nonce(bundle))) for pid, s in signers.items()})
    assert sorted(coordinator.round_bundle(sid, 4)) == [1, 2]
    pytest.raises(RoundMismatch, coordinator.round_bundle, sid, 1)


def test_create_validation(coordinator, keygen_2_of_3):
    result, _ = keygen_2_of_3
    pytest.raises(InvalidParameters, coordinator.create, "keygen", 4, 3)
    pytest.raises(InvalidParameters, coordinator.create, "keygen", 1, 3)
    pytest.raises(InvalidParameters, coordinator.create, "refresh", 2, 3)
    pytest.raises(InvalidParameters, coordinator.create, "signing", 2, 3)
    request = SigningRequest(sha256(b"x").digest(), result)
    pytest.raises(InvalidParameters, coordinator.create, "signing", 3, 3, request=request)


def test_join(coordinator, keygen_2_of_3):
    result, _ = keygen_2_of_3
    sid = coordinator.create("keygen", 2, 2)
    first = coordinator.join(sid, "alice")
    assert coordinator.join(sid, "alice") is first
    assert coordinator.join(sid, "bob").index == 2
    pytest.raises(SessionFull, coordinator.join, sid, "carol")
    pytest.raises(SessionNotFound, coordinator.join, "nope", "alice")

    signing = coordinator.create("signing", 2, 3, request=SigningRequest(sha256(b"x").digest(), result))
    assert coordinator.join(signing, "carol").index == 3
    pytest.raises(UnknownParticipant, coordinator.join, signing, "mallory")


def test_submission_errors(coordinator):
    sid = coordinator.create("keygen", 2, 3)
    for pid in ("alice", "bob"):
        coordinator.join(sid, pid)
    payload = KeyShareGenerator(sid, "alice", 1, coordinator.settings).begin_generation(2, 3).to_bytes()

    pytest.raises(UnknownParticipant, coordinator.submit_round_payload, sid, "mallory", 1, payload)
    pytest.raises(RoundMismatch, coordinator.submit_round_payload, sid, "alice", 2, payload)
    pytest.raises(InvalidPayload, coordinator.submit_round_payload, sid, "alice", 1, b"not json")
    pytest.raises(InvalidPayload, coordinator.submit_round_payload, sid, "alice", 1, b'{"kind": "signing"}')
    # a malformed payload is the sender's problem, the session carries on
    assert coordinator.status(sid).state is SessionState.COLLECTING

    status = coordinator.submit_round_payload(sid, "alice", 1, payload)
    assert (status.round, status.quorum_needed, status.participant_count) == (1, 3, 2)
    assert status.to_dict()["state"] == "collecting"
    pytest.raises(DuplicateSubmission, coordinator.submit_round_payload, sid, "alice", 1, payload)
    # late joiners are fine while round 1 is still open
    assert coordinator.join(sid, "carol").index == 3


def test_idle_session_expires(timed_coordinator, fake_clock):
    sid = timed_coordinator.create("keygen", 2, 2)
    timed_coordinator.join(sid, "alice")
    fake_clock[0] = 61
    with pytest.raises(SessionExpired):
        timed_coordinator.submit_round_payload(sid, "alice", 1, b"{}")
    assert timed_coordinator.status(sid).state is SessionState.EXPIRED
    assert timed_coordinator.list_active() == []

    # purged once the retention window is over
    fake_clock[0] = 100
    assert timed_coordinator.expire_idle() == []
    assert len(timed_coordinator.store) == 0
    pytest.raises(SessionNotFound, timed_coordinator.submit_round_payload, sid, "alice", 1, b"{}")


def test_expire_idle_reports_expired_sessions(timed_coordinator, fake_clock):
    busy = timed_coordinator.create("keygen", 2, 2)
    idle = timed_coordinator.create("keygen", 2, 2)
    fake_clock[0] = 50
    timed_coordinator.join(busy, "alice")
    assert timed_coordinator.expire_idle(now=100) == [idle]
    assert [s.session_id for s in timed_coordinator.list_active()] == [busy]


def test_abort(coordinator):
    sid = coordinator.create("keygen", 2, 2)
    coordinator.join(sid, "alice")
    assert coordinator.abort(sid).state is SessionState.FAILED
    pytest.raises(SessionClosed, coordinator.submit_round_payload, sid, "alice", 1, b"{}")
    pytest.raises(SessionClosed, coordinator.result, sid)
    pytest.raises(SessionClosed, coordinator.round_bundle, sid, 1)
    # aborting twice is harmless
    assert coordinator.abort(sid).state is SessionState.FAILED


def test_sweeper(timed_coordinator, fake_clock):
    sid = timed_coordinator.create("keygen", 2, 2)
    fake_clock[0] = 1000
    sweeper = SessionSweeper(timed_coordinator, interval=0.01)
    sweeper.start()
    try:
        deadline = time.monotonic() + 5
        while timed_coordinator.status(sid).state is not SessionState.EXPIRED and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        sweeper.stop(timeout=1)
    assert timed_coordinator.status(sid).state is SessionState.EXPIRED
    assert not sweeper.is_alive()


def test_unknown_chain_is_rejected_up_front(coordinator):
    with pytest.raises(UnsupportedChain):
        coordinator.create("keygen", 2, 2, chain="solana")
    assert len(coordinator.store) == 0


def test_failed_aggregation_never_leaves_a_session_advancing(coordinator, monkeypatch):
    address.register_chain("short-lived", address.evm_address)
    sid = coordinator.create("keygen", 2, 2, chain="short-lived")
    # the derivation disappears before the key exists
    monkeypatch.delitem(address._CHAINS, "short-lived")
    gens = {}
    for pid in ("alice", "bob"):
        participant = coordinator.join(sid, pid)
        gens[pid] = KeyShareGenerator(sid, pid, participant.index, coordinator.settings)
    transport = InMemoryTransport()
    bundle = relay_round(coordinator, transport, sid, 1, {pid: g.begin_generation(2, 2) for pid, g in gens.items()})
    bundle = relay_round(coordinator, transport, sid, 2, {pid: g.accept_contribution(bundle) for pid, g in gens.items()})
    with pytest.raises(UnsupportedChain):
        relay_round(coordinator, transport, sid, 3, {pid: g.accept_contribution(bundle) for pid, g in gens.items()})
    status = coordinator.status(sid)
    assert (status.state, status.round) == (SessionState.FAILED, 3)
    pytest.raises(SessionClosed, coordinator.round_bundle, sid, 2)


def test_session_module_compiles_without_warnings():
    source = Path(session.__file__).read_text()
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(source, session.__file__, "exec")
