import json
import random

import pytest

from mpcecdsa.errors import IncompletePayload
from mpcecdsa.transport import (InMemoryTransport, QRChunkTransport, chunk_payload, reassemble_chunks,
                                parse_frame)


def test_chunking():
    payload = bytes(range(256)) * 20
    frames = chunk_payload("sid", "alice", "keygen", 2, payload, chunk_size=500)
    headers = [json.loads(f) for f in frames]
    assert len(frames) == len(headers) == headers[0]["totalSequences"] > 1
    assert [h["sequence"] for h in headers] == list(range(1, len(frames) + 1))
    assert all(len(h["payload"]) <= 500 for h in headers)
    assert headers[0]["type"] == "KEYGEN_ROUND2"
    assert headers[0]["sessionId"] == "sid" and headers[0]["partyId"] == "alice"

    shuffled = frames + frames[:2]
    random.shuffle(shuffled)
    assert reassemble_chunks(shuffled) == payload


def test_default_chunk_size():
    frames = chunk_payload("sid", "alice", "signing", 1, b"x" * 3000)
    assert len(frames) == 2


def test_missing_frame():
    frames = chunk_payload("sid", "alice", "keygen", 1, b"y" * 4000, chunk_size=1000)
    with pytest.raises(IncompletePayload):
        reassemble_chunks(frames[:-1])
    pytest.raises(IncompletePayload, reassemble_chunks, [])


def test_mixed_payloads():
    a = chunk_payload("sid", "alice", "keygen", 1, b"a" * 100, chunk_size=50)
    b = chunk_payload("sid", "bob", "keygen", 1, b"b" * 100, chunk_size=50)
    pytest.raises(IncompletePayload, reassemble_chunks, a[:1] + b[1:])


def test_bad_frames():
    pytest.raises(IncompletePayload, parse_frame, "not json")
    frame = json.loads(chunk_payload("sid", "alice", "keygen", 1, b"z")[0])
    frame["sequence"] = 2
    pytest.raises(IncompletePayload, parse_frame, json.dumps(frame))


def test_qr_transport_releases_complete_payloads_only():
    transport = QRChunkTransport("keygen", chunk_size=10)
    assert transport.send("sid", 1, "alice", b"alice's round one payload")
    assert transport.send("sid", 1, "bob", b"bob's round one payload")
    frames = transport.outbox
    bob_frames = [f for f in frames if json.loads(f)["partyId"] == "bob"]
    alice_frames = [f for f in frames if json.loads(f)["partyId"] == "alice"]
    for frame in alice_frames + bob_frames[1:]:
        transport.scan(frame)
    assert transport.receive("sid", 1) == {"alice": b"alice's round one payload"}
    transport.scan(bob_frames[0])
    assert transport.receive("sid", 1)["bob"] == b"bob's round one payload"
    assert transport.receive("sid", 2) == {}


def test_in_memory_transport():
    transport = InMemoryTransport()
    assert transport.send("sid", 1, "alice", b"one")
    # resending the same bytes is fine, different bytes are refused
    assert transport.send("sid", 1, "alice", b"one")
    assert not transport.send("sid", 1, "alice", b"two")
    assert transport.receive("sid", 1) == {"alice": b"one"}
    assert transport.receive("other", 1) == {}
