"""
Transport adapters.

The core treats round payloads as opaque bytes. An adapter moves them
between parties and must hand back complete payloads for a round; how it
chunks and orders them on the way is its own business.

QRChunkTransport models an optical channel: each payload is base64 encoded
and split into sequenced JSON frames small enough for one QR code, the way
the mobile wallet shows them one after another. Frames may be scanned in any
order and more than once; a payload is only released when every frame of it
has been seen.
"""

import base64
import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, Iterable, List, Tuple

from .errors import IncompletePayload

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 2000


class Transport(ABC):

    @abstractmethod
    def send(self, session_id: str, round: int, sender: str, payload: bytes) -> bool:
        """Hand a payload to the channel. Returns False if the channel refused it."""

    @abstractmethod
    def receive(self, session_id: str, round: int) -> Dict[str, bytes]:
        """Complete payloads seen so far for (session, round), keyed by sender."""


class InMemoryTransport(Transport):
    """Loopback channel shared by every party in one process."""

    def __init__(self):
        self._lock = threading.Lock()
        self._boxes: Dict[Tuple[str, int], Dict[str, bytes]] = defaultdict(dict)

    def send(self, session_id, round, sender, payload):
        with self._lock:
            box = self._boxes[(session_id, round)]
            if sender in box:
                return box[sender] == payload
            box[sender] = bytes(payload)
        return True

    def receive(self, session_id, round):
        with self._lock:
            return dict(self._boxes.get((session_id, round), {}))


def frame_type(kind: str, round: int) -> str:
    return f"{kind.upper()}_ROUND{round}"


def chunk_payload(session_id: str, sender: str, kind: str, round: int, payload: bytes,
                  chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[str]:
    """Split payload into JSON frames, each carrying at most chunk_size characters of it."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    text = base64.b64encode(payload).decode("ascii")
    pieces = [text[i:i + chunk_size] for i in range(0, len(text), chunk_size)] or [""]
    return [
        json.dumps({
            "type": frame_type(kind, round),
            "sessionId": session_id,
            "partyId": sender,
            "round": round,
            "sequence": seq,
            "totalSequences": len(pieces),
            "payload": piece,
        }, separators=(",", ":"))
        for seq, piece in enumerate(pieces, 1)
    ]


def parse_frame(frame: str) -> dict:
    try:
        data = json.loads(frame)
        header = {k: data[k] for k in ("type", "sessionId", "partyId", "round", "sequence", "totalSequences")}
        header["payload"] = str(data["payload"])
    except (ValueError, KeyError, TypeError):
        raise IncompletePayload("unreadable frame") from None
    if not isinstance(header["sequence"], int) or not isinstance(header["totalSequences"], int):
        raise IncompletePayload("frame sequence numbers must be integers")
    if not 1 <= header["sequence"] <= header["totalSequences"]:
        raise IncompletePayload(f"frame {header['sequence']} of {header['totalSequences']} is out of range")
    return header


def reassemble_chunks(frames: Iterable[str]) -> bytes:
    """
    Join the frames of one payload. Frames may arrive in any order and
    repeat; they must all belong to the same sender/session/round and cover
    every sequence number.
    """
    parsed = [parse_frame(f) for f in frames]
    if not parsed:
        raise IncompletePayload("no frames")
    first = parsed[0]
    key = (first["sessionId"], first["partyId"], first["round"], first["totalSequences"])
    pieces: Dict[int, str] = {}
    for frame in parsed:
        if (frame["sessionId"], frame["partyId"], frame["round"], frame["totalSequences"]) != key:
            raise IncompletePayload("frames from different payloads mixed together")
        seen = pieces.setdefault(frame["sequence"], frame["payload"])
        if seen != frame["payload"]:
            raise IncompletePayload(f"conflicting copies of frame {frame['sequence']}")
    missing = set(range(1, key[3] + 1)) - set(pieces)
    if missing:
        raise IncompletePayload(f"missing frames {sorted(missing)} of {key[3]}")
    try:
        return base64.b64decode("".join(pieces[i] for i in range(1, key[3] + 1)), validate=True)
    except ValueError:
        raise IncompletePayload("frame payload is not valid base64") from None


class QRChunkTransport(Transport):
    """
    Transport over a frame channel (for example a display and a camera).
    send() emits frames; scan() feeds frames back in as they are read.
    """

    def __init__(self, kind: str, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.kind = kind
        self.chunk_size = chunk_size
        self._lock = threading.Lock()
        self.outbox: List[str] = []
        self._frames: Dict[Tuple[str, int, str], List[str]] = defaultdict(list)

    def send(self, session_id, round, sender, payload):
        frames = chunk_payload(session_id, sender, self.kind, round, payload, self.chunk_size)
        with self._lock:
            self.outbox.extend(frames)
        logger.debug(f"{sender} displayed {len(frames)} frame(s) for round {round} of {session_id}")
        return True

    def scan(self, frame: str) -> None:
        header = parse_frame(frame)
        with self._lock:
            self._frames[(header["sessionId"], header["round"], header["partyId"])].append(frame)

    def receive(self, session_id, round):
        with self._lock:
            groups = {sender: list(frames) for (sid, rnd, sender), frames in self._frames.items()
                      if sid == session_id and rnd == round}
        complete = {}
        for sender, frames in groups.items():
            try:
                complete[sender] = reassemble_chunks(frames)
            except IncompletePayload as e:
                logger.debug(f"Payload from {sender} not complete yet: {e}")
        return complete
