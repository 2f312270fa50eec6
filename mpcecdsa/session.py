"""
Session coordination.

A session is one run of key generation or signing. The coordinator relays
round payloads between parties, validates them on receipt and, when a round
reaches its quorum, runs that round's public aggregation step exactly once:

    collecting(1) -> advancing -> collecting(2) -> ... -> completed
                                                       -> failed | expired

Each session has its own lock; the registry lock is only held to insert,
look up or remove entries, so unrelated sessions never wait on each other.
The coordinator never holds secret material: parties compute their payloads
locally and read closed rounds back with round_bundle().
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from .address import supported_chains
from .config import Settings
from .errors import (DuplicateSubmission, InvalidParameters, ProtocolAbort, RoundMismatch,
                     SessionClosed, SessionExpired, SessionFull, SessionNotFound, UnknownParticipant,
                     UnsupportedChain)
from .keygen import KeygenAggregator
from .payloads import MAX_ROUNDS, SessionKind, decode_payload
from .sharing import validate_parameters
from .signing import SigningAggregator, SigningRequest

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    COLLECTING = "collecting"
    ADVANCING = "advancing"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.EXPIRED, SessionState.FAILED})


@dataclass
class Participant:
    id: str
    index: int
    joined_at: float
    last_seen: float


@dataclass(frozen=True)
class SessionStatus:
    session_id: str
    kind: SessionKind
    round: int
    max_rounds: int
    participant_count: int
    quorum_needed: int
    state: SessionState

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "kind": self.kind.value,
            "round": self.round,
            "maxRounds": self.max_rounds,
            "participantCount": self.participant_count,
            "quorumNeeded": self.quorum_needed,
            "state": self.state.value,
        }


@dataclass
class Session:
    id: str
    kind: SessionKind
    threshold: int
    total_parties: int
    max_rounds: int
    protocol: object
    created_at: float
    last_activity: float
    round: int = 1
    state: SessionState = SessionState.COLLECTING
    participants: Dict[str, Participant] = field(default_factory=dict)
    round_payloads: Dict[int, Dict[str, object]] = field(default_factory=dict)
    result: object = None
    error: Optional[str] = None
    closed_at: Optional[float] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def quorum_needed(self) -> int:
        return self.protocol.quorum_needed(self.round)

    def indices(self) -> Dict[str, int]:
        return {pid: p.index for pid, p in self.participants.items()}

    def bundle(self, round: int) -> Dict[int, object]:
        payloads = self.round_payloads.get(round, {})
        return {self.participants[pid].index: payload for pid, payload in payloads.items()}

    def status(self) -> SessionStatus:
        return SessionStatus(
            session_id=self.id,
            kind=self.kind,
            round=self.round,
            max_rounds=self.max_rounds,
            participant_count=len(self.participants),
            quorum_needed=self.quorum_needed,
            state=self.state,
        )


class SessionStore:
    """Registry of live sessions keyed by id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    def add(self, session: Session) -> None:
        with self._lock:
            if session.id in self._sessions:
                raise InvalidParameters(f"session {session.id} already exists")
            self._sessions[session.id] = session

    def get(self, session_id: str) -> Session:
        with self._lock:
            try:
                return self._sessions[session_id]
            except KeyError:
                raise SessionNotFound(f"no session {session_id}") from None

    def remove(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def snapshot(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    def __len__(self):
        with self._lock:
            return len(self._sessions)


class SessionCoordinator:

    def __init__(self, settings: Settings = None, store: SessionStore = None,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings or Settings()
        self.store = store if store is not None else SessionStore()
        self.clock = clock

    # --- lifecycle ------------------------------------------------------------------------------

    def create(self, kind, threshold: int, total_parties: int,
               request: SigningRequest = None, chain: str = None) -> str:
        try:
            kind = SessionKind(kind)
        except ValueError:
            raise InvalidParameters(f"unknown session kind {kind!r}") from None
        validate_parameters(threshold, total_parties)
        session_id = uuid.uuid4().hex
        if kind is SessionKind.KEYGEN:
            chain = (chain or self.settings.default_chain).lower()
            if chain not in supported_chains():
                raise UnsupportedChain(f"no address derivation registered for chain {chain!r}")
            protocol = KeygenAggregator(session_id, threshold, total_parties, chain)
        else:
            if request is None:
                raise InvalidParameters("a signing session needs a SigningRequest")
            if (request.key.threshold, request.key.total_parties) != (threshold, total_parties):
                raise InvalidParameters(
                    f"key is {request.key.threshold}-of-{request.key.total_parties}, "
                    f"session asked for {threshold}-of-{total_parties}")
            protocol = SigningAggregator(session_id, request)
        now = self.clock()
        self.store.add(Session(
            id=session_id, kind=kind, threshold=threshold, total_parties=total_parties,
            max_rounds=MAX_ROUNDS[kind], protocol=protocol, created_at=now, last_activity=now))
        logger.info(f"Created {kind.value} session {session_id} ({threshold} of {total_parties})")
        return session_id

    def join(self, session_id: str, participant_id: str) -> Participant:
        session = self.store.get(session_id)
        with session.lock:
            now = self.clock()
            self._check_open(session, now)
            existing = session.participants.get(participant_id)
            if existing is not None:
                existing.last_seen = now
                return existing
            if session.state is not SessionState.COLLECTING or session.round != 1:
                raise SessionClosed(f"session {session_id} no longer accepts participants")
            if len(session.participants) >= session.total_parties:
                raise SessionFull(f"session {session_id} already has {session.total_parties} participants")
            if session.kind is SessionKind.SIGNING:
                holders = session.protocol.request.key.participants
                if participant_id not in holders:
                    raise UnknownParticipant(f"{participant_id} holds no share of this key")
                index = holders[participant_id]
            else:
                index = len(session.participants) + 1
            participant = Participant(participant_id, index, joined_at=now, last_seen=now)
            session.participants[participant_id] = participant
            session.last_activity = now
            logger.debug(f"{participant_id} joined session {session_id} as party {index}")
            return participant

    def submit_round_payload(self, session_id: str, participant_id: str, round: int,
                             payload: bytes) -> SessionStatus:
        """
        Accept or reject one payload. The submission that completes a round's
        quorum runs the round's aggregation step before returning.
        """
        session = self.store.get(session_id)
        with session.lock:
            now = self.clock()
            self._check_open(session, now)
            participant = session.participants.get(participant_id)
            if participant is None:
                raise UnknownParticipant(f"{participant_id} has not joined session {session_id}")
            if round != session.round:
                raise RoundMismatch(f"session {session_id} is collecting round {session.round}, got {round}")
            if (session.kind is SessionKind.SIGNING and round > 1 and
                    participant.index not in session.protocol.quorum):
                raise UnknownParticipant(f"{participant_id} is not in the signing quorum")
            received = session.round_payloads.setdefault(round, {})
            if participant_id in received:
                raise DuplicateSubmission(f"{participant_id} already submitted round {round}")
            message = decode_payload(session.kind, round, payload)

            try:
                session.protocol.accept(round, participant.index, message, session.indices())
            except ProtocolAbort as e:
                self._fail(session, now, e)
                raise

            received[participant_id] = message
            participant.last_seen = now
            session.last_activity = now
            logger.debug(f"Session {session_id} round {round}: {len(received)}/{session.quorum_needed} payloads")

            if len(received) >= session.quorum_needed:
                self._advance(session, now)
            return session.status()

    def _advance(self, session: Session, now: float) -> None:
        session.state = SessionState.ADVANCING
        try:
            outcome = session.protocol.close_round(session.round, session.bundle(session.round), session.indices())
        except Exception as e:
            self._fail(session, now, e)
            raise
        if session.round >= session.max_rounds:
            session.result = outcome
            session.state = SessionState.COMPLETED
            session.closed_at = now
            # only the public final round stays readable
            final = session.round_payloads.get(session.round, {})
            session.round_payloads = {session.round: final}
            session.protocol.discard()
            logger.info(f"Session {session.id} completed after {session.round} rounds")
        else:
            session.round += 1
            session.state = SessionState.COLLECTING

    def _fail(self, session: Session, now: float, error: Exception) -> None:
        session.state = SessionState.FAILED
        session.error = f"{type(error).__name__}: {error}"
        self._close(session, now)
        logger.warning(f"Session {session.id} failed in round {session.round}: {session.error}")

    def _close(self, session: Session, now: float) -> None:
        session.closed_at = now
        session.round_payloads.clear()
        session.protocol.discard()

    def _check_open(self, session: Session, now: float) -> None:
        if session.state not in TERMINAL_STATES and now - session.last_activity > self.settings.session_ttl:
            self._expire(session, now)
        if session.state is SessionState.EXPIRED:
            raise SessionExpired(f"session {session.id} expired")
        if session.state in TERMINAL_STATES:
            raise SessionClosed(f"session {session.id} is {session.state.value}")

    def _expire(self, session: Session, now: float) -> None:
        session.state = SessionState.EXPIRED
        self._close(session, now)
        logger.info(f"Session {session.id} expired in round {session.round}")

    def abort(self, session_id: str) -> SessionStatus:
        """Cancel immediately; not quorum gated. Aborting a closed session is a no-op."""
        session = self.store.get(session_id)
        with session.lock:
            if session.state not in TERMINAL_STATES:
                session.state = SessionState.FAILED
                session.error = "aborted"
                self._close(session, self.clock())
                logger.info(f"Session {session_id} aborted in round {session.round}")
            return session.status()

    def expire_idle(self, now: float = None) -> List[str]:
        """
        Expire sessions idle past the ttl and purge terminal sessions older
        than the retention window. Returns the ids that expired.
        """
        now = self.clock() if now is None else now
        expired = []
        for session in self.store.snapshot():
            with session.lock:
                if session.state not in TERMINAL_STATES:
                    if now - session.last_activity > self.settings.session_ttl:
                        self._expire(session, now)
                        expired.append(session.id)
                elif session.closed_at is not None and now - session.closed_at > self.settings.retention:
                    self.store.remove(session.id)
                    logger.debug(f"Purged {session.state.value} session {session.id}")
        return expired

    # --- inspection -----------------------------------------------------------------------------

    def status(self, session_id: str) -> SessionStatus:
        session = self.store.get(session_id)
        with session.lock:
            return session.status()

    def list_active(self) -> List[SessionStatus]:
        active = []
        for session in self.store.snapshot():
            with session.lock:
                if session.state not in TERMINAL_STATES:
                    active.append(session.status())
        return active

    def round_bundle(self, session_id: str, round: int) -> Dict[int, object]:
        """Payloads of a closed round, keyed by participant index."""
        session = self.store.get(session_id)
        with session.lock:
            if session.state is SessionState.EXPIRED:
                raise SessionExpired(f"session {session_id} expired")
            if session.state is SessionState.FAILED:
                raise SessionClosed(f"session {session_id} failed: {session.error}")
            closed = round < session.round or session.state is SessionState.COMPLETED
            if not closed or round not in session.round_payloads:
                raise RoundMismatch(f"round {round} of session {session_id} is not available")
            return session.bundle(round)

    def result(self, session_id: str):
        """KeygenResult or CombinedSignature of a completed session."""
        session = self.store.get(session_id)
        with session.lock:
            if session.state is not SessionState.COMPLETED:
                raise SessionClosed(f"session {session_id} is {session.state.value}, not completed")
            return session.result

    def participants(self, session_id: str) -> Dict[str, int]:
        session = self.store.get(session_id)
        with session.lock:
            return session.indices()


class SessionSweeper(threading.Thread):
    """Background thread running SessionCoordinator.expire_idle on an interval."""

    def __init__(self, coordinator: SessionCoordinator, interval: float = None):
        super().__init__(name="mpcecdsa-session-sweeper", daemon=True)
        self.coordinator = coordinator
        self.interval = interval or coordinator.settings.sweep_interval
        self._stopped = threading.Event()

    def run(self):
        while not self._stopped.wait(self.interval):
            try:
                expired = self.coordinator.expire_idle()
            except Exception:
                logger.exception("Session sweep failed")
                continue
            if expired:
                logger.info(f"Sweep expired {len(expired)} session(s)")

    def stop(self, timeout: float = None) -> None:
        self._stopped.set()
        self.join(timeout)
