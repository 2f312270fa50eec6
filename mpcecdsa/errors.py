"""
Exception taxonomy.

Parameter errors are fatal to the call that raised them. ProtocolAbort
subclasses are faults in the cryptographic protocol: the session that hit one
moves to `failed` and can only be retried with a brand new session. Session
ordering errors are surfaced to the caller untouched.
"""


class MPCError(Exception):
    """Base class for every error raised by this package."""


class InvalidParameters(MPCError, ValueError):
    pass


class InsufficientShares(MPCError):
    pass


class InsufficientQuorum(MPCError):
    pass


class DuplicateIndex(MPCError, ValueError):
    pass


class ProtocolAbort(MPCError):
    """A protocol fault. The session is failed, never resumed."""


class CommitmentVerificationFailed(ProtocolAbort):
    pass


class SignatureVerificationFailed(CommitmentVerificationFailed):
    pass


class DegenerateNonce(ProtocolAbort):
    pass


class ParticipantCountMismatch(ProtocolAbort):
    pass


class SessionError(MPCError):
    pass


class SessionNotFound(SessionError, KeyError):
    pass


class SessionExpired(SessionError):
    pass


class SessionClosed(SessionError):
    pass


class SessionFull(SessionError):
    pass


class RoundMismatch(SessionError):
    pass


class UnknownParticipant(SessionError):
    pass


class DuplicateSubmission(SessionError):
    pass


class InvalidPayload(SessionError, ValueError):
    pass


class IncompletePayload(MPCError):
    pass


class UnsupportedChain(MPCError, KeyError):
    pass


class SealError(MPCError):
    pass
