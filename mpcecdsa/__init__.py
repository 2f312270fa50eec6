"""
Threshold ECDSA over secp256k1: distributed key generation, t-of-n signing
and the session coordination that carries both between devices.
"""

from .config import Settings
from .errors import MPCError
from .keygen import KeyShare, KeyShareGenerator, KeygenResult
from .session import SessionCoordinator, SessionSweeper
from .signing import CombinedSignature, SigningRequest, ThresholdSigner, combine, verify

__version__ = "0.1.0"
