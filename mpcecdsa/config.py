"""
Runtime settings, read from the environment.

    MPCECDSA_SESSION_TTL      idle seconds before a session expires (1800)
    MPCECDSA_SWEEP_INTERVAL   seconds between expiry sweeps (60)
    MPCECDSA_RETENTION        seconds a terminal session stays inspectable (300)
    MPCECDSA_PAILLIER_BITS    Paillier modulus size for key generation (2048)
    MPCECDSA_QR_CHUNK_SIZE    characters per QR frame payload (2000)
    MPCECDSA_DEFAULT_CHAIN    address derivation used when none is given (ethereum)
    MPCECDSA_LOG_LEVEL        logging level for the CLI (INFO)
"""

import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    session_ttl: float = 30 * 60
    sweep_interval: float = 60
    retention: float = 5 * 60
    paillier_bits: int = 2048
    qr_chunk_size: int = 2000
    default_chain: str = "ethereum"
    log_level: str = field(default="INFO")

    def __post_init__(self):
        if self.session_ttl <= 0 or self.sweep_interval <= 0 or self.retention < 0:
            raise ValueError("session timing settings must be positive")
        # MtA plaintexts carry a 512-bit product plus a mask below q^3 (about 2^770).
        if self.paillier_bits < 1024:
            raise ValueError("paillier_bits must be at least 1024")
        if self.qr_chunk_size <= 0:
            raise ValueError("qr_chunk_size must be positive")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            session_ttl=_env_int("MPCECDSA_SESSION_TTL", 30 * 60),
            sweep_interval=_env_int("MPCECDSA_SWEEP_INTERVAL", 60),
            retention=_env_int("MPCECDSA_RETENTION", 5 * 60),
            paillier_bits=_env_int("MPCECDSA_PAILLIER_BITS", 2048),
            qr_chunk_size=_env_int("MPCECDSA_QR_CHUNK_SIZE", 2000),
            default_chain=os.getenv("MPCECDSA_DEFAULT_CHAIN", "ethereum"),
            log_level=os.getenv("MPCECDSA_LOG_LEVEL", "INFO").upper(),
        )
