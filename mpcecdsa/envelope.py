"""
Encryption helpers.

1. ECIES over secp256k1 (ECDH + HKDF-SHA256 + AES-GCM) for the point to point
   key generation shares, so the relay that ferries round payloads never sees a
   share in the clear.
2. Passphrase sealing (scrypt + AES-GCM) for a KeyShare at rest. The key is
   derived from a secret the holder supplies and keeps; nothing here
   generates and discards a key.
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .errors import SealError

ECIES_INFO = b"mpcecdsa-ecies-secp256k1"
SEAL_VERSION = 1
SCRYPT_N = 2 ** 15


def generate_encryption_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256K1())


def public_key_hex(private_key: ec.EllipticCurvePrivateKey) -> str:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint,
    ).hex()


def load_public_key(hex_point: str) -> ec.EllipticCurvePublicKey:
    """Raises ValueError if the encoding is not a secp256k1 point."""
    return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), bytes.fromhex(hex_point))


def _kdf(shared_secret: bytes) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=ECIES_INFO).derive(shared_secret)


def ecies_encrypt(recipient_hex: str, plaintext: bytes, aad: bytes = b"") -> dict:
    recipient = load_public_key(recipient_hex)
    eph = ec.generate_private_key(ec.SECP256K1())
    key = _kdf(eph.exchange(ec.ECDH(), recipient))
    nonce = os.urandom(12)
    ct = AESGCM(key).encrypt(nonce, plaintext, aad)
    return {"epk": public_key_hex(eph), "nonce": nonce.hex(), "ct": ct.hex()}


def ecies_decrypt(private_key: ec.EllipticCurvePrivateKey, box: dict, aad: bytes = b"") -> bytes:
    """Raises SealError if the box was tampered with or is not addressed to us."""
    try:
        eph = load_public_key(box["epk"])
        key = _kdf(private_key.exchange(ec.ECDH(), eph))
        return AESGCM(key).decrypt(bytes.fromhex(box["nonce"]), bytes.fromhex(box["ct"]), aad)
    except (InvalidTag, KeyError, ValueError) as e:
        raise SealError(f"cannot open encrypted share: {type(e).__name__}") from None


def _seal_key(passphrase: bytes, salt: bytes) -> bytes:
    return Scrypt(salt=salt, length=32, n=SCRYPT_N, r=8, p=1).derive(passphrase)


def seal(plaintext: bytes, passphrase: bytes, aad: bytes = b"") -> dict:
    if not passphrase:
        raise SealError("a passphrase is required to seal key material")
    salt = os.urandom(16)
    nonce = os.urandom(12)
    ct = AESGCM(_seal_key(passphrase, salt)).encrypt(nonce, plaintext, aad)
    return {"v": SEAL_VERSION, "salt": salt.hex(), "nonce": nonce.hex(), "ct": ct.hex()}


def unseal(box: dict, passphrase: bytes, aad: bytes = b"") -> bytes:
    if box.get("v") != SEAL_VERSION:
        raise SealError(f"unsupported seal version {box.get('v')!r}")
    try:
        key = _seal_key(passphrase, bytes.fromhex(box["salt"]))
        return AESGCM(key).decrypt(bytes.fromhex(box["nonce"]), bytes.fromhex(box["ct"]), aad)
    except (InvalidTag, KeyError, ValueError):
        raise SealError("wrong passphrase or corrupted sealed share") from None
