import pytest
import secrets

from mpcecdsa import envelope
from mpcecdsa.errors import SealError


def test_ecies_round_trip():
    key = envelope.generate_encryption_key()
    recipient = envelope.public_key_hex(key)
    assert recipient[:2] in ("02", "03") and len(recipient) == 66
    share = secrets.token_bytes(32)
    box = envelope.ecies_encrypt(recipient, share, b"s:share:1->2")
    assert set(box) == {"epk", "nonce", "ct"}
    assert share.hex() not in box["ct"]
    assert envelope.ecies_decrypt(key, box, b"s:share:1->2") == share


def test_ecies_rejects_wrong_recipient_and_context():
    key = envelope.generate_encryption_key()
    box = envelope.ecies_encrypt(envelope.public_key_hex(key), b"share", b"s:share:1->2")
    pytest.raises(SealError, envelope.ecies_decrypt, envelope.generate_encryption_key(), box, b"s:share:1->2")
    pytest.raises(SealError, envelope.ecies_decrypt, key, box, b"s:share:1->3")
    tampered = dict(box, ct=("00" if box["ct"][:2] != "00" else "01") + box["ct"][2:])
    pytest.raises(SealError, envelope.ecies_decrypt, key, tampered, b"s:share:1->2")


def test_seal_round_trip():
    sealed = envelope.seal(b"key share", b"correct horse", b"aad")
    assert sealed["v"] == envelope.SEAL_VERSION
    assert envelope.unseal(sealed, b"correct horse", b"aad") == b"key share"
    pytest.raises(SealError, envelope.unseal, sealed, b"battery staple", b"aad")
    pytest.raises(SealError, envelope.unseal, sealed, b"correct horse", b"other")
    pytest.raises(SealError, envelope.unseal, dict(sealed, v=99), b"correct horse", b"aad")


def test_seal_needs_passphrase():
    pytest.raises(SealError, envelope.seal, b"key share", b"")
