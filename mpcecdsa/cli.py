"""
mpcecdsa command line.

    mpcecdsa demo --t 2 --n 3 --message "pay 100 tokens to Bob"

runs a full key generation between n in-process parties, then signs the
SHA-256 digest of the message with the first t of them and checks the
signature against the group key.
"""

import hashlib
import logging

import click

from .config import Settings
from .errors import MPCError
from .local import run_keygen, run_signing
from .session import SessionCoordinator
from .signing import verify
from .transport import InMemoryTransport, QRChunkTransport


@click.group()
def main() -> None:
    """Threshold ECDSA (secp256k1) key generation and signing."""
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@main.command()
@click.option("--t", "threshold", type=int, default=2, show_default=True, help="Parties needed to sign")
@click.option("--n", "total", type=int, default=3, show_default=True, help="Total parties")
@click.option("--message", type=str, default="hello threshold world", show_default=True)
@click.option("--chain", type=str, default=None, help="Address derivation (defaults to MPCECDSA_DEFAULT_CHAIN)")
@click.option("--qr/--no-qr", default=False, help="Ferry payloads as QR frames instead of in memory")
def demo(threshold: int, total: int, message: str, chain: str, qr: bool) -> None:
    """Generate a t-of-n key and sign one message with it."""
    settings = Settings.from_env()
    coordinator = SessionCoordinator(settings)
    transport_for = (lambda kind: QRChunkTransport(kind, settings.qr_chunk_size)) if qr else (lambda kind: InMemoryTransport())
    parties = [f"party-{i}" for i in range(1, total + 1)]
    try:
        result, shares = run_keygen(coordinator, parties, threshold, chain or settings.default_chain,
                                    transport_for("keygen"))
        click.echo(f"public key : {result.public_key}")
        click.echo(f"address    : {result.address} ({result.chain})")

        digest = hashlib.sha256(message.encode()).digest()
        signers = {pid: shares[pid] for pid in parties[:threshold]}
        signature = run_signing(coordinator, signers, digest, transport_for("signing"))
    except MPCError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}")
    click.echo(f"signers    : {', '.join(signers)}")
    click.echo(f"signature  : {signature!r} v={signature.recovery_id}")
    click.echo(f"verifies   : {verify(digest, signature, result.public_key)}")


if __name__ == "__main__":
    main()
