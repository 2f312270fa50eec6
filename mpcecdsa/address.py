"""
Chain address derivation from the aggregate public key.

EVM chains (ethereum, polygon, bsc) share one rule: the last 20 bytes of
keccak256 over the uncompressed point without its 0x04 prefix, EIP-55
checksummed. Other chains plug in their own pure function with
register_chain().
"""

import logging
from typing import Callable, Dict

from web3 import Web3

from .ecdsa_op import Point, encode_point, decode_point
from .errors import UnsupportedChain

logger = logging.getLogger(__name__)

AddressFn = Callable[[Point], str]


def evm_address(point: Point) -> str:
    digest = Web3.keccak(encode_point(point)[1:])
    return Web3.to_checksum_address("0x" + digest[-20:].hex())


_CHAINS: Dict[str, AddressFn] = {
    "ethereum": evm_address,
    "polygon": evm_address,
    "bsc": evm_address,
}


def register_chain(name: str, fn: AddressFn) -> None:
    key = name.lower()
    if key in _CHAINS and _CHAINS[key] is not fn:
        logger.info(f"Replacing address derivation for chain {key}")
    _CHAINS[key] = fn


def supported_chains():
    return sorted(_CHAINS)


def derive_address(public_key, chain: str) -> str:
    """public_key is a Point or a SEC1 encoding."""
    try:
        fn = _CHAINS[chain.lower()]
    except KeyError:
        raise UnsupportedChain(f"no address derivation registered for chain {chain!r}") from None
    if not isinstance(public_key, Point):
        public_key = decode_point(public_key)
    return fn(public_key)
