"""
ecdsa for secp256k1.
Utilities for:
    1. EC point addition, negation and scalar multiplication
    2. Public key generation from a scalar
    3. SEC1 point encoding/decoding (compressed and uncompressed)
    4. Scalar inverse mod order and mod field size
    5. Low-s normalisation and recovery ids
    6. Digest signing (single key, used for tests and exports), verification
       and public key recovery

    Point addition is implementing:
    https://en.wikipedia.org/wiki/Elliptic_curve_point_multiplication#Point_addition

    Signature implementation is just implementing:
    https://en.wikipedia.org/wiki/Elliptic_Curve_Digital_Signature_Algorithm

"""

from collections import namedtuple

from ecdsa import SECP256k1, VerifyingKey, BadSignatureError, MalformedPointError
from ecdsa.util import sigdecode_strings

from .toyrand import int_sample

# SECP256K1 domain params
p = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F
a = 0
b = 7
order = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
half_order = order // 2
#############################

_Point = namedtuple("Point", "x y")


class Point(_Point):
    def __repr__(self):
        """Uncompressed"""
        return f"04{self.x:0>64X}{self.y:0>64X}"


# The point at infinity. generator * order = O
O = None

generator = Point(0x79BE667EF9DCBBAC55A06295CE870B07029BFCDB2DCE28D959F2815B16F81798,
                  0x483ADA7726A3C4655DA4FBFC0E1108A8FD17B448A68554199C47D08FFB10D4B8)


def valid(P):
    """
    wiestrass curve: y^2 = x^3 + ax + b
    Determine whether we have a valid representation of a point
    on our curve. Coordinates must already be reduced modulo p so that
    two points compare equal with a plain ==.
    """
    if P is O:
        return True
    return (
        isinstance(P, Point) and
        0 <= P.x < p and 0 <= P.y < p and
        (P.y * P.y - (P.x ** 3 + a * P.x + b)) % p == 0)


def is_public_point(P) -> bool:
    """A point that can be published: on the curve and not the identity."""
    return P is not O and valid(P)


def scalar_inv_mod_p(x):
    """
    Compute an inverse for x modulo p, assuming that x is not divisible by p.
    pow() with exponent -1 runs the extended euclidean algorithm.
    """
    if x % p == 0:
        raise ZeroDivisionError("Impossible inverse")
    return pow(x, -1, p)


def scalar_inv_mod_order(x):
    """
    Compute an inverse for x modulo the group order.
    """
    if x % order == 0:
        raise ZeroDivisionError("Impossible inverse")
    return pow(x, -1, order)


def ec_inv(P):
    """
    Inverse of the point P on the elliptic curve y^2 = x^3 + ax + b.
    https://en.wikipedia.org/wiki/Elliptic_curve_point_multiplication#Point_negation
    """
    if P is O:
        return P
    return Point(P.x, (-P.y) % p)


def ec_add(P, Q):
    """
    Sum of the points P and Q on the elliptic curve y^2 = x^3 + ax + b.
    https://en.wikipedia.org/wiki/Elliptic_curve_point_multiplication#Point_addition
    """
    if not (valid(P) and valid(Q)):
        raise ValueError("Invalid inputs")

    if P is O:
        return Q
    if Q is O:
        return P
    # A + (-A) is the point at infinity; the slope below would divide by zero.
    if P.x == Q.x and (P.y + Q.y) % p == 0:
        return O
    if P == Q:
        lambdA = (3 * P.x * P.x + a) * scalar_inv_mod_p(2 * P.y)
    else:
        lambdA = (Q.y - P.y) * scalar_inv_mod_p(Q.x - P.x)
    x = (lambdA * lambdA - P.x - Q.x) % p
    y = (lambdA * (P.x - x) - P.y) % p
    return Point(x, y)


def ec_scalar_mul(P, scalar):
    scalar %= order
    if not valid(P):
        raise ValueError("Invalid point")
    cache = P
    ret = O
    # keep on doubling and only add for binary 1.
    while scalar:
        if scalar & 1:
            ret = ec_add(ret, cache)
        cache = ec_add(cache, cache)
        scalar >>= 1
    return ret


def pub_key_from_priv(private):
    return ec_scalar_mul(generator, private)


def compressed_hex(point) -> str:
    if point.y % 2 == 0:
        return f"02{point.x:0>64X}"
    return f"03{point.x:0>64X}"


def encode_point(point, compressed=False) -> bytes:
    if point is O:
        raise ValueError("the point at infinity has no SEC1 encoding here")
    if compressed:
        return bytes.fromhex(compressed_hex(point))
    return bytes.fromhex(repr(point))


def decode_point(data) -> Point:
    """
    Parse a SEC1 encoded point (bytes or hex, compressed or uncompressed).
    Raises ValueError for anything that is not a point on the curve.
    """
    if isinstance(data, str):
        try:
            data = bytes.fromhex(data[2:] if data.startswith("0x") else data)
        except ValueError:
            raise ValueError("point is not valid hex") from None
    if len(data) == 65 and data[0] == 4:
        point = Point(int.from_bytes(data[1:33], "big"), int.from_bytes(data[33:], "big"))
    elif len(data) == 33 and data[0] in (2, 3):
        x = int.from_bytes(data[1:], "big")
        if x >= p:
            raise ValueError("x coordinate out of range")
        # p % 4 == 3 so the square root is a single exponentiation
        y = pow((x ** 3 + a * x + b) % p, (p + 1) // 4, p)
        if y % 2 != data[0] - 2:
            y = p - y
        point = Point(x, y)
    else:
        raise ValueError(f"unsupported point encoding of length {len(data)}")
    if not is_public_point(point):
        raise ValueError("point is not on secp256k1")
    return point


def digest_to_int(digest: bytes) -> int:
    """Leftmost order-bit-length bits of the digest, as in FIPS 186-4 6.4."""
    e = int.from_bytes(digest, byteorder="big")
    L_n = order.bit_length()
    e_bit_len = len(digest) * 8
    return e if L_n >= e_bit_len else e >> (e_bit_len - L_n)


_Signature = namedtuple("Signature", "r s recovery_id")


class Signature(_Signature):
    def __repr__(self):
        return f"{self.r:0>64X}{self.s:0>64X}"

    def to_bytes(self) -> bytes:
        return bytes.fromhex(repr(self))

    def to_dict(self):
        return {"r": f"{self.r:064x}", "s": f"{self.s:064x}", "v": self.recovery_id}


def normalize_s(s):
    """
    Map s onto the lower half of the field (s <= n/2).
    Returns the new s and whether it was flipped.
    """
    s %= order
    if s > half_order:
        return order - s, True
    return s, False


def recovery_id(R, flipped):
    """
    Recovery id from the nonce point R: bit 0 is the parity of R.y (inverted
    when s was negated), bit 1 is set when R.x overflowed the group order.
    """
    rec = R.y & 1
    if flipped:
        rec ^= 1
    if R.x >= order:
        rec |= 2
    return rec


def ecdsa_sign(private, digest: bytes) -> Signature:
    """
    Implementing https://en.wikipedia.org/wiki/Elliptic_Curve_Digital_Signature_Algorithm
    over a precomputed digest, with a low-s result.
    """
    z = digest_to_int(digest)
    while True:
        k = int_sample(order)
        R = pub_key_from_priv(k)
        r = R.x % order
        if r == 0:
            continue
        s = scalar_inv_mod_order(k) * (z + r * private) % order
        if s == 0:
            continue
        s, flipped = normalize_s(s)
        return Signature(r, s, recovery_id(R, flipped))


def ecdsa_verify(digest: bytes, signature, public_key) -> bool:
    """
    Standard ECDSA verification over a digest.
    public_key may be a Point or a SEC1 encoding (bytes/hex).
    """
    if not (0 < signature.r < order and 0 < signature.s < order):
        return False
    if isinstance(public_key, Point):
        public_key = encode_point(public_key)
    elif isinstance(public_key, str):
        public_key = bytes.fromhex(public_key)
    try:
        vk = VerifyingKey.from_string(public_key, curve=SECP256k1)
    except MalformedPointError:
        return False
    sig = (signature.r.to_bytes(32, "big"), signature.s.to_bytes(32, "big"))
    try:
        return vk.verify_digest(sig, digest, sigdecode=sigdecode_strings)
    except BadSignatureError:
        return False


def recover_public_key(digest: bytes, signature: Signature) -> Point:
    """
    Public key recovery (SEC1 4.1.6) using the signature's recovery id, the
    way ecrecover does it. Raises ValueError if the id does not name a point.
    """
    x = signature.r + (order if signature.recovery_id & 2 else 0)
    R = decode_point(bytes([2 + (signature.recovery_id & 1)]) + x.to_bytes(32, "big"))
    z = digest_to_int(digest)
    r_inv = scalar_inv_mod_order(signature.r)
    Q = ec_add(ec_scalar_mul(R, signature.s * r_inv), ec_scalar_mul(generator, -z * r_inv))
    if Q is O:
        raise ValueError("recovered the point at infinity")
    return Q
