"""
Scalar sampling from the operating system CSPRNG.
Every polynomial coefficient and nonce share in the package comes from here.
"""

import secrets


def int_sample(upper: int) -> int:
    """Uniform integer in [1, upper)."""
    if upper <= 1:
        raise ValueError("upper bound must be greater than 1")
    return secrets.randbelow(upper - 1) + 1
