"""Random secrets handed to clients: session tokens and challenge codes."""

from __future__ import annotations

import base64
import secrets

SESSION_TOKEN_BITS = 160
CHALLENGE_CODE_BITS = 200


def _random_base32(entropy_bits: int) -> str:
    if entropy_bits <= 0 or entropy_bits % 8:
        raise ValueError("entropy_bits must be a positive multiple of 8")
    raw = secrets.token_bytes(entropy_bits // 8)
    return base64.b32encode(raw).decode("ascii").rstrip("=").lower()


def new_opaque_token(entropy_bits: int = SESSION_TOKEN_BITS) -> str:
    """Session token: lowercase unpadded base32 of ``entropy_bits`` CSPRNG bits."""
    return _random_base32(entropy_bits)


def new_challenge_code(entropy_bits: int = CHALLENGE_CODE_BITS) -> str:
    """One-time verifier mailed to the user for a challenge."""
    return _random_base32(entropy_bits)
