from __future__ import annotations

import hashlib
from typing import Iterable, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError
from zxcvbn import zxcvbn

from sessiongate.logging import get_logger

logger = get_logger(__name__)

# argon2id, 19 MiB memory, 2 passes, 32-byte tag, single lane
ARGON2_MEMORY_COST_KIB = 19456
ARGON2_TIME_COST = 2
ARGON2_HASH_LEN = 32
ARGON2_PARALLELISM = 1

MIN_PASSWORD_SCORE = 3
# zxcvbn refuses longer inputs; the tail adds nothing to the estimate
_ZXCVBN_MAX_LENGTH = 72


class CredentialHasher:
    """Slow hashing for passwords and challenge codes plus a strength estimate.

    Challenge codes go through the same argon2id hash as passwords so a leaked
    challenge table offers no shortcut. Session ids use :meth:`fingerprint`
    instead because lookups must be by exact digest.
    """

    def __init__(
        self,
        *,
        memory_cost: int = ARGON2_MEMORY_COST_KIB,
        time_cost: int = ARGON2_TIME_COST,
        hash_len: int = ARGON2_HASH_LEN,
        parallelism: int = ARGON2_PARALLELISM,
    ) -> None:
        self._pwd_hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_len,
            type=Type.ID,
        )
        self.logger = logger

    def hash_password(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def verify_password(self, stored_hash: str, plaintext: str) -> bool:
        """Return True when ``plaintext`` matches ``stored_hash``.

        Mismatches, malformed hashes and verifier errors all yield False.
        """
        try:
            return self._pwd_hasher.verify(stored_hash, plaintext)
        except (InvalidHash, VerificationError):
            return False

    def score_strength(
        self, plaintext: str, user_inputs: Optional[Iterable[str]] = None
    ) -> int:
        """Estimate guessability on zxcvbn's 0 (trivial) to 4 (strong) scale."""
        inputs = [value for value in (user_inputs or []) if value]
        result = zxcvbn(plaintext[:_ZXCVBN_MAX_LENGTH], user_inputs=inputs)
        return int(result["score"])

    def is_guessable(
        self, plaintext: str, user_inputs: Optional[Iterable[str]] = None
    ) -> bool:
        return self.score_strength(plaintext, user_inputs) < MIN_PASSWORD_SCORE

    @staticmethod
    def fingerprint(token: str) -> str:
        """SHA-256 hex digest used as the stored id of a session token."""
        return hashlib.sha256(token.encode("utf-8")).hexdigest()
