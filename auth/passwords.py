"""
auth/passwords.py -- One-way password hashing and verification.

bcrypt is used directly (no passlib wrapper). Its cost factor makes
brute-force and rainbow-table attacks expensive, and each digest carries its
own salt, so two hashes of the same password differ.

bcrypt only looks at the first 72 bytes of input. Password length is capped
at 72 characters by the input schemas (auth/schemas.py), which keeps ASCII
passwords below the truncation threshold.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import bcrypt


class PasswordHasher:
    """Hash and verify passwords with a configurable bcrypt cost factor.

    Usage:
        hasher = PasswordHasher(rounds=12)
        digest = hasher.hash("longenough1")
        hasher.verify("longenough1", digest)   # True
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Timing equalization [C1]: computed once so an unknown-email login
        # still pays for a full bcrypt check.
        self._dummy_hash = self.hash("turnstile_timing_dummy")

    def hash(self, plain: str) -> str:
        """Return a self-salted bcrypt digest of plain."""
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if plain matches hashed. A malformed digest never matches."""
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            return False

    def dummy_verify(self, plain: str) -> None:
        """Burn one bcrypt check. Call when the account does not exist [C1]."""
        self.verify(plain, self._dummy_hash)
