"""
auth/passwords.py -- One-way salted password hashing (bcrypt).

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

bcrypt only considers the first 72 bytes of input. The API layer caps password
length at 72 bytes (Pydantic validator) so no two accepted passwords collide
through truncation.

verify() fails closed: a malformed or foreign hash record returns False, the
same answer as a wrong password, so nothing outside this module can tell the
two apart.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

import bcrypt

logger = logging.getLogger("authcore.auth.passwords")

# bcrypt input limit in bytes.
MAX_PASSWORD_BYTES = 72


class PasswordHasher:
    """bcrypt hash + verify with a configurable cost factor.

    The dummy hash is computed once per instance at the same cost, so
    verify_dummy() takes as long as a real verification and login timing does
    not reveal whether an identifier exists.
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        self._dummy_hash = self.hash("authcore_timing_dummy")

    def hash(self, plain: str) -> str:
        """Return a bcrypt hash record (salt and cost embedded) for plain."""
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str | None) -> bool:
        """Return True if plain matches the hash record. Never raises."""
        if not hashed:
            return False
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except (ValueError, TypeError):
            logger.warning("Malformed password hash record rejected")
            return False

    def verify_dummy(self, plain: str) -> bool:
        """Spend one verification's worth of work and return False."""
        self.verify(plain, self._dummy_hash)
        return False

    def needs_rehash(self, hashed: str) -> bool:
        """True if the record was produced with a different cost factor."""
        try:
            return int(hashed.split("$")[2]) != self.rounds
        except (IndexError, ValueError):
            return True
