"""
auth/passwords.py -- bcrypt password hashing and verification.

Security design decisions:
  bcrypt directly, no passlib wrapper. passlib's wrap-bug detection hashes a
       password longer than 72 bytes, which bcrypt 4.x rejects outright.

  Work factor: fixed per PasswordHasher instance (Settings.bcrypt_rounds,
       minimum 10). There is no per-call cost argument.

  72-byte limit: bcrypt only reads the first 72 bytes of its input. Hashing a
       longer password raises HashingError rather than silently truncating;
       the API layer rejects such passwords before they get here.

  Timing equalization [C1]: dummy_verify() runs bcrypt against a hash
       computed once at construction, so a login for an unknown email costs
       the same as a login with a wrong password.

  Mismatch is a normal False. HashingError is reserved for corrupt stored
       hashes -- a "$2b$" string bcrypt cannot parse means bad data in the
       store, not a wrong password.
"""

from __future__ import annotations

import bcrypt

from auth.errors import HashingError

MIN_ROUNDS = 10
MAX_PASSWORD_BYTES = 72


class PasswordHasher:
    def __init__(self, rounds: int = 12) -> None:
        if rounds < MIN_ROUNDS:
            raise ValueError(f"bcrypt rounds must be at least {MIN_ROUNDS}, got {rounds}")
        self.rounds = rounds
        self._dummy_hash = self.hash("identitycore_timing_dummy")

    def hash(self, plain: str) -> str:
        """Return a salted bcrypt hash of the plaintext password."""
        encoded = plain.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            raise HashingError(f"password exceeds {MAX_PASSWORD_BYTES} bytes")
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if plain matches hashed. Raises HashingError on a corrupt hash."""
        encoded = plain.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            # Never produced by hash(), so it cannot match a stored digest.
            self.dummy_verify("")
            return False
        try:
            return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
        except ValueError as exc:
            raise HashingError("stored password hash is malformed") from exc

    def dummy_verify(self, plain: str) -> None:
        """Burn one bcrypt verification without a real hash [C1]."""
        bcrypt.checkpw(plain.encode("utf-8")[:MAX_PASSWORD_BYTES], self._dummy_hash.encode("utf-8"))
