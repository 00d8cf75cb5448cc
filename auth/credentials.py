"""
auth/credentials.py -- Local password hashing and verification.

Passwords: bcrypt used directly (no passlib wrapper). Bcrypt's cost factor
makes brute force expensive, which is what low-entropy secrets need.

Enumeration resistance [C1]: verify_local() raises the same InvalidCredentials
for an unknown username, an account without a password, a wrong password, and
a disabled account. It also runs bcrypt against _DUMMY_HASH when there is no
real hash to check, so response time does not reveal whether a username
exists either.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging

import bcrypt
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import InvalidCredentials, ResolutionFailure
from auth.models import User
from auth.store import IdentityStore

logger = logging.getLogger("identity.auth.credentials")

# bcrypt reads at most 72 bytes of input; bcrypt 5 refuses anything longer.
MAX_PASSWORD_BYTES = 72


def password_fits(plain: str) -> bool:
    """Return True if the UTF-8 encoding of plain is within bcrypt's input limit."""
    return len(plain.encode("utf-8")) <= MAX_PASSWORD_BYTES


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError for passwords over MAX_PASSWORD_BYTES, whatever the
    installed bcrypt version does with them. Callers validate with
    password_fits() first.
    """
    if not password_fits(plain):
        raise ValueError(f"password is longer than {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash is a mismatch, not an error. So is a password
    too long to have been hashed in the first place.
    """
    if not password_fits(plain):
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at import so the first login is not measurably slower than
# later ones.
_DUMMY_HASH: str = hash_password("identity_timing_dummy")


class CredentialVerifier:
    """Verifies local username/password logins against the store."""

    def __init__(self, store: IdentityStore) -> None:
        self._store = store

    def verify_local(self, username: str, password: str) -> User:
        """Return the matching active User or raise InvalidCredentials.

        Storage failures raise ResolutionFailure -- an outage must not look
        like a wrong password, and must not leak driver details either.
        """
        try:
            user = self._store.get_user_by_username(username)
        except SQLAlchemyError as exc:
            logger.error("User lookup failed during login: %s", exc)
            raise ResolutionFailure() from exc

        if user is None or user.hashed_password is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            verify_password(password, _DUMMY_HASH)
            raise InvalidCredentials()
        if not verify_password(password, user.hashed_password):
            raise InvalidCredentials()
        if not user.is_active:
            logger.info("Login refused for non-active account id=%s status=%s", user.id, user.status)
            raise InvalidCredentials()
        return user
