from __future__ import annotations

import re
import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authgate.logging import get_logger

logger = get_logger(__name__)

_hasher = PasswordHasher(type=Type.ID)

_LETTER_RE = re.compile(r"[A-Za-z]")
_DIGIT_RE = re.compile(r"\d")


def hash_password(password: str) -> str:
    """Hash a password with argon2id."""
    return _hasher.hash(password)


def verify_password(password: str, stored_hash: Optional[str]) -> bool:
    """Check ``password`` against an argon2 hash; malformed hashes never match."""
    if not stored_hash:
        return False
    try:
        return _hasher.verify(stored_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError) as exc:
        logger.warning("password_hash_unverifiable", error_type=type(exc).__name__)
        return False


def password_problems(password: str) -> list[str]:
    """Return the strength rules ``password`` fails; empty when acceptable."""
    problems = []
    if len(password or "") < 8:
        problems.append("Password must be at least 8 characters")
    if not _LETTER_RE.search(password or ""):
        problems.append("Password must contain at least one letter")
    if not _DIGIT_RE.search(password or ""):
        problems.append("Password must contain at least one number")
    return problems


def generate_temporary_password(length: int = 32) -> str:
    """High-entropy throwaway password for accounts that must reset before use."""
    # token_urlsafe(n) yields ~1.3 chars per byte
    return secrets.token_urlsafe(length)[:length]
