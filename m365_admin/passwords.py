"""Temporary password generation and strength scoring."""
from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from enum import Enum

UPPERCASE = string.ascii_uppercase
LOWERCASE = string.ascii_lowercase
DIGITS = string.digits
SYMBOLS = "!@#$%^&*"
ALL_CHARACTERS = UPPERCASE + LOWERCASE + DIGITS + SYMBOLS
REQUIRED_CLASSES = (UPPERCASE, LOWERCASE, DIGITS, SYMBOLS)

DEFAULT_LENGTH = 16
MIN_LENGTH = len(REQUIRED_CLASSES)


class PasswordStrength(str, Enum):
    WEAK = "Weak"
    MODERATE = "Moderate"
    STRONG = "Strong"


@dataclass(frozen=True)
class GeneratedPassword:
    password: str
    strength: PasswordStrength


def generate_password(length: int = DEFAULT_LENGTH) -> str:
    """Return a random password containing every required character class."""

    if length < MIN_LENGTH:
        raise ValueError(f"Password length must be at least {MIN_LENGTH}.")

    rng = secrets.SystemRandom()
    characters = [secrets.choice(charset) for charset in REQUIRED_CLASSES]
    characters.extend(secrets.choice(ALL_CHARACTERS) for _ in range(length - MIN_LENGTH))
    rng.shuffle(characters)
    return "".join(characters)


def score_password(password: str) -> PasswordStrength:
    """Score a password from its length and character class variety."""

    classes = sum(
        1 for charset in REQUIRED_CLASSES if any(char in charset for char in password or "")
    )
    length = len(password or "")
    if length >= 14 and classes == 4:
        return PasswordStrength.STRONG
    if length >= 10 and classes >= 3:
        return PasswordStrength.MODERATE
    return PasswordStrength.WEAK


def generate_password_with_strength(length: int = DEFAULT_LENGTH) -> GeneratedPassword:
    password = generate_password(length)
    return GeneratedPassword(password=password, strength=score_password(password))


__all__ = [
    "DEFAULT_LENGTH",
    "GeneratedPassword",
    "MIN_LENGTH",
    "PasswordStrength",
    "SYMBOLS",
    "generate_password",
    "generate_password_with_strength",
    "score_password",
]
