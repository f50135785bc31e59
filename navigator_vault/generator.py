"""
Password generator for new entries.

Uses the ``secrets`` CSPRNG only. When the length allows it, the result
contains at least one character of every selected class.
"""
import secrets
import string

from .exceptions import ValidationError

UPPERCASE = string.ascii_uppercase
LOWERCASE = string.ascii_lowercase
DIGITS = string.digits
SPECIAL = "!@#$%^&*()_+-=[]{}|;:,.<>?"

MIN_LENGTH = 1
MAX_LENGTH = 256


def generate_password(
    length: int = 20,
    uppercase: bool = True,
    lowercase: bool = True,
    digits: bool = True,
    special: bool = True,
    exclude: str = "",
) -> str:
    """Generate a random password.

    Args:
        length: Number of characters (1..256).
        uppercase: Include A-Z.
        lowercase: Include a-z.
        digits: Include 0-9.
        special: Include punctuation from ``SPECIAL``.
        exclude: Characters that must never appear.

    Raises:
        ValidationError: If no class is selected, the length is out of
            range, or the exclusions leave nothing to choose from.
    """
    if not isinstance(length, int) or not MIN_LENGTH <= length <= MAX_LENGTH:
        raise ValidationError(f"length must be between {MIN_LENGTH} and {MAX_LENGTH}")
    selected = [
        charset
        for charset, enabled in (
            (UPPERCASE, uppercase),
            (LOWERCASE, lowercase),
            (DIGITS, digits),
            (SPECIAL, special),
        )
        if enabled
    ]
    if not selected:
        raise ValidationError("at least one character class must be selected")

    excluded = set(exclude or "")
    classes = ["".join(c for c in charset if c not in excluded) for charset in selected]
    classes = [c for c in classes if c]
    alphabet = "".join(classes)
    if not alphabet:
        raise ValidationError("no characters left after exclusions")

    password = []
    if length >= len(classes):
        password = [secrets.choice(charset) for charset in classes]
    password.extend(secrets.choice(alphabet) for _ in range(length - len(password)))
    secrets.SystemRandom().shuffle(password)
    return "".join(password)
