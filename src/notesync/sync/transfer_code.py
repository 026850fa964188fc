"""
Transfer codes -- the human transcribable key of the cloud repository.

Sixteen characters from base64 letters and digits, without the
look-alikes 0, O, 1, I and l, shown in blocks of four so the user
can write them down and type them on another device.
"""

from __future__ import annotations

import base64
import secrets
import string
from typing import Callable, Optional

CODE_LENGTH = 16
BLOCK_SIZE = 4
AMBIGUOUS_CHARACTERS = "0O1Il"
ALPHABET = "".join(
    c for c in string.ascii_uppercase + string.ascii_lowercase + string.digits
    if c not in AMBIGUOUS_CHARACTERS
)

# Multiple of three, so every base64 character carries six random bits
_RANDOM_CHUNK_BYTES = 12


def generate_code(random_bytes: Callable[[int], bytes] = secrets.token_bytes) -> str:
    """Create a new random transfer code.

    Random bytes are base64 encoded and filtered to the alphabet
    until enough characters are collected.

    Args:
        random_bytes: Source of randomness, replaceable in tests.

    Returns:
        str: A code of ``CODE_LENGTH`` alphabet characters.
    """
    collected: list[str] = []
    while len(collected) < CODE_LENGTH:
        chunk = base64.b64encode(random_bytes(_RANDOM_CHUNK_BYTES)).decode("ascii")
        collected.extend(c for c in chunk if c in ALPHABET)
    return "".join(collected[:CODE_LENGTH])


def is_code_set(code: Optional[str]) -> bool:
    return bool(code and code.strip())


def sanitize_user_input(text: Optional[str]) -> str:
    """Remove the blanks and dashes a user may type between blocks."""
    if not text:
        return ""
    return "".join(c for c in text if not c.isspace() and c != "-")


def is_valid_code(code: Optional[str]) -> bool:
    """Whether ``code`` is a sanitized, well formed transfer code."""
    return (
        code is not None
        and len(code) == CODE_LENGTH
        and all(c in ALPHABET for c in code)
    )


def format_for_display(code: str) -> str:
    """Split a code into blocks of four: ``ABCD EFGH IJKL MNOP``."""
    return " ".join(
        code[i:i + BLOCK_SIZE] for i in range(0, len(code), BLOCK_SIZE)
    )
