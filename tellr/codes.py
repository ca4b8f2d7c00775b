"""Join codes, bearer tokens and row ids."""

from __future__ import annotations

import secrets
import uuid

# No 0/O, 1/I: codes get read aloud and typed on phones.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
TOKEN_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"


def _random_string(alphabet: str, length: int) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_code(length: int = 6) -> str:
    return _random_string(CODE_ALPHABET, length)


def generate_token(length: int = 32) -> str:
    return _random_string(TOKEN_ALPHABET, length)


def new_id() -> str:
    return uuid.uuid4().hex


def normalize_code(code: str) -> str:
    return code.strip().upper()
