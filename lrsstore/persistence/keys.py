from __future__ import annotations

import base64
import binascii
import re


# Azure Table keys reject these characters outright.
RESERVED_KEY_CHARS = frozenset("/\\#?")
COMPOSITE_SEPARATOR = "|"

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def encode_key(value: str) -> str:
    """Encode an identifier into a key-safe token.

    URL-safe base64 over the UTF-8 bytes with padding stripped, so the token only
    contains ``A-Z a-z 0-9 - _`` and never a reserved key character.
    """
    if not value:
        return ""
    raw = value.encode("utf-8", "surrogatepass")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_key(token: str) -> str:
    """Reverse :func:`encode_key`.

    Malformed tokens are returned unchanged: callers treat them as keys that were
    never encoded, since legacy raw keys coexist with encoded ones.
    """
    if not token:
        return ""
    padded = token + "=" * (-len(token) % 4)
    try:
        raw = base64.b64decode(padded, altchars=b"-_", validate=True)
        value = raw.decode("utf-8", "surrogatepass")
    except (binascii.Error, ValueError):
        return token
    # Only canonical encodings count; anything else was a raw key that happened to parse.
    if encode_key(value) != token:
        return token
    return value


def is_key_safe(value: str) -> bool:
    return not any(char in RESERVED_KEY_CHARS for char in value) and not _CONTROL_CHARS.search(value)


def normalize_email(email: str | None) -> str:
    # User email is the attempt partition; case and padding must never split a user.
    return (email or "").strip().lower()


def composite_key(*parts: str) -> str:
    # Encode each part so the separator can never appear inside one.
    return COMPOSITE_SEPARATOR.join(encode_key(part) for part in parts)


def split_composite_key(key: str) -> list[str]:
    return [decode_key(part) for part in key.split(COMPOSITE_SEPARATOR)]
