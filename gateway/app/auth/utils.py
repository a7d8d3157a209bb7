"""
Authentication primitives.

This module handles:
- Cryptographically random opaque identifiers (state, nonce, session ids)
- base64url encoding/decoding without padding (RFC 7515 section 2)
"""

import base64
import binascii
import re
import secrets
from typing import Union


_BASE64URL_PATTERN = re.compile(r"^[A-Za-z0-9_-]*={0,2}$")


def base64url_encode(data: Union[bytes, str]) -> str:
    """
    Encode bytes as base64url without trailing padding.

    Args:
        data: Raw bytes (str input is UTF-8 encoded first)

    Returns:
        Unpadded base64url string
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def base64url_decode(value: str) -> bytes:
    """
    Decode a base64url string, tolerating missing padding.

    The input is right-padded with '=' to a multiple of 4 before decoding.

    Args:
        value: base64url string (padded or not)

    Returns:
        Decoded bytes

    Raises:
        ValueError: If the value contains characters outside the base64url alphabet
    """
    if not isinstance(value, str) or not _BASE64URL_PATTERN.match(value):
        raise ValueError("Invalid base64url value")
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64url value: {e}") from e


def random_id(num_bytes: int = 32) -> str:
    """
    Generate an unguessable identifier.

    Args:
        num_bytes: Number of random bytes drawn from the OS CSPRNG

    Returns:
        base64url-encoded random bytes, no padding
    """
    return base64url_encode(secrets.token_bytes(num_bytes))


__all__ = ["base64url_encode", "base64url_decode", "random_id"]
