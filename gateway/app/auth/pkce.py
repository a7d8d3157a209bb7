"""
PKCE (RFC 7636) verifier/challenge generation.

Only the S256 method is ever produced; the plain method is never offered.
"""

import hashlib
import secrets
from dataclasses import dataclass

from .utils import base64url_encode


MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128
CHALLENGE_METHOD = "S256"


@dataclass(frozen=True)
class PkcePair:
    verifier: str
    challenge: str
    method: str = CHALLENGE_METHOD


def create_code_challenge(verifier: str) -> str:
    """Return base64url(SHA-256(verifier))."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64url_encode(digest)


def create_pkce_pair(length: int = 64) -> PkcePair:
    """
    Generate a PKCE verifier and its S256 challenge.

    Args:
        length: Requested verifier length, clamped to [43, 128] characters

    Returns:
        PkcePair with verifier, challenge and method "S256"
    """
    length = min(max(length, MIN_VERIFIER_LENGTH), MAX_VERIFIER_LENGTH)
    # length random bytes always encode to more than length characters
    verifier = base64url_encode(secrets.token_bytes(length))[:length]
    return PkcePair(verifier=verifier, challenge=create_code_challenge(verifier))


__all__ = ["PkcePair", "create_pkce_pair", "create_code_challenge"]
