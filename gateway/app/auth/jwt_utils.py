"""
JWT decoding, RS256 signature verification and OIDC claim validation.

Tokens are handled from primitives: segments are base64url-decoded and
parsed here, and the `cryptography` package is used only to rebuild the RSA
public key from its JWK modulus/exponent and check the PKCS#1 v1.5 signature.
"""

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidSignature as _CryptoInvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .errors import (
    AudienceMismatch,
    InvalidIssuer,
    MalformedKey,
    MalformedToken,
    NonceMismatch,
    NotYetValid,
    TokenExpired,
)
from .utils import base64url_decode


CLOCK_SKEW_SECONDS = 30
SUPPORTED_ALGORITHM = "RS256"


@dataclass(frozen=True)
class DecodedJwt:
    """A split and parsed (but unverified) JWT."""

    header: Dict[str, Any]
    payload: Dict[str, Any]
    signature: str
    raw_header: str
    raw_payload: str

    @property
    def signing_input(self) -> bytes:
        return f"{self.raw_header}.{self.raw_payload}".encode("ascii")


# =============================================================================
# Decoding
# =============================================================================

def _decode_segment(segment: str) -> Dict[str, Any]:
    try:
        data = json.loads(base64url_decode(segment).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedToken("Invalid JWT segment") from e
    if not isinstance(data, dict):
        raise MalformedToken("Invalid JWT segment")
    return data


def decode_jwt(token: str) -> DecodedJwt:
    """
    Split a compact JWT and parse its header and payload.

    Args:
        token: Compact serialization ``header.payload.signature``

    Returns:
        DecodedJwt with parsed header/payload and the raw segments

    Raises:
        MalformedToken: If the token is not three segments of base64url JSON
    """
    if not isinstance(token, str) or not token:
        raise MalformedToken("Missing token")
    parts = token.split(".")
    if len(parts) != 3:
        raise MalformedToken("JWT must have three parts")
    raw_header, raw_payload, signature = parts
    return DecodedJwt(
        header=_decode_segment(raw_header),
        payload=_decode_segment(raw_payload),
        signature=signature,
        raw_header=raw_header,
        raw_payload=raw_payload,
    )


# =============================================================================
# Signature
# =============================================================================

def _jwk_int(jwk: Dict[str, Any], name: str) -> int:
    value = jwk.get(name)
    if not isinstance(value, str) or not value:
        raise MalformedKey(f"JWK missing '{name}'")
    try:
        return int.from_bytes(base64url_decode(value), "big")
    except ValueError as e:
        raise MalformedKey(f"JWK has invalid '{name}'") from e


def load_rsa_public_key(jwk: Dict[str, Any]) -> rsa.RSAPublicKey:
    """
    Build an RSA public key object from a JWK.

    Raises:
        MalformedKey: If the JWK is missing, not RSA, or has bad n/e values
    """
    if not jwk or not jwk.get("kty"):
        raise MalformedKey("Missing JWK")
    if jwk["kty"] != "RSA":
        raise MalformedKey(f"Unsupported key type: {jwk['kty']}")
    numbers = rsa.RSAPublicNumbers(e=_jwk_int(jwk, "e"), n=_jwk_int(jwk, "n"))
    try:
        return numbers.public_key()
    except ValueError as e:
        raise MalformedKey(f"Invalid RSA key: {e}") from e


def verify_signature(decoded: DecodedJwt, jwk: Dict[str, Any]) -> bool:
    """
    Verify the RS256 signature of a decoded JWT against a JWK.

    Args:
        decoded: Result of decode_jwt
        jwk: Public key in JWK form (kty=RSA)

    Returns:
        True if the signature matches, False otherwise

    Raises:
        MalformedToken: If the signature segment is empty
        MalformedKey: If the key cannot be used
    """
    if not decoded.signature:
        raise MalformedToken("JWT missing signature")
    public_key = load_rsa_public_key(jwk)

    alg = decoded.header.get("alg")
    if alg is not None and alg != SUPPORTED_ALGORITHM:
        return False

    try:
        signature = base64url_decode(decoded.signature)
    except ValueError:
        return False

    try:
        public_key.verify(
            signature,
            decoded.signing_input,
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
    except _CryptoInvalidSignature:
        return False
    return True


# =============================================================================
# Claims
# =============================================================================

def validate_claims(
    payload: Dict[str, Any],
    issuer: Optional[str] = None,
    client_id: Optional[str] = None,
    nonce: Optional[str] = None,
    now: Optional[float] = None,
    leeway: int = CLOCK_SKEW_SECONDS,
) -> None:
    """
    Validate standard OIDC ID token claims.

    Args:
        payload: Decoded token payload
        issuer: Expected ``iss`` (discovered from the provider)
        client_id: Value that must appear in ``aud``
        nonce: Nonce sent with the authorization request
        now: Current POSIX time (defaults to time.time())
        leeway: Clock skew allowance in seconds for exp/nbf

    Raises:
        InvalidIssuer, AudienceMismatch, TokenExpired, NotYetValid, NonceMismatch
    """
    if not isinstance(payload, dict):
        raise MalformedToken("Missing JWT payload")
    if now is None:
        now = time.time()

    if issuer and payload.get("iss") != issuer:
        raise InvalidIssuer()

    if client_id:
        aud = payload.get("aud")
        audiences = aud if isinstance(aud, list) else [aud]
        if client_id not in audiences:
            raise AudienceMismatch()

    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        raise TokenExpired("Token missing exp claim")
    if now - leeway > exp:
        raise TokenExpired()

    nbf = payload.get("nbf")
    if isinstance(nbf, (int, float)) and not isinstance(nbf, bool) and now + leeway < nbf:
        raise NotYetValid()

    if nonce and payload.get("nonce") != nonce:
        raise NonceMismatch()


__all__ = [
    "DecodedJwt",
    "decode_jwt",
    "verify_signature",
    "validate_claims",
    "load_rsa_public_key",
    "CLOCK_SKEW_SECONDS",
]
