"""Proof Key for Code Exchange (RFC 7636)."""

import base64
import hashlib
import re
import secrets
from typing import Optional, Tuple

S256 = "S256"
PLAIN = "plain"
SUPPORTED_METHODS = (S256, PLAIN)

# 43-128 characters from the unreserved set.
_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")


def generate_pkce_verifier() -> Tuple[str, str]:
    """Return a (verifier, S256 challenge) pair."""
    pkce_token = secrets.token_urlsafe(80)
    return (pkce_token, s256_challenge(pkce_token))


def s256_challenge(verifier: str) -> str:
    hashed = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(hashed).decode("ascii").rstrip("=")


def is_valid_verifier(verifier: str) -> bool:
    return _VERIFIER_RE.match(verifier) is not None


def verify(verifier: str, challenge: str, method: Optional[str]) -> bool:
    if not is_valid_verifier(verifier):
        return False
    if method is None or method == PLAIN:
        expected = verifier
    elif method == S256:
        expected = s256_challenge(verifier)
    else:
        return False
    return secrets.compare_digest(expected, challenge)
