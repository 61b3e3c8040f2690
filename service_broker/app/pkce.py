"""
PKCE (RFC 7636) verifier, challenge and state generation.
"""

import base64
import hashlib
import secrets
import string
from dataclasses import dataclass


# RFC 7636 section 4.1 "unreserved" characters
UNRESERVED_ALPHABET = string.ascii_letters + string.digits + "-._~"
STATE_ALPHABET = string.ascii_letters + string.digits

VERIFIER_MIN_LENGTH = 43
VERIFIER_MAX_LENGTH = 128
STATE_LENGTH = 32
CHALLENGE_METHOD = "S256"


@dataclass(frozen=True)
class PKCEPair:
    """Verifier, challenge and state for one authorization attempt."""
    code_verifier: str
    code_challenge: str
    state: str
    method: str = CHALLENGE_METHOD


def generate_verifier() -> str:
    """Random verifier of uniformly random length in [43, 128]."""
    length = VERIFIER_MIN_LENGTH + secrets.randbelow(VERIFIER_MAX_LENGTH - VERIFIER_MIN_LENGTH + 1)
    return "".join(secrets.choice(UNRESERVED_ALPHABET) for _ in range(length))


def generate_challenge(verifier: str) -> str:
    """base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_state() -> str:
    return "".join(secrets.choice(STATE_ALPHABET) for _ in range(STATE_LENGTH))


def generate_pair() -> PKCEPair:
    verifier = generate_verifier()
    return PKCEPair(
        code_verifier=verifier,
        code_challenge=generate_challenge(verifier),
        state=generate_state(),
    )
