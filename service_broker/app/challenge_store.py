"""
Challenge cookie store.

The only reader and writer of the three in-flight authorization cookies.
"""

from dataclasses import dataclass
from typing import Optional

from .cookies import (
    CHALLENGE_COOKIES,
    RETURN_TO_COOKIE,
    STATE_COOKIE,
    VERIFIER_COOKIE,
    CookieJar,
    RequestContext,
)
from .pkce import PKCEPair


@dataclass(frozen=True)
class Challenge:
    """Values stored at authorization start, read back at callback."""
    code_verifier: Optional[str]
    state: Optional[str]
    return_to: Optional[str]

    @property
    def complete(self) -> bool:
        return bool(self.code_verifier and self.state)


class ChallengeStore:
    """Writes at authorization start, take-once at callback."""

    SAME_SITE = "strict"

    def __init__(self, ttl_seconds: int = 600):
        self.ttl_seconds = ttl_seconds

    def write(self, jar: CookieJar, pair: PKCEPair, return_to: str) -> None:
        jar.set(VERIFIER_COOKIE, pair.code_verifier, self.ttl_seconds, same_site=self.SAME_SITE)
        jar.set(STATE_COOKIE, pair.state, self.ttl_seconds, same_site=self.SAME_SITE)
        jar.set(RETURN_TO_COOKIE, return_to, self.ttl_seconds, same_site=self.SAME_SITE)

    def take(self, ctx: RequestContext, jar: CookieJar) -> Challenge:
        """Read all three values and schedule all three deletions."""
        challenge = Challenge(
            code_verifier=ctx.cookie(VERIFIER_COOKIE),
            state=ctx.cookie(STATE_COOKIE),
            return_to=ctx.cookie(RETURN_TO_COOKIE),
        )
        self.clear(jar)
        return challenge

    def clear(self, jar: CookieJar) -> None:
        jar.delete(*CHALLENGE_COOKIES)
