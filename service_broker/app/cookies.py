"""
Cookie records, the per-request outgoing cookie jar and the inbound request context.

Handlers never write ``Set-Cookie`` headers directly: components queue
writes and deletions on a ``CookieJar`` and the jar is applied to whatever
response finally leaves the service, error responses included.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterator, Mapping, Optional

from fastapi import Request, Response


VERIFIER_COOKIE = "oauth2_code_verifier"
STATE_COOKIE = "oauth2_state"
RETURN_TO_COOKIE = "oauth2_return_to"
ACCESS_TOKEN_COOKIE = "hydra_access_token"
REFRESH_TOKEN_COOKIE = "hydra_refresh_token"

CHALLENGE_COOKIES = (VERIFIER_COOKIE, STATE_COOKIE, RETURN_TO_COOKIE)
TOKEN_COOKIES = (ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE)


@dataclass(frozen=True)
class Cookie:
    """A single outgoing cookie. ``max_age == 0`` marks a deletion."""
    name: str
    value: str
    max_age: Optional[int] = None
    http_only: bool = True
    secure: bool = False
    same_site: str = "lax"
    path: str = "/"
    domain: Optional[str] = None

    @property
    def is_deletion(self) -> bool:
        return self.max_age == 0


class CookieJar:
    """Ordered set of pending cookie mutations; the last mutation per name wins."""

    def __init__(self, secure: bool = False, domain: Optional[str] = None):
        self.secure = secure
        self.domain = domain
        self._pending: Dict[str, Cookie] = {}

    def set(self, name: str, value: str, max_age: int, same_site: str = "lax") -> Cookie:
        cookie = Cookie(
            name=name,
            value=value,
            max_age=max_age,
            secure=self.secure,
            same_site=same_site,
            domain=self.domain,
        )
        self._pending.pop(name, None)
        self._pending[name] = cookie
        return cookie

    def delete(self, *names: str) -> None:
        for name in names:
            self._pending.pop(name, None)
            self._pending[name] = Cookie(
                name=name,
                value="",
                max_age=0,
                secure=self.secure,
                domain=self.domain,
            )

    def get(self, name: str) -> Optional[Cookie]:
        return self._pending.get(name)

    def is_deleted(self, name: str) -> bool:
        cookie = self._pending.get(name)
        return cookie is not None and cookie.is_deletion

    def __iter__(self) -> Iterator[Cookie]:
        return iter(list(self._pending.values()))

    def __len__(self) -> int:
        return len(self._pending)

    def apply(self, response: Response) -> Response:
        """Write every pending mutation as a ``Set-Cookie`` header."""
        for cookie in self:
            if cookie.is_deletion:
                response.delete_cookie(
                    cookie.name,
                    path=cookie.path,
                    domain=cookie.domain,
                    secure=cookie.secure,
                    httponly=cookie.http_only,
                    samesite=cookie.same_site,
                )
            else:
                response.set_cookie(
                    cookie.name,
                    cookie.value,
                    max_age=cookie.max_age,
                    path=cookie.path,
                    domain=cookie.domain,
                    secure=cookie.secure,
                    httponly=cookie.http_only,
                    samesite=cookie.same_site,
                )
        return response


def client_ip_from(headers: Mapping[str, str], fallback: Optional[str]) -> str:
    """Caller address: first X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    return fallback or "unknown"


@dataclass(frozen=True)
class RequestContext:
    """The parts of an inbound request the broker components look at."""
    cookies: Dict[str, str] = field(default_factory=dict)
    cookie_header: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    url: str = ""
    client_ip: str = "unknown"

    @classmethod
    def from_request(cls, request: Request) -> "RequestContext":
        headers = {key.lower(): value for key, value in request.headers.items()}
        return cls(
            cookies=dict(request.cookies),
            cookie_header=headers.get("cookie", ""),
            headers=headers,
            url=str(request.url),
            client_ip=client_ip_from(headers, request.client.host if request.client else None),
        )

    def cookie(self, name: str) -> Optional[str]:
        value = self.cookies.get(name)
        return value or None

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    def bearer_token(self) -> Optional[str]:
        authorization = self.header("authorization") or ""
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()
