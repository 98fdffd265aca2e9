from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import jwt

from errors import Unauthenticated, Unauthorized

ACCESS_TOKEN_EXPIRE_MINUTES = 60


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    """Issues and verifies signed, time-limited session tokens."""

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        expire_minutes: int = ACCESS_TOKEN_EXPIRE_MINUTES,
        clock: Callable[[], datetime] = _now,
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.ttl = timedelta(minutes=expire_minutes)
        self.clock = clock

    def issue(self, user_id: int) -> str:
        issued_at = self.clock()
        to_encode = {"sub": str(user_id), "exp": issued_at + self.ttl}
        return jwt.encode(to_encode, self.secret, algorithm=self.algorithm)

    def verify(self, token: Optional[str]) -> int:
        """Return the user id carried by `token`.

        Raises Unauthenticated when there is no token or it cannot be parsed
        at all, and Unauthorized when the signature or expiry check fails.
        """
        if not token:
            raise Unauthenticated()
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise Unauthorized("Token has expired")
        except jwt.InvalidSignatureError:
            raise Unauthorized()
        except jwt.DecodeError:
            raise Unauthenticated("Malformed token")
        except jwt.InvalidTokenError:
            raise Unauthorized()

        subject = payload.get("sub")
        try:
            return int(subject)
        except (TypeError, ValueError):
            raise Unauthorized()
