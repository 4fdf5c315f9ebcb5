from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import jwt, JWTError


ALGORITHM = "HS256"


class TokenCodec:
    """HS256 access tokens; the signing secret is injected, not read from the environment."""

    def __init__(self, secret: str, access_minutes: int = 60):
        self.secret = secret
        self.access_minutes = access_minutes

    def create_access_token(self, subject: str, expires_delta: timedelta | None = None, extra: Dict[str, Any] | None = None) -> str:
        to_encode: Dict[str, Any] = {"sub": subject}
        if extra:
            to_encode.update(extra)
        expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=self.access_minutes))
        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, self.secret, algorithm=ALGORITHM)

    def decode_token(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, self.secret, algorithms=[ALGORITHM])
        except JWTError as e:
            raise ValueError(str(e))
