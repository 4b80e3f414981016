import base64
import hashlib
import hmac
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import HTTPException, status

from tripbook.config import Settings
from tripbook.services.clock import Clock, utcnow


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


@dataclass
class TokenService:
    """Signs and checks HMAC bearer tokens of the form ``payload.signature``."""

    secret: str
    ttl_hours: int = 24
    required: bool = False
    clock: Clock = utcnow

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Clock = utcnow) -> "TokenService":
        return cls(
            secret=settings.auth_secret,
            ttl_hours=settings.auth_token_ttl_hours,
            required=settings.auth_required,
            clock=clock,
        )

    def _sign(self, payload: bytes) -> bytes:
        return hmac.new(self.secret.encode("utf-8"), payload, hashlib.sha256).digest()

    def create_access_token(self, user_id: str) -> tuple[str, str]:
        expiry = self.clock() + timedelta(hours=self.ttl_hours)
        payload = f"{user_id}|{int(expiry.timestamp())}".encode("utf-8")
        token = f"{_b64url(payload)}.{_b64url(self._sign(payload))}"
        return token, expiry.isoformat()

    def verify_access_token(self, token: str) -> Optional[str]:
        try:
            payload_part, sig_part = token.split(".", 1)
            payload = _b64urldecode(payload_part)
            if not hmac.compare_digest(_b64urldecode(sig_part), self._sign(payload)):
                return None
            user_id, expiry_ts = payload.decode("utf-8").split("|", 1)
            if self.clock().timestamp() > int(expiry_ts):
                return None
            return user_id
        except (ValueError, UnicodeDecodeError):
            return None

    def resolve_request_user(self, authorization: Optional[str]) -> Optional[str]:
        token = parse_bearer_token(authorization)
        if not token:
            return None
        return self.verify_access_token(token)

    def require_user(self, authorization: Optional[str]) -> str:
        user_id = self.resolve_request_user(authorization)
        if not user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
        return user_id

    def assert_actor_authorized(self, actor_user_id: str, authorization: Optional[str] = None) -> None:
        """Reject when a bearer token is present for someone other than the acting user.

        Without a token the call is allowed unless ``required`` is set.
        """
        token_user = self.resolve_request_user(authorization)
        if not token_user:
            if self.required:
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
            return
        if token_user != actor_user_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token user does not match actor user")
