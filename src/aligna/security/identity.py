"""Bearer-token identity: token -> user id.

Two verifiers are provided:
- ``SupabaseTokenVerifier`` asks the auth server (``/auth/v1/user``)
- ``JwtTokenVerifier`` decodes an HS256 token locally (in-memory deployments, tests)
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

import jwt
import requests

from ..config import Settings
from ..services.http_retry import RetryPolicy, TransportError, build_session, fetch_with_retry

IDENTITY_POLICY = RetryPolicy(retries=2, base_delay=0.3, timeout=10.0)


class IdentityError(Exception):
    def __init__(self, message: str, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class TokenVerifier(Protocol):
    def verify(self, token: str) -> str: ...


def bearer_token(header: Optional[str]) -> Optional[str]:
    """Accept ``Bearer <token>`` or a bare token; ``None`` when empty."""
    auth = (header or "").lstrip()
    if auth.startswith("Bearer "):
        auth = auth[len("Bearer "):]
    return auth.strip() or None


class JwtTokenVerifier:
    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        self._secret = secret
        self._algorithm = algorithm

    def verify(self, token: str) -> str:
        try:
            data = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError:
            raise IdentityError("Invalid user token", details="Token expired")
        except jwt.PyJWTError as exc:
            raise IdentityError("Invalid user token", details=str(exc))
        user_id = data.get("sub")
        if not user_id:
            raise IdentityError("User not found")
        return str(user_id)

    def issue(self, user_id: str, expires_min: int = 60) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(minutes=expires_min)).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)


class SupabaseTokenVerifier:
    def __init__(self, base_url: str, service_key: str, *, session: Optional[requests.Session] = None) -> None:
        self._url = base_url.rstrip("/") + "/auth/v1/user"
        self._key = service_key
        self._session = session or build_session()

    def verify(self, token: str) -> str:
        try:
            res = fetch_with_retry(
                self._session,
                "GET",
                self._url,
                policy=IDENTITY_POLICY,
                headers={"apikey": self._key, "authorization": f"Bearer {token}"},
            )
        except TransportError as exc:
            raise IdentityError("Invalid user token", details=str(exc)) from exc
        if not res.ok:
            raise IdentityError("Invalid user token", details=res.text or None)
        try:
            body = json.loads(res.text or "{}")
        except ValueError:
            body = {}
        user_id = body.get("id") if isinstance(body, dict) else None
        if not user_id:
            raise IdentityError("User not found")
        return str(user_id)


def verifier_from_settings(settings: Settings) -> TokenVerifier:
    if settings.store_impl == "rest":
        return SupabaseTokenVerifier(settings.store_url, settings.service_key)
    return JwtTokenVerifier(settings.jwt_secret)
