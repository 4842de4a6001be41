from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime

from .errors import InvalidCredential
from .models import ensure_utc


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


@dataclass(frozen=True)
class CredentialClaims:
    key: str
    content_type: str
    max_bytes: int
    expires_at: int


class CredentialSigner:
    """HMAC-signed write tokens scoped to one staging key."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("credential secret must not be empty")
        self._secret = secret.encode()

    def _sign(self, payload_b64: str) -> str:
        digest = hmac.new(self._secret, payload_b64.encode(), hashlib.sha256).digest()
        return _b64encode(digest)

    def issue(self, key: str, content_type: str, max_bytes: int, expires_at: datetime) -> str:
        payload = {
            "k": key,
            "ct": content_type,
            "max": max_bytes,
            "exp": int(ensure_utc(expires_at).timestamp()),
        }
        payload_b64 = _b64encode(json.dumps(payload, separators=(",", ":")).encode())
        return f"{payload_b64}.{self._sign(payload_b64)}"

    def verify(self, token: str, key: str, now: datetime) -> CredentialClaims:
        try:
            payload_b64, signature = token.split(".")
        except ValueError as exc:
            raise InvalidCredential("malformed write credential") from exc

        if not hmac.compare_digest(self._sign(payload_b64), signature):
            raise InvalidCredential("write credential signature mismatch")

        try:
            payload = json.loads(_b64decode(payload_b64))
            claims = CredentialClaims(
                key=payload["k"],
                content_type=payload["ct"],
                max_bytes=int(payload["max"]),
                expires_at=int(payload["exp"]),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise InvalidCredential("malformed write credential") from exc

        if claims.key != key:
            raise InvalidCredential("write credential is scoped to a different key")
        if ensure_utc(now).timestamp() >= claims.expires_at:
            raise InvalidCredential("write credential expired")
        return claims
