from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import AuthResult, ErrorKind

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
_REFRESH_TOKEN_BYTES = 48
_REFRESH_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{32,128}$")


@dataclass(frozen=True)
class AccessClaims:
    """Verified claim set of an access token."""

    account_id: str
    institution_id: Optional[str]
    role: str
    session_id: Optional[str]
    family_id: Optional[str]
    jti: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime


class TokenService:
    """HS256 access tokens and opaque refresh tokens.

    Access tokens are verified by signature and expiry alone. The first
    configured secret signs; every configured secret verifies, so a secret
    can be rotated without logging everyone out.
    """

    def __init__(self, settings: Settings, *, leeway_seconds: int = 30) -> None:
        self.settings = settings
        self._clock_skew_leeway = timedelta(seconds=leeway_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, secret: str, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(self.settings.jwt_secret, signing_input)}"

    def issue_access_token(
        self,
        *,
        account_id: str,
        institution_id: Optional[str],
        role: str,
        session_id: Optional[str] = None,
        family_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        issued = now or self._now()
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account_id,
            "tenant": institution_id,
            "role": role,
            "sid": session_id,
            "fam": family_id,
            "jti": str(uuid.uuid4()),
            "token_type": ACCESS_TOKEN_TYPE,
            "iat": int(issued.timestamp()),
            "exp": int((issued + timedelta(seconds=self.access_ttl_seconds)).timestamp()),
        }
        return self._encode_jwt(payload)

    def verify_access_token(self, token: Optional[str]) -> AuthResult[AccessClaims]:
        if not token:
            return AuthResult.failure(ErrorKind.TOKEN_REQUIRED)
        invalid = AuthResult.failure(ErrorKind.TOKEN_INVALID)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return invalid

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return invalid
        # Reject "none" and asymmetric algs to prevent algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return invalid

        signing_input = f"{header_b64}.{payload_b64}"
        # compare_digest refuses non-ASCII str; such a segment is never a valid signature
        if not sig_b64.isascii():
            return invalid
        if not any(
            hmac.compare_digest(self._sign(secret, signing_input), sig_b64)
            for secret in self.settings.verification_secrets
            if secret
        ):
            return invalid

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return invalid
        if not isinstance(payload, dict):
            return invalid
        if payload.get("iss") != self.settings.jwt_issuer:
            return invalid
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or payload.get("token_type") != ACCESS_TOKEN_TYPE:
            return invalid
        if not isinstance(payload.get("sub"), str) or not payload.get("role"):
            return invalid
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            return invalid
        if exp_ts <= self._now().timestamp() - self._clock_skew_leeway.total_seconds():
            return AuthResult.failure(ErrorKind.TOKEN_EXPIRED)

        return AuthResult.success(
            AccessClaims(
                account_id=payload["sub"],
                institution_id=payload.get("tenant"),
                role=str(payload["role"]),
                session_id=payload.get("sid"),
                family_id=payload.get("fam"),
                jti=str(payload.get("jti", "")),
                issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
                expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            )
        )

    # -- refresh tokens ---------------------------------------------------

    @staticmethod
    def generate_refresh_token() -> str:
        return secrets.token_urlsafe(_REFRESH_TOKEN_BYTES)

    @staticmethod
    def is_well_formed_refresh_token(token: Optional[str]) -> bool:
        return bool(token) and bool(_REFRESH_TOKEN_PATTERN.match(token))

    def hash_refresh_token(self, token: str) -> str:
        """Keyed hash stored in place of the raw refresh token."""
        key = (self.settings.refresh_token_pepper or self.settings.jwt_secret).encode()
        return hmac.new(key, token.encode(), hashlib.sha256).hexdigest()
