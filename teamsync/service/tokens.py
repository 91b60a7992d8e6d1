from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

from teamsync.logging import get_logger
from teamsync.service.results import ErrorKind, Result

logger = get_logger(__name__)

INVALID_TOKEN = "Invalid or expired token"


@dataclass(frozen=True)
class TokenClaims:
    identity_id: str
    email: str
    role: Optional[str] = None


class TokenCodec:
    """HS256 signer/verifier bound to one issuer and audience."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def sign(self, claims: TokenClaims, ttl: timedelta) -> str:
        if ttl.total_seconds() <= 0:
            raise ValueError("token ttl must be positive")
        now = self._clock()
        payload: dict[str, Any] = {
            "sub": claims.identity_id,
            "email": claims.email,
            "role": claims.role,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(now),
            "exp": int(now + ttl.total_seconds()),
            "jti": uuid.uuid4().hex,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str) -> Result[TokenClaims]:
        payload, reason = self._decode(token)
        if payload is None:
            # reason stays in the logs; callers only learn the token is unusable
            logger.info("token_verification_failed", reason=reason)
            return Result.failure(ErrorKind.UNAUTHORIZED, INVALID_TOKEN)
        return Result.success(
            TokenClaims(
                identity_id=payload["sub"],
                email=payload.get("email", ""),
                role=payload.get("role"),
            )
        )

    def _decode(self, token: str) -> tuple[Optional[dict[str, Any]], str]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (ValueError, AttributeError):
            return None, "malformed"
        if not token.isascii():
            return None, "malformed"

        # pin the algorithm before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            return None, "malformed"
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            return None, "bad_algorithm"

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None, "bad_signature"
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            return None, "malformed"
        if not isinstance(payload, dict) or not isinstance(payload.get("sub"), str):
            return None, "malformed"
        if payload.get("iss") != self.issuer:
            return None, "issuer_mismatch"
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None, "audience_mismatch"
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None, "malformed"
        if exp_ts <= self._clock() - self.leeway_seconds:
            return None, "expired"
        return payload, ""
