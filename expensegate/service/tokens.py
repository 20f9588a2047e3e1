from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from expensegate.logging import get_logger
from expensegate.storage.models import utcnow

logger = get_logger(__name__)


class VerificationErrorKind(str, Enum):
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"


class TokenVerificationError(Exception):
    def __init__(self, kind: VerificationErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    role: str
    display_name: Optional[str]
    issued_at: datetime
    expires_at: datetime
    token_id: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "sub": self.subject_id,
            "role": self.role,
            "name": self.display_name,
            "iat": int(self.issued_at.timestamp()),
            "exp": int(self.expires_at.timestamp()),
            "jti": self.token_id or str(uuid.uuid4()),
        }


class TokenCodec:
    """HS256 compact JWS signing and verification. Stateless."""

    _HEADER = {"alg": "HS256", "typ": "JWT"}

    def __init__(
        self, secret: str, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode()
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(self, claims: Mapping[str, Any], expires_at: datetime) -> str:
        """Sign ``claims`` (``sub``, ``role`` and optional ``name``) until ``expires_at``."""
        subject_id = claims.get("sub")
        role = claims.get("role")
        if not subject_id or not role:
            raise ValueError("token claims require 'sub' and 'role'")
        signed = TokenClaims(
            subject_id=str(subject_id),
            role=str(role),
            display_name=claims.get("name"),
            issued_at=self._clock(),
            expires_at=expires_at,
        )
        header_enc = self._encode_segment(
            json.dumps(self._HEADER, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(signed.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str) -> TokenClaims:
        """Return the claims of a correctly signed, unexpired token.

        Raises:
            TokenVerificationError: ``INVALID_SIGNATURE`` for signature or
                format failures, ``EXPIRED`` when now is at or past ``exp``.
        """
        invalid = TokenVerificationError(VerificationErrorKind.INVALID_SIGNATURE)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise invalid from None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("token_header_decode_failed")
            raise invalid from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise invalid

        expected = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            raise invalid

        try:
            payload = json.loads(self._decode_segment(payload_b64))
            claims = TokenClaims(
                subject_id=str(payload["sub"]),
                role=str(payload["role"]),
                display_name=payload.get("name"),
                issued_at=datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
                token_id=payload.get("jti"),
            )
        except (ValueError, TypeError, KeyError) as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            raise invalid from None

        if self._clock() >= claims.expires_at:
            raise TokenVerificationError(VerificationErrorKind.EXPIRED)
        return claims
