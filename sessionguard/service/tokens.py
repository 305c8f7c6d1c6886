from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple

from sessionguard.clock import Clock, SystemClock
from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    InvalidPayloadError,
    TokenExpiredError,
    TokenMalformedError,
    TokenMissingError,
    TokenWrongKindError,
)
from sessionguard.storage.models import TokenClaims, TokenKind

logger = get_logger(__name__)

ALGORITHM = "HS256"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _from_timestamp(value: Any) -> datetime:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TokenMalformedError("timestamp claim is not numeric")
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise TokenMalformedError("timestamp claim out of range") from None


class TokenCodec:
    """Signs, verifies and decodes access and refresh JWTs.

    Each kind is signed with its own secret, so a refresh token can never
    pass as an access token even if the ``type`` claim were forged. The codec
    is stateless: revocation is the caller's concern.
    """

    def __init__(self, settings: Settings, *, clock: Optional[Clock] = None) -> None:
        self.settings = settings
        self.clock: Clock = clock or SystemClock()
        self._secrets = {
            TokenKind.ACCESS: settings.access_token_secret.encode(),
            TokenKind.REFRESH: settings.refresh_token_secret.encode(),
        }
        self._ttls = {
            TokenKind.ACCESS: timedelta(seconds=settings.access_token_ttl_seconds),
            TokenKind.REFRESH: timedelta(seconds=settings.refresh_token_ttl_seconds),
        }
        self._leeway = timedelta(seconds=settings.clock_skew_leeway_seconds)

    def expires_in(self, kind: TokenKind) -> int:
        return int(self._ttls[kind].total_seconds())

    def issue_access(
        self, subject_id: str, email: str, role: str = "user"
    ) -> Tuple[str, TokenClaims]:
        return self._issue(TokenKind.ACCESS, subject_id, email, role)

    def issue_refresh(
        self, subject_id: str, email: str, role: str = "user"
    ) -> Tuple[str, TokenClaims]:
        return self._issue(TokenKind.REFRESH, subject_id, email, role)

    def _issue(
        self, kind: TokenKind, subject_id: str, email: str, role: str
    ) -> Tuple[str, TokenClaims]:
        if not subject_id or not email:
            raise InvalidPayloadError("Invalid payload: subject_id and email are required")
        # Claims are serialized with whole-second precision
        now = self.clock.now().replace(microsecond=0)
        claims = TokenClaims(
            subject_id=str(subject_id),
            email=email,
            role=role or "user",
            kind=kind,
            issued_at=now,
            expires_at=now + self._ttls[kind],
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            token_id=str(uuid.uuid4()) if kind is TokenKind.REFRESH else None,
        )
        return self._encode(claims.to_payload(), kind), claims

    def _encode(self, payload: dict[str, Any], kind: TokenKind) -> str:
        header = {"alg": ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def _sign(self, signing_input: str, kind: TokenKind) -> str:
        digest = hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def _signed_by(self, signing_input: str, signature: str, kind: TokenKind) -> bool:
        expected = self._sign(signing_input, kind).encode()
        return hmac.compare_digest(expected, signature.encode("utf-8", "replace"))

    def verify(self, token: Optional[str], expected_kind: TokenKind) -> TokenClaims:
        """Check signature, expiry, issuer, audience and kind.

        Raises one of TokenMissingError, TokenMalformedError, TokenExpiredError
        or TokenWrongKindError.
        """
        if not token:
            raise TokenMissingError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenMalformedError("token does not have three segments") from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, binascii.Error):
            logger.warning("jwt_header_decode_failed")
            raise TokenMalformedError("undecodable header") from None
        # Reject anything but HS256 to prevent algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenMalformedError("unsupported algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        if not self._signed_by(signing_input, sig_b64, expected_kind):
            other_kind = (
                TokenKind.REFRESH if expected_kind is TokenKind.ACCESS else TokenKind.ACCESS
            )
            if self._signed_by(signing_input, sig_b64, other_kind):
                raise TokenWrongKindError(f"expected {expected_kind.value} token")
            raise TokenMalformedError("signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, binascii.Error) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenMalformedError("undecodable payload") from None
        if not isinstance(payload, dict):
            raise TokenMalformedError("payload is not an object")

        expires_at = _from_timestamp(payload.get("exp"))
        if self.clock.now() >= expires_at + self._leeway:
            raise TokenExpiredError()

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenMalformedError("issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenMalformedError("audience mismatch")

        if payload.get("type") != expected_kind.value:
            raise TokenWrongKindError(f"expected {expected_kind.value} token")

        subject_id = payload.get("sub")
        email = payload.get("email")
        if not isinstance(subject_id, str) or not subject_id or not isinstance(email, str):
            raise TokenMalformedError("missing subject claims")
        token_id = payload.get("jti")
        if expected_kind is TokenKind.REFRESH and not (isinstance(token_id, str) and token_id):
            raise TokenMalformedError("refresh token without jti")

        return TokenClaims(
            subject_id=subject_id,
            email=email,
            role=str(payload.get("role") or "user"),
            kind=expected_kind,
            issued_at=_from_timestamp(payload.get("iat", payload.get("exp"))),
            expires_at=expires_at,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            token_id=token_id if isinstance(token_id, str) else None,
        )

    def peek_expiry(self, token: Optional[str]) -> Optional[datetime]:
        """Read ``exp`` from a token signed by either secret.

        Expiry, issuer and kind are not checked, so an expired or wrong-kind
        token still yields its ``exp``. Anything not signed here yields None.
        Only for sizing a revocation entry; never for trust decisions.
        """
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (ValueError, AttributeError):
            return None
        signing_input = f"{header_b64}.{payload_b64}"
        if not any(self._signed_by(signing_input, sig_b64, kind) for kind in TokenKind):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
            if not isinstance(payload, dict):
                return None
            return _from_timestamp(payload.get("exp"))
        except (ValueError, binascii.Error, TokenMalformedError):
            return None
