from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class BackendStatus(str, Enum):
    """Which backend currently answers revocation reads and writes."""

    PRIMARY = "primary"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    email: str
    role: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    issuer: str
    audience: str
    token_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "sub": self.subject_id,
            "email": self.email,
            "role": self.role,
            "type": self.kind.value,
            "iat": int(self.issued_at.timestamp()),
            "exp": int(self.expires_at.timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
        }
        if self.token_id:
            payload["jti"] = self.token_id
        return payload


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
        }


@dataclass(frozen=True)
class ClientInfo:
    """Caller-supplied request metadata, taken at face value."""

    ip_address: str = "unknown"
    user_agent: str = "unknown"
    location: Optional[str] = None


@dataclass
class Session:
    refresh_token: str
    token_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: str = "unknown"
    ip_address: str = "unknown"


@dataclass
class User:
    id: str
    email: str
    username: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None
    sessions: List[Session] = field(default_factory=list)

    @classmethod
    def new(
        cls,
        email: str,
        username: Optional[str] = None,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            username=username,
            role=role,
            is_active=is_active,
        )


@dataclass
class RevocationEntry:
    token_key: str
    expires_at: datetime


@dataclass
class LoginAttemptRecord:
    count: int = 0
    last_attempt_at: Optional[datetime] = None
    blocked_until: Optional[datetime] = None
    alerted: bool = False


@dataclass
class ActivityRecord:
    kind: str
    timestamp: datetime
    ip_address: str
    user_agent: str
    success: bool = True
    location: Optional[str] = None


@dataclass
class SecurityAlert:
    subject_id: str
    kind: str
    risk_level: RiskLevel
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def dispatchable(self) -> bool:
        return self.risk_level in (RiskLevel.MEDIUM, RiskLevel.HIGH)
