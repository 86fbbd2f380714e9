from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

PROVIDER_LOCAL = "local"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    else:
        value = datetime.fromisoformat(str(raw))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    provider: str = PROVIDER_LOCAL
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str = ""
    name: str = ""
    provider: str = ""


@dataclass(frozen=True)
class OAuthUserInfo:
    """Provider profile normalized into one shape."""

    id: str
    email: str
    name: str
    avatar_url: str
    provider: str


@dataclass
class SessionData:
    user_id: str
    email: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionData":
        return cls(
            user_id=data["user_id"],
            email=data.get("email", ""),
            created_at=_parse_datetime(data["created_at"]),
            expires_at=_parse_datetime(data["expires_at"]),
        )


@dataclass
class OAuthState:
    state: str
    redirect_uri: str
    expires_at: datetime
    provider: str = ""

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "redirect_uri": self.redirect_uri,
            "expires_at": self.expires_at.isoformat(),
            "provider": self.provider,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OAuthState":
        return cls(
            state=data["state"],
            redirect_uri=data.get("redirect_uri", ""),
            expires_at=_parse_datetime(data["expires_at"]),
            provider=data.get("provider", ""),
        )


@dataclass(frozen=True)
class BestEffortResult:
    """Outcome of a side effect that must never abort the primary operation."""

    operation: str
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class AuthResponse:
    user: User
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"
    session_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    side_effects: List[BestEffortResult] = field(default_factory=list)
