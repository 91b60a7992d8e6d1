from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderKind(str, Enum):
    """How an identity proves who it is."""

    EMAIL = "EMAIL"
    GOOGLE = "GOOGLE"
    GITHUB = "GITHUB"
    FACEBOOK = "FACEBOOK"


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class Identity:
    id: str
    email: str
    name: Optional[str] = None
    profile_picture: Optional[str] = None
    is_active: bool = True
    last_login: Optional[datetime] = None
    current_workspace_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def public_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "profile_picture": self.profile_picture,
            "is_active": self.is_active,
            "last_login": self.last_login.isoformat() if self.last_login else None,
            "current_workspace_id": self.current_workspace_id,
        }


@dataclass
class ProviderLink:
    id: str
    identity_id: str
    provider: ProviderKind
    provider_subject: str
    refresh_token: Optional[str] = None
    token_expiry: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Workspace:
    id: str
    name: str
    owner_id: str
    invite_code: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @staticmethod
    def generate_invite_code() -> str:
        return secrets.token_hex(4)


@dataclass
class Membership:
    identity_id: str
    workspace_id: str
    role: str
    joined_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    identity_id: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, identity_id: str, ttl_minutes: int = 60 * 24) -> "Session":
        now = utcnow()
        return cls(
            id=secrets.token_urlsafe(32),
            identity_id=identity_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at > (now or utcnow())


def new_id() -> str:
    return str(uuid.uuid4())
