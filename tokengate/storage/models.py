from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

REQUEST_PENDING = "pending"
REQUEST_APPROVED = "approved"
REQUEST_REJECTED = "rejected"
REQUEST_STATUSES = (REQUEST_PENDING, REQUEST_APPROVED, REQUEST_REJECTED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    is_admin: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AccessGrant:
    """Durable authorization record referenced by ``jti`` inside assertions."""

    id: str
    user_id: str
    jti: str
    scopes: List[str]
    expires_at: datetime
    active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    static_token_tag: Optional[str] = None

    @classmethod
    def new(
        cls, user_id: str, scopes: List[str], expires_at: datetime, *, now: datetime
    ) -> "AccessGrant":
        return cls(
            id=new_id(),
            user_id=user_id,
            jti=uuid.uuid4().hex,
            scopes=list(scopes),
            expires_at=expires_at,
            created_at=now,
        )

    def is_live(self, now: datetime) -> bool:
        return self.active and self.revoked_at is None and self.expires_at > now


@dataclass
class RefreshSecret:
    """Stored form of a refresh secret; the plaintext never lands here."""

    id: str
    user_id: str
    grant_id: str
    secret_hash: str
    lookup_tag: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None

    def is_live(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class AccessRequest:
    id: str
    user_id: str
    scopes: List[str]
    status: str = REQUEST_PENDING
    admin_note: Optional[str] = None
    grant_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.status == REQUEST_PENDING
