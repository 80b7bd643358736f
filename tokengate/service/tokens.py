from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Protocol, Tuple

from tokengate.config import Settings
from tokengate.logging import get_logger
from tokengate.service.credentials import CredentialCodec
from tokengate.service.errors import (
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from tokengate.storage.errors import (
    ConstraintViolation,
    GRANT_REFERENCE,
    ONE_ACTIVE_GRANT,
    USER_REFERENCE,
)
from tokengate.storage.models import AccessGrant, RefreshSecret

logger = get_logger(__name__)

WILDCARD_SCOPE = "*"


class TokenBackend(Protocol):
    def get_grant(self, grant_id: str) -> Optional[AccessGrant]: ...

    def get_grant_by_jti(self, jti: str) -> Optional[AccessGrant]: ...

    def get_grant_by_static_tag(self, tag: str) -> Optional[AccessGrant]: ...

    def get_active_grant_for_user(self, user_id: str) -> Optional[AccessGrant]: ...

    def upsert_active_grant(
        self, user_id: str, scopes: List[str], expires_at: datetime, *, now: datetime
    ) -> Tuple[AccessGrant, bool]: ...

    def revoke_grant(self, grant_id: str, *, now: datetime) -> Optional[AccessGrant]: ...

    def touch_grant(self, grant_id: str, *, now: datetime) -> None: ...

    def set_static_token_tag(self, grant_id: str, tag: str) -> Optional[AccessGrant]: ...

    def expire_grants(self, *, now: datetime) -> int: ...

    def create_refresh_secret(
        self,
        grant_id: str,
        user_id: str,
        secret_hash: str,
        lookup_tag: str,
        expires_at: datetime,
        *,
        now: datetime,
    ) -> RefreshSecret: ...

    def get_refresh_secret_by_tag(self, lookup_tag: str) -> Optional[RefreshSecret]: ...

    def revoke_refresh_secret_if_live(self, secret_id: str, *, now: datetime) -> bool: ...

    def purge_refresh_secrets(self, *, expired_before: datetime) -> int: ...


def normalize_scopes(scopes: Iterable[str]) -> List[str]:
    """Strip, drop blanks and deduplicate keeping first-seen order.

    Raises ValidationError for non-string entries or an empty result.
    """
    if isinstance(scopes, str) or scopes is None:
        raise ValidationError("scopes must be a list of strings", detail={"field": "scopes"})
    normalized: List[str] = []
    seen = set()
    for scope in scopes:
        if not isinstance(scope, str):
            raise ValidationError("scopes must be a list of strings", detail={"field": "scopes"})
        value = scope.strip()
        if value and value not in seen:
            seen.add(value)
            normalized.append(value)
    if not normalized:
        raise ValidationError("at least one scope is required", detail={"field": "scopes"})
    return normalized


class TokenStore:
    """Grant and refresh-secret lifecycle on top of a storage backend."""

    def __init__(
        self,
        backend: TokenBackend,
        codec: CredentialCodec,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.backend = backend
        self.codec = codec
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def _lifetime(self, ttl_days: Optional[int]) -> timedelta:
        if ttl_days is None:
            return timedelta(days=self.settings.refresh_ttl_days)
        if ttl_days <= 0:
            raise ValidationError("ttl_days must be positive", detail={"field": "ttl_days"})
        return timedelta(days=min(ttl_days, self.settings.refresh_token_max_days))

    # grants
    def find_active_grant_for_user(self, user_id: str) -> Optional[AccessGrant]:
        grant = self.backend.get_active_grant_for_user(user_id)
        if grant and not grant.is_live(self._now()):
            return None
        return grant

    def upsert_grant(
        self, user_id: str, scopes: Iterable[str], ttl_days: Optional[int] = None
    ) -> AccessGrant:
        normalized = normalize_scopes(scopes)
        now = self._now()
        expires_at = now + self._lifetime(ttl_days)
        try:
            grant, created = self.backend.upsert_active_grant(
                user_id, normalized, expires_at, now=now
            )
        except ConstraintViolation as exc:
            if exc.constraint == USER_REFERENCE:
                raise NotFoundError("user not found", detail={"user_id": user_id}) from exc
            if exc.constraint == ONE_ACTIVE_GRANT:
                raise ConflictError(
                    "concurrent grant update for user", detail={"user_id": user_id}
                ) from exc
            raise ServerError(
                "grant write rejected", detail={"constraint": exc.constraint}
            ) from exc
        logger.info(
            "grant_upserted",
            grant_id=grant.id,
            user_id=user_id,
            created=created,
            scopes=normalized,
            expires_at=expires_at.isoformat(),
        )
        return grant

    def revoke_grant(self, grant_id: str) -> AccessGrant:
        grant = self.backend.revoke_grant(grant_id, now=self._now())
        if not grant:
            raise NotFoundError("grant not found", detail={"grant_id": grant_id})
        logger.info("grant_revoked", grant_id=grant_id, user_id=grant.user_id)
        return grant

    def find_grant_by_jti(self, jti: str) -> Optional[AccessGrant]:
        grant = self.backend.get_grant_by_jti(jti)
        if not grant or not grant.is_live(self._now()):
            return None
        return grant

    def get_grant(self, grant_id: str) -> Optional[AccessGrant]:
        return self.backend.get_grant(grant_id)

    def touch_grant(self, grant_id: str) -> None:
        try:
            self.backend.touch_grant(grant_id, now=self._now())
        except Exception as exc:
            # usage timestamps never block authentication
            logger.warning("grant_touch_failed", grant_id=grant_id, error=str(exc))

    def bind_static_token(self, grant_id: str, tag: str) -> AccessGrant:
        try:
            grant = self.backend.set_static_token_tag(grant_id, tag)
        except ConstraintViolation as exc:
            raise ConflictError("static token collision", detail={"grant_id": grant_id}) from exc
        if not grant:
            raise NotFoundError("grant not found", detail={"grant_id": grant_id})
        return grant

    def find_grant_by_static_tag(self, tag: str) -> Optional[AccessGrant]:
        grant = self.backend.get_grant_by_static_tag(tag)
        if not grant or not grant.is_live(self._now()):
            return None
        return grant

    # refresh secrets
    def store_refresh_secret(
        self,
        grant_id: str,
        user_id: str,
        secret_hash: str,
        lookup_tag: str,
        ttl_days: Optional[int] = None,
        *,
        not_after: Optional[datetime] = None,
    ) -> RefreshSecret:
        """Persist a hashed secret, revoking the grant's previous live one."""
        now = self._now()
        expires_at = now + self._lifetime(ttl_days)
        if not_after is not None and not_after < expires_at:
            expires_at = not_after
        try:
            return self.backend.create_refresh_secret(
                grant_id, user_id, secret_hash, lookup_tag, expires_at, now=now
            )
        except ConstraintViolation as exc:
            if exc.constraint == GRANT_REFERENCE:
                raise NotFoundError("grant not found", detail={"grant_id": grant_id}) from exc
            raise ConflictError(
                "concurrent refresh secret update", detail={"grant_id": grant_id}
            ) from exc

    async def prepare_refresh_secret(self) -> Tuple[str, str, str]:
        """Generate a secret and compute its hash and tag off the event loop."""
        plaintext = self.codec.new_refresh_secret()
        secret_hash = await asyncio.to_thread(self.codec.hash_secret, plaintext)
        return plaintext, secret_hash, self.codec.lookup_tag(plaintext)

    async def issue_refresh_secret(self, grant: AccessGrant) -> Tuple[str, RefreshSecret]:
        plaintext, secret_hash, tag = await self.prepare_refresh_secret()
        record = self.store_refresh_secret(
            grant.id, grant.user_id, secret_hash, tag, not_after=grant.expires_at
        )
        return plaintext, record

    async def consume_refresh_secret(self, plaintext: str) -> Optional[RefreshSecret]:
        """Redeem a refresh secret exactly once.

        Only the caller whose conditional revoke flips the row wins; every
        other outcome (unknown, expired, revoked, hash mismatch, lost race)
        returns None.
        """
        if not isinstance(plaintext, str) or not plaintext:
            return None
        record: Optional[RefreshSecret] = None
        for tag in self.codec.lookup_tags(plaintext):
            record = self.backend.get_refresh_secret_by_tag(tag)
            if record:
                break
        if not record or not record.is_live(self._now()):
            return None
        if not await asyncio.to_thread(self.codec.matches, plaintext, record.secret_hash):
            return None
        now = self._now()
        if not self.backend.revoke_refresh_secret_if_live(record.id, now=now):
            logger.info("refresh_secret_consume_lost", secret_id=record.id, grant_id=record.grant_id)
            return None
        return replace(record, revoked_at=now)

    # hygiene
    def reap(self, retention_days: int) -> dict:
        now = self._now()
        expired = self.backend.expire_grants(now=now)
        purged = self.backend.purge_refresh_secrets(
            expired_before=now - timedelta(days=retention_days)
        )
        return {"grants_expired": expired, "refresh_secrets_purged": purged}
