from __future__ import annotations

import hmac
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, NoReturn, Optional, Protocol

from tokengate.config import Settings
from tokengate.logging import get_logger
from tokengate.service.credentials import CredentialCodec
from tokengate.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tokengate.service.locks import UserLocks
from tokengate.service.requests import ApprovalResult, RequestBackend, RequestWorkflow
from tokengate.service.tokens import (
    WILDCARD_SCOPE,
    TokenBackend,
    TokenStore,
    normalize_scopes,
)
from tokengate.storage.errors import ConstraintViolation
from tokengate.storage.models import AccessGrant, AccessRequest, User
from tokengate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_STATIC_TOKEN_PREFIX = "tgs_"
_INVALID_CREDENTIALS = "invalid credentials"


class AuthStore(TokenBackend, RequestBackend, Protocol):
    def create_user(self, email: str, *, is_admin: bool = False) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_user_admin(self, user_id: str, is_admin: bool) -> Optional[User]: ...


@dataclass
class Identity:
    user_id: str
    email: str
    grant_id: str
    jti: str
    scopes: List[str]
    is_admin: bool = False
    # "assertion" or "static"
    credential: str = "assertion"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime


@dataclass
class TokenDetails:
    grant: AccessGrant
    user: User


class AuthService:
    """Issuance, verification, rotation and revocation of API credentials.

    Wires the credential codec, token store, request workflow and approval
    locks over a single backend. Authentication failures are deliberately
    uniform: the caller only ever sees ``AuthenticationError("invalid
    credentials")`` and the specific reason goes to the log.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: "RedisCache | SyncRedisCache | None",
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.codec = CredentialCodec(settings, clock=self._clock)
        self.tokens = TokenStore(store, self.codec, settings, clock=self._clock)
        self.locks = UserLocks(
            cache,
            ttl_seconds=settings.approval_lock_ttl_seconds,
            timeout_seconds=settings.approval_lock_timeout_seconds,
        )
        self.workflow = RequestWorkflow(
            store, self.tokens, self.codec, self.locks, settings, clock=self._clock
        )
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    # users
    def find_or_create_user(self, email: str) -> User:
        normalized = email.strip().lower() if isinstance(email, str) else ""
        if not _EMAIL_RE.match(normalized):
            raise ValidationError("invalid email address", detail={"field": "email"})
        user = self.store.get_user_by_email(normalized)
        if user:
            return user
        try:
            user = self.store.create_user(normalized)
        except ConstraintViolation:
            # lost a creation race; the other writer's row is the user
            user = self.store.get_user_by_email(normalized)
            if not user:
                raise
            return user
        self.logger.info("user_created", user_id=user.id)
        return user

    # request workflow
    def submit(self, email: str, scopes: Iterable[str]) -> AccessRequest:
        normalized = normalize_scopes(scopes)
        user = self.find_or_create_user(email)
        return self.workflow.submit(user.id, normalized)

    def get_request(self, request_id: str) -> AccessRequest:
        return self.workflow.get(request_id)

    def list_requests(
        self,
        status: Optional[str] = None,
        *,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> List[AccessRequest]:
        return self.workflow.list(status, limit=limit, cursor=cursor)

    async def approve(self, request_id: str, note: Optional[str] = None) -> ApprovalResult:
        return await self.workflow.approve(request_id, note)

    async def reject(self, request_id: str, note: Optional[str] = None) -> AccessRequest:
        return await self.workflow.reject(request_id, note)

    # authentication
    def _fail(self, reason: str, **context) -> NoReturn:
        self.logger.info("authentication_failed", reason=reason, **context)
        raise AuthenticationError(_INVALID_CREDENTIALS)

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header or not isinstance(header, str):
            return None
        scheme, _, value = header.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        value = value.strip()
        return value or None

    def _admin_key_valid(self, admin_key: Optional[str]) -> bool:
        expected = self.settings.admin_api_key
        if not expected or not admin_key:
            return False
        return hmac.compare_digest(admin_key.encode(), expected.encode())

    def _grant_for_static_token(self, token: str) -> Optional[AccessGrant]:
        for tag in self.codec.lookup_tags(token):
            grant = self.tokens.find_grant_by_static_tag(tag)
            if grant:
                return grant
        return None

    def authenticate(
        self, authorization: Optional[str], *, admin_key: Optional[str] = None
    ) -> Identity:
        token = self._extract_bearer(authorization)
        if not token:
            self._fail("missing_bearer")

        credential = "assertion"
        claims = self.codec.verify(token)
        if claims:
            grant = self.tokens.find_grant_by_jti(claims.jti)
            if not grant:
                self._fail("grant_not_live", jti=claims.jti)
            if grant.user_id != claims.user_id:
                self._fail("subject_mismatch", grant_id=grant.id)
        else:
            grant = self._grant_for_static_token(token)
            if not grant:
                self._fail("unrecognized_credential")
            credential = "static"

        user = self.store.get_user(grant.user_id)
        if not user:
            self._fail("user_missing", grant_id=grant.id)

        self.tokens.touch_grant(grant.id)
        return Identity(
            user_id=user.id,
            email=user.email,
            grant_id=grant.id,
            jti=grant.jti,
            scopes=list(grant.scopes),
            is_admin=user.is_admin or self._admin_key_valid(admin_key),
            credential=credential,
        )

    def authorize(self, identity: Identity, required_scope: str) -> None:
        if WILDCARD_SCOPE in identity.scopes or required_scope in identity.scopes:
            return
        self.logger.info(
            "authorization_denied", user_id=identity.user_id, required_scope=required_scope
        )
        raise ForbiddenError("insufficient scope", detail={"required_scope": required_scope})

    def require_admin(self, identity: Identity) -> None:
        if not identity.is_admin:
            raise ForbiddenError("admin access required")

    # credential lifecycle
    async def rotate(self, refresh_token: str) -> TokenPair:
        record = await self.tokens.consume_refresh_secret(refresh_token)
        if not record:
            self._fail("refresh_secret_rejected")
        grant = self.tokens.get_grant(record.grant_id)
        if not grant or not grant.is_live(self._now()):
            self._fail("refresh_grant_not_live", grant_id=record.grant_id)

        new_refresh, secret = await self.tokens.issue_refresh_secret(grant)
        issued = self._now().replace(microsecond=0)
        ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        access_token = self.codec.sign(
            grant.user_id, grant.jti, grant.scopes, ttl, now=issued
        )
        self.logger.info(
            "refresh_rotated",
            grant_id=grant.id,
            user_id=grant.user_id,
            refresh_secret_id=secret.id,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=new_refresh,
            access_expires_at=issued + ttl,
        )

    def revoke(self, grant_id: str) -> AccessGrant:
        return self.tokens.revoke_grant(grant_id)

    def describe_token(self, authorization: Optional[str]) -> TokenDetails:
        identity = self.authenticate(authorization)
        grant = self.tokens.get_grant(identity.grant_id)
        user = self.store.get_user(identity.user_id)
        if not grant or not user:
            self._fail("token_details_missing", grant_id=identity.grant_id)
        return TokenDetails(grant=grant, user=user)

    def issue_static_token(self, grant_id: str) -> str:
        """Bind a fresh opaque token to an active grant; replaces any previous one."""
        grant = self.tokens.get_grant(grant_id)
        if not grant:
            raise NotFoundError("grant not found", detail={"grant_id": grant_id})
        if not grant.is_live(self._now()):
            raise ConflictError("grant not active", detail={"grant_id": grant_id})
        token = f"{_STATIC_TOKEN_PREFIX}{secrets.token_urlsafe(32)}"
        self.tokens.bind_static_token(grant.id, self.codec.lookup_tag(token))
        self.logger.info("static_token_issued", grant_id=grant.id, user_id=grant.user_id)
        return token
