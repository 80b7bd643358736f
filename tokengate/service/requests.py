from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Protocol

from tokengate.config import Settings
from tokengate.logging import get_logger
from tokengate.service.credentials import CredentialCodec
from tokengate.service.errors import ConflictError, NotFoundError, ValidationError
from tokengate.service.locks import UserLocks
from tokengate.service.tokens import TokenStore, normalize_scopes
from tokengate.storage.cursors import encode_time_id_cursor
from tokengate.storage.errors import ConstraintViolation
from tokengate.storage.models import (
    REQUEST_APPROVED,
    REQUEST_REJECTED,
    REQUEST_STATUSES,
    AccessGrant,
    AccessRequest,
)

logger = get_logger(__name__)

MAX_PAGE_SIZE = 500


class RequestBackend(Protocol):
    def create_request(
        self, user_id: str, scopes: List[str], *, now: datetime
    ) -> AccessRequest: ...

    def get_request(self, request_id: str) -> Optional[AccessRequest]: ...

    def list_requests(
        self,
        status: Optional[str] = None,
        *,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> List[AccessRequest]: ...

    def decide_request(
        self,
        request_id: str,
        status: str,
        *,
        now: datetime,
        note: Optional[str] = None,
        grant_id: Optional[str] = None,
    ) -> Optional[AccessRequest]: ...

    def revoke_refresh_secret_if_live(self, secret_id: str, *, now: datetime) -> bool: ...


@dataclass
class ApprovalResult:
    request: AccessRequest
    grant: AccessGrant
    access_token: str
    refresh_token: str
    access_expires_at: datetime


class RequestWorkflow:
    """Access request lifecycle: ``pending -> approved | rejected``, exactly once.

    Approval is serialized per user by ``UserLocks`` and finished with a
    compare-and-swap on the pending status, so two admins racing on the
    same request yield one approval and one ConflictError.
    """

    def __init__(
        self,
        backend: RequestBackend,
        tokens: TokenStore,
        codec: CredentialCodec,
        locks: UserLocks,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.backend = backend
        self.tokens = tokens
        self.codec = codec
        self.locks = locks
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def submit(self, user_id: str, scopes: Iterable[str]) -> AccessRequest:
        normalized = normalize_scopes(scopes)
        try:
            request = self.backend.create_request(user_id, normalized, now=self._now())
        except ConstraintViolation as exc:
            raise NotFoundError("user not found", detail={"user_id": user_id}) from exc
        logger.info("access_request_submitted", request_id=request.id, user_id=user_id, scopes=normalized)
        return request

    def get(self, request_id: str) -> AccessRequest:
        request = self.backend.get_request(request_id)
        if not request:
            raise NotFoundError("request not found", detail={"request_id": request_id})
        return request

    def list(
        self,
        status: Optional[str] = None,
        *,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> List[AccessRequest]:
        if status is not None and status not in REQUEST_STATUSES:
            raise ValidationError(
                "unknown request status",
                detail={"status": status, "allowed": list(REQUEST_STATUSES)},
            )
        if limit <= 0 or limit > MAX_PAGE_SIZE:
            raise ValidationError(
                f"limit must be between 1 and {MAX_PAGE_SIZE}", detail={"limit": limit}
            )
        try:
            return self.backend.list_requests(status, limit=limit, cursor=cursor)
        except ValueError as exc:
            raise ValidationError("invalid request cursor", detail={"cursor": cursor}) from exc

    @staticmethod
    def next_cursor(requests: List[AccessRequest]) -> Optional[str]:
        if not requests:
            return None
        last = requests[-1]
        return encode_time_id_cursor(last.created_at, last.id)

    def _require_pending(self, request_id: str) -> AccessRequest:
        request = self.get(request_id)
        if not request.is_pending:
            raise ConflictError(
                "request not pending",
                detail={"request_id": request_id, "status": request.status},
            )
        return request

    async def approve(self, request_id: str, note: Optional[str] = None) -> ApprovalResult:
        request = self._require_pending(request_id)
        # argon2 runs before the lock is taken
        refresh_plain, refresh_hash, refresh_tag = await self.tokens.prepare_refresh_secret()

        async with self.locks.hold(request.user_id):
            request = self._require_pending(request_id)
            grant = self.tokens.upsert_grant(request.user_id, request.scopes)
            secret = self.tokens.store_refresh_secret(
                grant.id,
                request.user_id,
                refresh_hash,
                refresh_tag,
                not_after=grant.expires_at,
            )
            decided = self.backend.decide_request(
                request_id,
                REQUEST_APPROVED,
                now=self._now(),
                note=note,
                grant_id=grant.id,
            )
            if not decided:
                self.backend.revoke_refresh_secret_if_live(secret.id, now=self._now())
                logger.warning("access_request_approve_lost", request_id=request_id)
                raise ConflictError("request not pending", detail={"request_id": request_id})

        # whole seconds so the reported expiry matches the signed exp claim
        issued = self._now().replace(microsecond=0)
        ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        access_token = self.codec.sign(
            grant.user_id, grant.jti, grant.scopes, ttl, now=issued
        )
        logger.info(
            "access_request_approved",
            request_id=request_id,
            user_id=grant.user_id,
            grant_id=grant.id,
        )
        return ApprovalResult(
            request=decided,
            grant=grant,
            access_token=access_token,
            refresh_token=refresh_plain,
            access_expires_at=issued + ttl,
        )

    async def reject(self, request_id: str, note: Optional[str] = None) -> AccessRequest:
        request = self._require_pending(request_id)
        async with self.locks.hold(request.user_id):
            decided = self.backend.decide_request(
                request_id, REQUEST_REJECTED, now=self._now(), note=note
            )
        if not decided:
            raise ConflictError("request not pending", detail={"request_id": request_id})
        logger.info("access_request_rejected", request_id=request_id, user_id=request.user_id)
        return decided
