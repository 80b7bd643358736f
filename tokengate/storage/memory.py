from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from tokengate.logging import get_logger
from tokengate.storage.cursors import decode_time_id_cursor, is_before_cursor
from tokengate.storage.errors import (
    ConstraintViolation,
    GRANT_REFERENCE,
    UNIQUE_EMAIL,
    USER_REFERENCE,
)
from tokengate.storage.models import (
    REQUEST_PENDING,
    AccessGrant,
    AccessRequest,
    RefreshSecret,
    User,
    new_id,
)


class MemoryStore:
    """In-memory backing store persisted to a JSON state file.

    Every grant ever issued stays in ``grants`` (indexed by id); the single
    active grant of each user is tracked by ``_active_grant_by_user``.
    Callers get copies, never the stored objects, so conditional updates
    only happen under ``_data_lock``.
    """

    def __init__(self, fs_root: str = "/tmp/tokengate") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.grants: Dict[str, AccessGrant] = {}
        self.refresh_secrets: Dict[str, RefreshSecret] = {}
        self.requests: Dict[str, AccessRequest] = {}
        self._active_grant_by_user: Dict[str, str] = {}
        self._grant_by_jti: Dict[str, str] = {}
        self._grant_by_static_tag: Dict[str, str] = {}
        self._refresh_by_tag: Dict[str, str] = {}
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "token_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def create_user(self, email: str, *, is_admin: bool = False) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, constraint=UNIQUE_EMAIL
                )
            user = User(id=new_id(), email=email, is_admin=is_admin)
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def set_user_admin(self, user_id: str, is_admin: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_admin = is_admin
            self._persist_state()
            return replace(user)

    # grants
    def get_grant(self, grant_id: str) -> Optional[AccessGrant]:
        with self._data_lock:
            return self._copy_grant(self.grants.get(grant_id))

    def get_grant_by_jti(self, jti: str) -> Optional[AccessGrant]:
        with self._data_lock:
            grant_id = self._grant_by_jti.get(jti)
            return self._copy_grant(self.grants.get(grant_id)) if grant_id else None

    def get_grant_by_static_tag(self, tag: str) -> Optional[AccessGrant]:
        with self._data_lock:
            grant_id = self._grant_by_static_tag.get(tag)
            return self._copy_grant(self.grants.get(grant_id)) if grant_id else None

    def get_active_grant_for_user(self, user_id: str) -> Optional[AccessGrant]:
        with self._data_lock:
            grant_id = self._active_grant_by_user.get(user_id)
            return self._copy_grant(self.grants.get(grant_id)) if grant_id else None

    def list_grants_for_user(self, user_id: str) -> List[AccessGrant]:
        with self._data_lock:
            grants = [g for g in self.grants.values() if g.user_id == user_id]
            return [
                self._copy_grant(g)
                for g in sorted(grants, key=lambda g: g.created_at, reverse=True)
            ]

    def upsert_active_grant(
        self, user_id: str, scopes: List[str], expires_at: datetime, *, now: datetime
    ) -> tuple[AccessGrant, bool]:
        """Update the user's active grant in place or create one.

        Returns the grant and whether it was newly created.
        """
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "grant user missing", {"user_id": user_id}, constraint=USER_REFERENCE
                )
            grant_id = self._active_grant_by_user.get(user_id)
            grant = self.grants.get(grant_id) if grant_id else None
            created = grant is None
            if grant is not None:
                grant.scopes = list(scopes)
                grant.expires_at = expires_at
                grant.revoked_at = None
                grant.active = True
            else:
                grant = AccessGrant.new(user_id, scopes, expires_at, now=now)
                self.grants[grant.id] = grant
                self._grant_by_jti[grant.jti] = grant.id
                self._active_grant_by_user[user_id] = grant.id
            self._persist_state()
            return self._copy_grant(grant), created

    def revoke_grant(self, grant_id: str, *, now: datetime) -> Optional[AccessGrant]:
        """Deactivate a grant and revoke its live refresh secrets.

        Revoking an already-revoked grant keeps the original timestamp.
        """
        with self._data_lock:
            grant = self.grants.get(grant_id)
            if not grant:
                return None
            changed = False
            if grant.active or grant.revoked_at is None:
                grant.active = False
                grant.revoked_at = grant.revoked_at or now
                changed = True
            if self._active_grant_by_user.get(grant.user_id) == grant.id:
                self._active_grant_by_user.pop(grant.user_id, None)
            for secret in self.refresh_secrets.values():
                if secret.grant_id == grant.id and secret.revoked_at is None:
                    secret.revoked_at = now
                    changed = True
            if changed:
                self._persist_state()
            return self._copy_grant(grant)

    def touch_grant(self, grant_id: str, *, now: datetime) -> None:
        with self._data_lock:
            grant = self.grants.get(grant_id)
            if not grant:
                return
            grant.last_used_at = now
            # last_used_at is advisory; skip the disk write on every request

    def set_static_token_tag(self, grant_id: str, tag: str) -> Optional[AccessGrant]:
        with self._data_lock:
            grant = self.grants.get(grant_id)
            if not grant:
                return None
            owner = self._grant_by_static_tag.get(tag)
            if owner and owner != grant_id:
                raise ConstraintViolation("static token tag collision", {"grant_id": grant_id})
            if grant.static_token_tag:
                self._grant_by_static_tag.pop(grant.static_token_tag, None)
            grant.static_token_tag = tag
            self._grant_by_static_tag[tag] = grant.id
            self._persist_state()
            return self._copy_grant(grant)

    def expire_grants(self, *, now: datetime) -> int:
        """Deactivate active grants whose expiry has passed."""
        with self._data_lock:
            expired = [
                g for g in self.grants.values() if g.active and g.expires_at <= now
            ]
            for grant in expired:
                grant.active = False
                if self._active_grant_by_user.get(grant.user_id) == grant.id:
                    self._active_grant_by_user.pop(grant.user_id, None)
            if expired:
                self._persist_state()
            return len(expired)

    # refresh secrets
    def create_refresh_secret(
        self,
        grant_id: str,
        user_id: str,
        secret_hash: str,
        lookup_tag: str,
        expires_at: datetime,
        *,
        now: datetime,
    ) -> RefreshSecret:
        """Store a new secret and revoke every other live secret of the grant."""
        with self._data_lock:
            if grant_id not in self.grants:
                raise ConstraintViolation(
                    "refresh secret grant missing",
                    {"grant_id": grant_id},
                    constraint=GRANT_REFERENCE,
                )
            if lookup_tag in self._refresh_by_tag:
                raise ConstraintViolation("refresh lookup tag collision", {"grant_id": grant_id})
            for existing in self.refresh_secrets.values():
                if existing.grant_id == grant_id and existing.revoked_at is None:
                    existing.revoked_at = now
            secret = RefreshSecret(
                id=new_id(),
                user_id=user_id,
                grant_id=grant_id,
                secret_hash=secret_hash,
                lookup_tag=lookup_tag,
                expires_at=expires_at,
                created_at=now,
            )
            self.refresh_secrets[secret.id] = secret
            self._refresh_by_tag[lookup_tag] = secret.id
            self._persist_state()
            return replace(secret)

    def get_refresh_secret_by_tag(self, lookup_tag: str) -> Optional[RefreshSecret]:
        with self._data_lock:
            secret_id = self._refresh_by_tag.get(lookup_tag)
            secret = self.refresh_secrets.get(secret_id) if secret_id else None
            return replace(secret) if secret else None

    def list_refresh_secrets_for_grant(self, grant_id: str) -> List[RefreshSecret]:
        with self._data_lock:
            secrets = [s for s in self.refresh_secrets.values() if s.grant_id == grant_id]
            return [replace(s) for s in sorted(secrets, key=lambda s: s.created_at)]

    def revoke_refresh_secret_if_live(self, secret_id: str, *, now: datetime) -> bool:
        """Compare-and-set ``revoked_at``; True only for the caller that flipped it."""
        with self._data_lock:
            secret = self.refresh_secrets.get(secret_id)
            if not secret or not secret.is_live(now):
                return False
            secret.revoked_at = now
            self._persist_state()
            return True

    def purge_refresh_secrets(self, *, expired_before: datetime) -> int:
        with self._data_lock:
            stale = [
                s for s in self.refresh_secrets.values() if s.expires_at < expired_before
            ]
            for secret in stale:
                self.refresh_secrets.pop(secret.id, None)
                self._refresh_by_tag.pop(secret.lookup_tag, None)
            if stale:
                self._persist_state()
            return len(stale)

    # access requests
    def create_request(
        self, user_id: str, scopes: List[str], *, now: datetime
    ) -> AccessRequest:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "request user missing", {"user_id": user_id}, constraint=USER_REFERENCE
                )
            request = AccessRequest(
                id=new_id(),
                user_id=user_id,
                scopes=list(scopes),
                created_at=now,
                updated_at=now,
            )
            self.requests[request.id] = request
            self._persist_state()
            return self._copy_request(request)

    def get_request(self, request_id: str) -> Optional[AccessRequest]:
        with self._data_lock:
            return self._copy_request(self.requests.get(request_id))

    def list_requests(
        self,
        status: Optional[str] = None,
        *,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> List[AccessRequest]:
        position = decode_time_id_cursor(cursor) if cursor else None
        with self._data_lock:
            results = [
                r for r in self.requests.values() if not status or r.status == status
            ]
            if position:
                results = [
                    r for r in results if is_before_cursor(r.created_at, r.id, position)
                ]
            results.sort(key=lambda r: (r.created_at, r.id), reverse=True)
            return [self._copy_request(r) for r in results[:limit]]

    def decide_request(
        self,
        request_id: str,
        status: str,
        *,
        now: datetime,
        note: Optional[str] = None,
        grant_id: Optional[str] = None,
    ) -> Optional[AccessRequest]:
        """Move a pending request to ``status``; None if it is gone or decided."""
        with self._data_lock:
            request = self.requests.get(request_id)
            if not request or request.status != REQUEST_PENDING:
                return None
            request.status = status
            request.admin_note = note
            request.grant_id = grant_id
            request.updated_at = now
            self._persist_state()
            return self._copy_request(request)

    # helpers
    @staticmethod
    def _copy_grant(grant: Optional[AccessGrant]) -> Optional[AccessGrant]:
        if grant is None:
            return None
        return replace(grant, scopes=list(grant.scopes))

    @staticmethod
    def _copy_request(request: Optional[AccessRequest]) -> Optional[AccessRequest]:
        if request is None:
            return None
        return replace(request, scopes=list(request.scopes))

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "grants": [self._serialize_grant(g) for g in self.grants.values()],
            "refresh_secrets": [
                self._serialize_refresh_secret(s) for s in self.refresh_secrets.values()
            ],
            "requests": [self._serialize_request(r) for r in self.requests.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # try/except instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.grants = {
            g["id"]: self._deserialize_grant(g) for g in data.get("grants", [])
        }
        self.refresh_secrets = {
            s["id"]: self._deserialize_refresh_secret(s)
            for s in data.get("refresh_secrets", [])
        }
        self.requests = {
            r["id"]: self._deserialize_request(r) for r in data.get("requests", [])
        }
        self._rebuild_indexes()
        return True

    def _rebuild_indexes(self) -> None:
        self._grant_by_jti = {g.jti: g.id for g in self.grants.values()}
        self._grant_by_static_tag = {
            g.static_token_tag: g.id for g in self.grants.values() if g.static_token_tag
        }
        self._active_grant_by_user = {}
        for grant in sorted(self.grants.values(), key=lambda g: g.created_at):
            if grant.active:
                self._active_grant_by_user[grant.user_id] = grant.id
        self._refresh_by_tag = {s.lookup_tag: s.id for s in self.refresh_secrets.values()}

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "is_admin": user.is_admin,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            is_admin=bool(data.get("is_admin", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_grant(self, grant: AccessGrant) -> dict:
        return {
            "id": grant.id,
            "user_id": grant.user_id,
            "jti": grant.jti,
            "scopes": list(grant.scopes),
            "active": grant.active,
            "created_at": self._serialize_datetime(grant.created_at),
            "expires_at": self._serialize_datetime(grant.expires_at),
            "revoked_at": self._serialize_datetime(grant.revoked_at),
            "last_used_at": self._serialize_datetime(grant.last_used_at),
            "static_token_tag": grant.static_token_tag,
        }

    def _deserialize_grant(self, data: dict) -> AccessGrant:
        return AccessGrant(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            jti=data["jti"],
            scopes=list(data.get("scopes") or []),
            active=bool(data.get("active", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            static_token_tag=data.get("static_token_tag"),
        )

    def _serialize_refresh_secret(self, secret: RefreshSecret) -> dict:
        return {
            "id": secret.id,
            "user_id": secret.user_id,
            "grant_id": secret.grant_id,
            "secret_hash": secret.secret_hash,
            "lookup_tag": secret.lookup_tag,
            "created_at": self._serialize_datetime(secret.created_at),
            "expires_at": self._serialize_datetime(secret.expires_at),
            "revoked_at": self._serialize_datetime(secret.revoked_at),
        }

    def _deserialize_refresh_secret(self, data: dict) -> RefreshSecret:
        return RefreshSecret(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            grant_id=str(data["grant_id"]),
            secret_hash=data["secret_hash"],
            lookup_tag=data["lookup_tag"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )

    def _serialize_request(self, request: AccessRequest) -> dict:
        return {
            "id": request.id,
            "user_id": request.user_id,
            "scopes": list(request.scopes),
            "status": request.status,
            "admin_note": request.admin_note,
            "grant_id": request.grant_id,
            "created_at": self._serialize_datetime(request.created_at),
            "updated_at": self._serialize_datetime(request.updated_at),
        }

    def _deserialize_request(self, data: dict) -> AccessRequest:
        return AccessRequest(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            scopes=list(data.get("scopes") or []),
            status=data.get("status", REQUEST_PENDING),
            admin_note=data.get("admin_note"),
            grant_id=data.get("grant_id"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )
