from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tokengate.config import Settings
from tokengate.logging import get_logger

logger = get_logger(__name__)

_ALGORITHM = "HS256"
_TOKEN_TYPE = "access"
_LOOKUP_CONTEXT = b"tokengate:refresh-lookup:v1"


@dataclass(frozen=True)
class AssertionClaims:
    user_id: str
    jti: str
    scopes: List[str]
    issued_at: datetime
    expires_at: datetime
    kid: str


class CredentialCodec:
    """Signs access assertions and derives, hashes and matches refresh secrets.

    Holds no state beyond the keyring and hasher built from settings. Every
    verification failure returns ``None`` so callers cannot distinguish a
    bad signature from an expired or malformed assertion.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not settings.jwt_secret:
            raise ValueError("signing secret is not configured")
        self.settings = settings
        self.active_kid = settings.jwt_key_id
        self._keys: Dict[str, bytes] = {
            kid: secret.encode() for kid, secret in settings.signing_keys.items()
        }
        self._skew = timedelta(seconds=settings.clock_skew_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._hasher = PasswordHasher(
            time_cost=settings.refresh_hash_time_cost,
            memory_cost=settings.refresh_hash_memory_kib,
            parallelism=settings.refresh_hash_parallelism,
            type=Type.ID,
        )
        # one derived tag key per signing key so rotated keys keep finding old secrets
        self._tag_keys: Dict[str, bytes] = {
            kid: hmac.new(key, _LOOKUP_CONTEXT, hashlib.sha256).digest()
            for kid, key in self._keys.items()
        }

    # assertion encoding
    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, key: bytes, signing_input: str) -> str:
        digest = hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def sign(
        self,
        user_id: str,
        grant_jti: str,
        scopes: List[str],
        ttl: timedelta,
        *,
        now: Optional[datetime] = None,
    ) -> str:
        issued = now or self._clock()
        header = {"alg": _ALGORITHM, "typ": "JWT", "kid": self.active_kid}
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "jti": grant_jti,
            "scopes": list(scopes),
            "token_type": _TOKEN_TYPE,
            "iat": int(issued.timestamp()),
            "exp": int((issued + ttl).timestamp()),
        }
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self._signature(self._keys[self.active_kid], signing_input)
        return f"{signing_input}.{signature}"

    def verify(
        self, assertion: str, *, now: Optional[datetime] = None
    ) -> Optional[AssertionClaims]:
        # well-formed assertions are base64url segments only
        if not isinstance(assertion, str) or not assertion.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = assertion.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.debug("assertion_header_decode_failed")
            return None
        if not isinstance(header, dict):
            return None
        if header.get("alg") != _ALGORITHM:
            logger.warning("assertion_invalid_algorithm", alg=header.get("alg"))
            return None
        kid = header.get("kid")
        key = self._keys.get(kid) if isinstance(kid, str) else None
        if key is None:
            logger.debug("assertion_unknown_kid", kid=kid)
            return None

        expected_sig = self._signature(key, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.warning("assertion_payload_decode_failed")
            return None
        if not isinstance(payload, dict):
            return None
        return self._claims_from_payload(payload, kid, now or self._clock())

    def _claims_from_payload(
        self, payload: Dict[str, Any], kid: str, now: datetime
    ) -> Optional[AssertionClaims]:
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or payload.get("token_type") != _TOKEN_TYPE:
            return None

        sub, jti, scopes = payload.get("sub"), payload.get("jti"), payload.get("scopes")
        if not isinstance(sub, str) or not sub or not isinstance(jti, str) or not jti:
            return None
        if not isinstance(scopes, list) or not all(isinstance(s, str) for s in scopes):
            return None
        try:
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            return None
        if now >= expires_at + self._skew:
            return None
        return AssertionClaims(
            user_id=sub,
            jti=jti,
            scopes=list(scopes),
            issued_at=issued_at,
            expires_at=expires_at,
            kid=kid,
        )

    # refresh secrets
    @staticmethod
    def new_refresh_secret() -> str:
        return secrets.token_urlsafe(48)

    def hash_secret(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def matches(self, plaintext: str, digest: str) -> bool:
        try:
            return self._hasher.verify(digest, plaintext)
        except (VerifyMismatchError, VerificationError, InvalidHash, UnicodeError):
            return False

    def lookup_tag(self, plaintext: str) -> str:
        """Deterministic index handle for a secret under the active key."""
        return self._tag(self._tag_keys[self.active_kid], plaintext)

    def lookup_tags(self, plaintext: str) -> List[str]:
        """Tags under every configured key, active key first."""
        tags = [self.lookup_tag(plaintext)]
        for kid, key in self._tag_keys.items():
            if kid != self.active_kid:
                tags.append(self._tag(key, plaintext))
        return tags

    @staticmethod
    def _tag(key: bytes, plaintext: str) -> str:
        return hmac.new(
            key, plaintext.encode("utf-8", "surrogatepass"), hashlib.sha256
        ).hexdigest()
