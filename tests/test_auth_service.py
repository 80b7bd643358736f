import asyncio
from datetime import timedelta

import pytest
from structlog.testing import capture_logs

from tokengate.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)


async def _approved(auth_service, email="holder@example.com", scopes=("genkit",)):
    request = auth_service.submit(email, list(scopes))
    return await auth_service.approve(request.id)


class TestAuthenticate:
    async def test_valid_assertion_resolves_identity(self, auth_service, memory_store, clock):
        result = await _approved(auth_service)

        identity = auth_service.authenticate(f"Bearer {result.access_token}")

        assert identity.user_id == result.grant.user_id
        assert identity.jti == result.grant.jti
        assert identity.credential == "assertion"
        assert identity.is_admin is False
        assert memory_store.get_grant(result.grant.id).last_used_at == clock.now

    @pytest.mark.parametrize(
        "header", [None, "", "Bearer", "Bearer   ", "Basic abc", "Token abc", "Bearer not.a.jwt"]
    )
    def test_missing_or_malformed_header_fails_uniformly(self, auth_service, header):
        with pytest.raises(AuthenticationError) as excinfo:
            auth_service.authenticate(header)

        assert excinfo.value.message == "invalid credentials"

    @pytest.mark.parametrize("signature", ["éé", "\udcff\udcfe"])
    async def test_non_ascii_signature_fails_uniformly(self, auth_service, signature):
        result = await _approved(auth_service)
        header_b64, payload_b64, _ = result.access_token.split(".")

        with pytest.raises(AuthenticationError) as excinfo:
            auth_service.authenticate(f"Bearer {header_b64}.{payload_b64}.{signature}")

        assert excinfo.value.message == "invalid credentials"

    @pytest.mark.parametrize("token", ["\udcff", "tgs_ünïcode"])
    async def test_unencodable_static_candidate_fails_uniformly(self, auth_service, token):
        result = await _approved(auth_service)
        auth_service.issue_static_token(result.grant.id)

        with pytest.raises(AuthenticationError) as excinfo:
            auth_service.authenticate(f"Bearer {token}")

        assert excinfo.value.message == "invalid credentials"

    async def test_revocation_applies_immediately(self, auth_service):
        result = await _approved(auth_service)
        auth_service.authenticate(f"Bearer {result.access_token}")

        auth_service.revoke(result.grant.id)

        with pytest.raises(AuthenticationError) as excinfo:
            auth_service.authenticate(f"Bearer {result.access_token}")
        assert excinfo.value.message == "invalid credentials"

    async def test_expired_assertion_rejected(self, auth_service, clock):
        result = await _approved(auth_service)

        clock.advance(minutes=15)

        with pytest.raises(AuthenticationError):
            auth_service.authenticate(f"Bearer {result.access_token}")

    async def test_expired_grant_rejects_fresh_assertion(self, auth_service, clock):
        result = await _approved(auth_service)
        ttl = timedelta(minutes=5)
        clock.now = result.grant.expires_at - timedelta(minutes=1)
        token = auth_service.codec.sign(
            result.grant.user_id, result.grant.jti, result.grant.scopes, ttl
        )

        auth_service.authenticate(f"Bearer {token}")
        clock.advance(minutes=1)

        with pytest.raises(AuthenticationError):
            auth_service.authenticate(f"Bearer {token}")

    async def test_subject_must_own_grant(self, auth_service):
        mine = await _approved(auth_service, "mine@example.com")
        theirs = await _approved(auth_service, "theirs@example.com")
        forged = auth_service.codec.sign(
            mine.grant.user_id, theirs.grant.jti, ["*"], timedelta(minutes=5)
        )

        with pytest.raises(AuthenticationError):
            auth_service.authenticate(f"Bearer {forged}")

    async def test_scopes_come_from_grant_not_assertion(self, auth_service):
        result = await _approved(auth_service, scopes=("genkit",))
        widened = auth_service.codec.sign(
            result.grant.user_id, result.grant.jti, ["*"], timedelta(minutes=5)
        )

        identity = auth_service.authenticate(f"Bearer {widened}")

        assert identity.scopes == ["genkit"]

    async def test_admin_flag_and_admin_key(self, auth_service, memory_store):
        result = await _approved(auth_service)
        bearer = f"Bearer {result.access_token}"

        assert auth_service.authenticate(bearer).is_admin is False
        assert auth_service.authenticate(bearer, admin_key="wrong").is_admin is False
        assert auth_service.authenticate(bearer, admin_key="admin-key-for-tests").is_admin is True

        memory_store.set_user_admin(result.grant.user_id, True)
        assert auth_service.authenticate(bearer).is_admin is True


class TestAuthorize:
    async def test_exact_scope_and_wildcard(self, auth_service):
        narrow = await _approved(auth_service, "narrow@example.com", ("genkit",))
        wide = await _approved(auth_service, "wide@example.com", ("*",))
        narrow_id = auth_service.authenticate(f"Bearer {narrow.access_token}")
        wide_id = auth_service.authenticate(f"Bearer {wide.access_token}")

        auth_service.authorize(narrow_id, "genkit")
        auth_service.authorize(wide_id, "media")
        with pytest.raises(ForbiddenError):
            auth_service.authorize(narrow_id, "media")

    async def test_require_admin(self, auth_service):
        result = await _approved(auth_service)
        identity = auth_service.authenticate(f"Bearer {result.access_token}")

        with pytest.raises(ForbiddenError):
            auth_service.require_admin(identity)

        elevated = auth_service.authenticate(
            f"Bearer {result.access_token}", admin_key="admin-key-for-tests"
        )
        auth_service.require_admin(elevated)


class TestRotate:
    async def test_rotation_is_single_use(self, auth_service):
        result = await _approved(auth_service)

        pair = await auth_service.rotate(result.refresh_token)

        assert pair.refresh_token != result.refresh_token
        identity = auth_service.authenticate(f"Bearer {pair.access_token}")
        assert identity.grant_id == result.grant.id
        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.rotate(result.refresh_token)
        assert excinfo.value.message == "invalid credentials"

    async def test_concurrent_redemption_single_winner(self, auth_service):
        result = await _approved(auth_service)

        outcomes = await asyncio.gather(
            auth_service.rotate(result.refresh_token),
            auth_service.rotate(result.refresh_token),
            return_exceptions=True,
        )

        winners = [o for o in outcomes if not isinstance(o, Exception)]
        losers = [o for o in outcomes if isinstance(o, AuthenticationError)]
        assert len(winners) == 1
        assert len(losers) == 1

    async def test_rotation_fails_after_revocation(self, auth_service):
        result = await _approved(auth_service)
        auth_service.revoke(result.grant.id)

        with pytest.raises(AuthenticationError):
            await auth_service.rotate(result.refresh_token)

    async def test_unknown_refresh_secret(self, auth_service):
        with pytest.raises(AuthenticationError):
            await auth_service.rotate("made-up")

    @pytest.mark.parametrize("refresh_token", ["\udcff", "sécret"])
    async def test_unencodable_refresh_secret_fails_uniformly(self, auth_service, refresh_token):
        await _approved(auth_service)

        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.rotate(refresh_token)

        assert excinfo.value.message == "invalid credentials"

    async def test_access_expiry_matches_signed_claim(self, auth_service):
        result = await _approved(auth_service)

        pair = await auth_service.rotate(result.refresh_token)
        claims = auth_service.codec.verify(pair.access_token)

        assert claims.expires_at == pair.access_expires_at


class TestRevokeAndIntrospection:
    def test_revoke_unknown_grant(self, auth_service):
        with pytest.raises(NotFoundError):
            auth_service.revoke("missing")

    async def test_revoke_is_idempotent(self, auth_service):
        result = await _approved(auth_service)

        first = auth_service.revoke(result.grant.id)
        second = auth_service.revoke(result.grant.id)

        assert first.revoked_at == second.revoked_at
        assert second.active is False

    async def test_describe_token(self, auth_service):
        result = await _approved(auth_service, "describe@example.com", ("genkit", "media"))

        details = auth_service.describe_token(f"Bearer {result.access_token}")

        assert details.grant.id == result.grant.id
        assert details.grant.scopes == ["genkit", "media"]
        assert details.user.email == "describe@example.com"


class TestStaticTokens:
    async def test_static_token_authenticates_against_grant(self, auth_service):
        result = await _approved(auth_service, scopes=("media",))

        token = auth_service.issue_static_token(result.grant.id)
        identity = auth_service.authenticate(f"Bearer {token}")

        assert identity.credential == "static"
        assert identity.grant_id == result.grant.id
        assert identity.scopes == ["media"]

    async def test_reissue_replaces_previous_static_token(self, auth_service):
        result = await _approved(auth_service)
        old = auth_service.issue_static_token(result.grant.id)
        new = auth_service.issue_static_token(result.grant.id)

        auth_service.authenticate(f"Bearer {new}")
        with pytest.raises(AuthenticationError):
            auth_service.authenticate(f"Bearer {old}")

    async def test_static_token_dies_with_grant(self, auth_service):
        result = await _approved(auth_service)
        token = auth_service.issue_static_token(result.grant.id)

        auth_service.revoke(result.grant.id)

        with pytest.raises(AuthenticationError):
            auth_service.authenticate(f"Bearer {token}")
        with pytest.raises(ConflictError):
            auth_service.issue_static_token(result.grant.id)


class TestSecretHygiene:
    async def test_plaintexts_stay_out_of_state_file_and_logs(self, auth_service, memory_store):
        with capture_logs() as entries:
            result = await _approved(auth_service)
            pair = await auth_service.rotate(result.refresh_token)
            static = auth_service.issue_static_token(result.grant.id)

        state = (memory_store.fs_root / "state" / "token_store.json").read_text()
        logged = repr(entries)
        assert {"access_request_approved", "refresh_rotated", "static_token_issued"} <= {
            entry["event"] for entry in entries
        }
        for plaintext in (result.refresh_token, pair.refresh_token, static):
            assert plaintext not in state
            assert plaintext not in logged
        for assertion in (result.access_token, pair.access_token):
            assert assertion not in logged
