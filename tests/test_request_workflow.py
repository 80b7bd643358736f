"""Approval workflow tests.

Covers submit/list/approve/reject, the exactly-once state transition,
the single-active-grant rule under concurrent approvals and the
repeat-approval scenario (a later approval re-issues the refresh secret
and invalidates the earlier one).
"""

import asyncio

import pytest

from tokengate.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from tokengate.storage.models import REQUEST_APPROVED, REQUEST_PENDING, REQUEST_REJECTED


def _active_grants(memory_store, user_id):
    return [g for g in memory_store.list_grants_for_user(user_id) if g.active]


class TestSubmitAndList:
    def test_submit_creates_pending_request_with_deduped_scopes(self, auth_service):
        request = auth_service.submit("A@X.com", ["genkit", "media", "genkit"])

        assert request.status == REQUEST_PENDING
        assert request.scopes == ["genkit", "media"]
        user = auth_service.store.get_user(request.user_id)
        assert user.email == "a@x.com"

    def test_submit_reuses_existing_user(self, auth_service):
        first = auth_service.submit("a@x.com", ["genkit"])
        second = auth_service.submit("a@x.com", ["media"])

        assert first.user_id == second.user_id
        assert first.id != second.id

    @pytest.mark.parametrize("email", ["", "no-at-sign", "a@b", "two words@x.com"])
    def test_submit_rejects_bad_email(self, auth_service, email):
        with pytest.raises(ValidationError):
            auth_service.submit(email, ["genkit"])

    def test_submit_rejects_empty_scopes_without_creating_user(self, auth_service):
        with pytest.raises(ValidationError):
            auth_service.submit("new@x.com", [])

        assert auth_service.store.get_user_by_email("new@x.com") is None

    def test_list_requests_pages_newest_first(self, auth_service, clock):
        ids = []
        for i in range(3):
            ids.append(auth_service.submit("a@x.com", [f"s{i}"]).id)
            clock.advance(seconds=1)

        page = auth_service.list_requests(limit=2)
        cursor = auth_service.workflow.next_cursor(page)
        rest = auth_service.list_requests(limit=2, cursor=cursor)

        assert [r.id for r in page] == [ids[2], ids[1]]
        assert [r.id for r in rest] == [ids[0]]
        assert auth_service.workflow.next_cursor([]) is None

    def test_list_requests_rejects_unknown_status_and_bad_cursor(self, auth_service):
        with pytest.raises(ValidationError):
            auth_service.list_requests("archived")
        with pytest.raises(ValidationError):
            auth_service.list_requests(cursor="garbage")
        with pytest.raises(ValidationError):
            auth_service.list_requests(limit=0)


class TestDecisions:
    async def test_approve_issues_grant_matching_request_scopes(self, auth_service):
        request = auth_service.submit("a@x.com", ["genkit", "media", "genkit"])

        result = await auth_service.approve(request.id, note="welcome")

        assert result.request.status == REQUEST_APPROVED
        assert result.request.grant_id == result.grant.id
        assert result.request.admin_note == "welcome"
        assert result.grant.scopes == ["genkit", "media"]
        identity = auth_service.authenticate(f"Bearer {result.access_token}")
        assert identity.scopes == ["genkit", "media"]
        assert identity.grant_id == result.grant.id

    async def test_approve_missing_request_is_not_found(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.approve("missing")

    async def test_second_decision_conflicts_and_keeps_first_state(self, auth_service):
        request = auth_service.submit("a@x.com", ["genkit"])
        await auth_service.approve(request.id)

        with pytest.raises(ConflictError):
            await auth_service.approve(request.id)
        with pytest.raises(ConflictError):
            await auth_service.reject(request.id)

        assert auth_service.get_request(request.id).status == REQUEST_APPROVED

    async def test_reject_then_approve_conflicts(self, auth_service, memory_store):
        request = auth_service.submit("a@x.com", ["genkit"])

        rejected = await auth_service.reject(request.id, note="no")
        with pytest.raises(ConflictError):
            await auth_service.approve(request.id)

        assert rejected.status == REQUEST_REJECTED
        assert auth_service.get_request(request.id).status == REQUEST_REJECTED
        assert _active_grants(memory_store, request.user_id) == []

    async def test_concurrent_approvals_of_same_request(self, auth_service, memory_store):
        request = auth_service.submit("a@x.com", ["genkit"])

        results = await asyncio.gather(
            auth_service.approve(request.id),
            auth_service.approve(request.id),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(successes) == 1
        assert len(conflicts) == 1
        assert len(_active_grants(memory_store, request.user_id)) == 1

    async def test_concurrent_approvals_for_one_user_keep_single_grant(
        self, auth_service, memory_store
    ):
        requests = [auth_service.submit("a@x.com", [f"scope-{i}"]) for i in range(4)]

        results = await asyncio.gather(*(auth_service.approve(r.id) for r in requests))

        grants = _active_grants(memory_store, requests[0].user_id)
        assert len(grants) == 1
        assert {r.grant.id for r in results} == {grants[0].id}
        live_secrets = [
            s for s in memory_store.list_refresh_secrets_for_grant(grants[0].id)
            if s.revoked_at is None
        ]
        assert len(live_secrets) == 1


class TestRepeatApprovalScenario:
    async def test_second_approval_updates_grant_and_supersedes_refresh(self, auth_service, memory_store):
        r1 = auth_service.submit("a@x.com", ["genkit"])
        first = await auth_service.approve(r1.id)
        assert first.grant.scopes == ["genkit"]

        r2 = auth_service.submit("a@x.com", ["genkit", "media"])
        assert r2.status == REQUEST_PENDING
        second = await auth_service.approve(r2.id)

        assert second.grant.id == first.grant.id
        assert second.grant.jti == first.grant.jti
        assert second.grant.scopes == ["genkit", "media"]
        assert len(_active_grants(memory_store, r1.user_id)) == 1

        # the earlier assertion still names the same grant and sees the new scopes
        identity = auth_service.authenticate(f"Bearer {first.access_token}")
        assert identity.scopes == ["genkit", "media"]

        with pytest.raises(AuthenticationError):
            await auth_service.rotate(first.refresh_token)
        rotated = await auth_service.rotate(second.refresh_token)
        assert rotated.refresh_token != second.refresh_token
