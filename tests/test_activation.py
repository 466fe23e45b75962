"""Tests for the activation orchestrator."""

import pytest

from core.errors import AuthenticationError, GraphApiError
from core.models import BatchFetchResult, PolicyDescriptor, RoleStatus, RoleType
from modules.pim.activation import (
    ActivationInput,
    ActivationOrchestrator,
    fncAggregateRequirements,
    fncPartitionByContext,
)
from modules.pim.role_cache import RetryPolicy
from fakes import CancelInput, FakeInput, FakeTokenManager, make_role


def _ctx(context_id, **kw):
    return PolicyDescriptor(requires_authentication_context=True, authentication_context_id=context_id, **kw)


class SpyRoleCache:
    """Records invalidations; returns whatever is scripted as the refreshed list."""

    def __init__(self, result=None):
        self.invalidations = 0
        self.fetches = 0
        self.result = result or BatchFetchResult()

    def invalidate(self):
        self.invalidations += 1

    def get_or_fetch(self, user_id, flags=None, progress=None):
        self.fetches += 1
        return self.result


def _orchestrator(api, tokens, provider, cache=None, sleep=None, clock=None):
    kwargs = {}
    if clock:
        kwargs["clock"] = clock
    return ActivationOrchestrator(api, tokens, provider, role_cache=cache,
                                  retry_policy=RetryPolicy(2, 0.0, 1.0),
                                  sleep=sleep or (lambda s: None), **kwargs)


class TestRequirements:
    """Union of policy demands across the selection."""

    def test_aggregate(self):
        roles = [
            make_role("r1", policy=PolicyDescriptor(max_duration_hours=4, requires_justification=True)),
            make_role("r2", policy=_ctx("c1", requires_ticket=True, max_duration_hours=2)),
            make_role("r3", policy=_ctx("c1")),
            make_role("r4"),
        ]
        req = fncAggregateRequirements(roles)
        assert req.requires_justification and req.requires_ticket
        assert req.requires_authentication_context
        assert req.authentication_context_ids == ["c1"]
        assert req.max_duration_hours == 2

    def test_partition_puts_contextless_first(self):
        roles = [make_role("r1", policy=_ctx("c2")), make_role("r2"), make_role("r3", policy=_ctx("c2"))]
        buckets = fncPartitionByContext(roles)
        assert list(buckets) == [None, "c2"]
        assert [r.id for r in buckets["c2"]] == ["r1", "r3"]


class TestActivate:
    """End-to-end batches against a fake provider."""

    def test_cancel_has_no_side_effects(self, api, tokens):
        cache = SpyRoleCache()
        result = _orchestrator(api, tokens, CancelInput(), cache).activate("user-1", [make_role("r1", policy=_ctx("c1"))])
        assert result.cancelled
        assert api.submitted == []
        assert tokens.prompts == {}
        assert cache.invalidations == 0 and cache.fetches == 0

    def test_one_prompt_per_context(self, api, tokens):
        roles = [make_role(f"r{i}", policy=_ctx("c1")) for i in range(3)] + [make_role("r9", policy=_ctx("c2"))]
        result = _orchestrator(api, tokens, FakeInput()).activate("user-1", roles)
        assert result.success_count == 4
        assert tokens.prompts == {"c1": 1, "c2": 1}
        assert [s["token"] for s in api.submitted[:3]] == ["tok-c1-1"] * 3
        assert api.submitted[3]["token"] == "tok-c2-1"

    def test_contextless_roles_use_ambient_token(self, api, tokens):
        result = _orchestrator(api, tokens, FakeInput()).activate("user-1", [make_role("r1"), make_role("r2")])
        assert result.success_count == 2
        assert all(s["token"] is None for s in api.submitted)
        assert tokens.prompts == {}

    def test_duration_clamped_per_role(self, api, tokens, clock):
        roles = [
            make_role("r1", policy=PolicyDescriptor(max_duration_hours=2)),
            make_role("r2", policy=PolicyDescriptor(max_duration_hours=8)),
        ]
        _orchestrator(api, tokens, FakeInput(), clock=clock).activate("user-1", roles, hours=4, minutes=30)
        durations = [s["payload"]["scheduleInfo"]["expiration"]["duration"] for s in api.submitted]
        assert durations == ["PT2H0M", "PT4H30M"]

    def test_default_duration_used(self, api, tokens):
        _orchestrator(api, tokens, FakeInput()).activate("user-1", [make_role("r1")])
        assert api.submitted[0]["payload"]["scheduleInfo"]["expiration"]["duration"] == "PT8H0M"

    def test_one_failure_does_not_stop_siblings(self, api, tokens):
        api.submit_errors = [None, GraphApiError(400, "RoleAssignmentExists", "dup"), None]
        roles = [make_role("r1"), make_role("r2", name="Exchange Administrator"), make_role("r3")]
        result = _orchestrator(api, tokens, FakeInput()).activate("user-1", roles)
        assert result.success_count == 2
        assert result.total_count == 3
        assert result.errors == ["Exchange Administrator: This role is already active or a request is already pending."]

    def test_bucket_token_failure_falls_back_per_role(self, api):
        tokens = FakeTokenManager(failures={"c1": 1})
        roles = [make_role("r1", policy=_ctx("c1")), make_role("r2", policy=_ctx("c1"))]
        result = _orchestrator(api, tokens, FakeInput()).activate("user-1", roles)
        assert result.success_count == 2
        assert tokens.prompts["c1"] == 2

    def test_per_role_token_failure_recorded(self, api):
        tokens = FakeTokenManager(failures={"c1": 5})
        roles = [make_role("r1", policy=_ctx("c1")), make_role("r2")]
        result = _orchestrator(api, tokens, FakeInput()).activate("user-1", roles)
        assert result.success_count == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("r1: Could not acquire token")

    def test_acrs_rejection_refreshes_once(self, api, tokens):
        api.submit_errors = [GraphApiError(400, "RoleAssignmentRequestAcrsValidationFailed", "claims"), None, None]
        roles = [make_role("r1", policy=_ctx("c1")), make_role("r2", policy=_ctx("c1"))]
        result = _orchestrator(api, tokens, FakeInput()).activate("user-1", roles)
        assert result.success_count == 2
        assert tokens.forced == ["c1"]
        assert [s["token"] for s in api.submitted] == ["tok-c1-1", "tok-c1-2", "tok-c1-2"]

    def test_missing_required_justification_submits_nothing(self, api, tokens):
        role = make_role("r1", policy=PolicyDescriptor(requires_justification=True))
        result = _orchestrator(api, tokens, FakeInput(ActivationInput(justification="  "))).activate("user-1", [role])
        assert result.success_count == 0
        assert api.submitted == []
        assert "justification" in result.errors[0]

    def test_ticket_passed_through(self, api, tokens):
        role = make_role("r1", policy=PolicyDescriptor(requires_ticket=True))
        answer = ActivationInput(justification="x", ticket_number="CHG-42", ticket_system="Jira")
        _orchestrator(api, tokens, FakeInput(answer)).activate("user-1", [role])
        assert api.submitted[0]["payload"]["ticketInfo"] == {"ticketNumber": "CHG-42", "ticketSystem": "Jira"}

    def test_active_roles_rejected(self, api, tokens):
        result = _orchestrator(api, tokens, FakeInput()).activate(
            "user-1", [make_role("r1", status=RoleStatus.ACTIVE)])
        assert result.success_count == 0
        assert api.submitted == []

    def test_group_submission_route(self, api, tokens):
        _orchestrator(api, tokens, FakeInput()).activate("user-1", [make_role("g1", type=RoleType.GROUP)])
        assert api.count("submit_group_request") == 1

    def test_approval_reported_as_pending(self, api, tokens):
        api.next_status = "PendingApproval"
        result = _orchestrator(api, tokens, FakeInput()).activate("user-1", [make_role("r1")])
        assert result.success_count == 1
        assert result.outcomes[0].message == "Pending approval"

    def test_cache_refreshed_after_success(self, api, tokens):
        refreshed = BatchFetchResult(active_roles=[make_role("r1", status=RoleStatus.ACTIVE)])
        cache = SpyRoleCache(refreshed)
        _orchestrator(api, tokens, FakeInput(), cache).activate("user-1", [make_role("r1")])
        assert cache.invalidations >= 1
        assert cache.fetches == 1

    def test_cache_retries_until_reflected(self, api, tokens, sleep):
        cache = SpyRoleCache(BatchFetchResult())
        _orchestrator(api, tokens, FakeInput(), cache, sleep=sleep).activate("user-1", [make_role("r1")])
        assert cache.fetches == 2
        assert len(sleep.calls) == 2

    def test_all_failed_invalidates_without_refetch(self, api, tokens):
        api.submit_errors = [GraphApiError(403, "AuthorizationFailed", "no")]
        cache = SpyRoleCache()
        _orchestrator(api, tokens, FakeInput(), cache).activate("user-1", [make_role("r1")])
        assert cache.invalidations == 1
        assert cache.fetches == 0

    def test_lost_sign_in_drops_cached_roles(self, api, tokens):
        api.submit_errors = [None, AuthenticationError("silent refresh failed")]
        cache = SpyRoleCache()
        with pytest.raises(AuthenticationError):
            _orchestrator(api, tokens, FakeInput(), cache).activate("user-1", [make_role("r1"), make_role("r2")])
        assert len(api.submitted) == 2
        assert cache.invalidations == 1
        assert cache.fetches == 0

    def test_lost_sign_in_before_any_change_keeps_cache(self, api, tokens):
        api.submit_errors = [AuthenticationError("silent refresh failed")]
        cache = SpyRoleCache()
        with pytest.raises(AuthenticationError):
            _orchestrator(api, tokens, FakeInput(), cache).activate("user-1", [make_role("r1"), make_role("r2")])
        assert cache.invalidations == 0

    def test_sub_hour_policy_maximum_is_refused_locally(self, api, tokens):
        """A PT30M maximum normalises to 0h, so nothing can be requested."""
        roles = [make_role("r1", policy=PolicyDescriptor(max_duration_hours=0)), make_role("r2")]
        result = _orchestrator(api, tokens, FakeInput()).activate("user-1", roles, hours=1)
        assert result.success_count == 1
        assert result.errors == ["r1: Activation duration must be greater than zero."]
        assert [s["payload"]["roleDefinitionId"] for s in api.submitted] == ["r2"]
