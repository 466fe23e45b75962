"""Tests for role source adapters, aggregation and the batch fetcher."""

import pytest

from core.errors import AuthenticationError, GraphApiError, RoleSourceError
from core.models import MemberType, RoleStatus, RoleType
from modules.pim.aggregator import RoleAggregator, RoleSource, fncDedupeRoles
from modules.pim.batch_fetcher import BatchRoleFetcher, FetchFlags
from modules.pim.directory_roles import DirectoryRoleAdapter
from modules.pim.group_roles import GroupRoleAdapter
from modules.pim.policy_cache import PolicyContextCache
from fakes import directory_policy, expiration_rule, make_role


def _seed(api):
    api.eligible_directory = [
        {"roleDefinitionId": "r-ga", "roleDefinition": {"displayName": "Global Administrator"},
         "directoryScopeId": "/"},
        {"roleDefinitionId": "r-ua", "roleDefinition": {"displayName": "User Administrator"},
         "directoryScopeId": "/administrativeUnits/au1"},
    ]
    api.active_directory = [
        {"id": "inst-1", "roleAssignmentScheduleId": "sched-1", "roleDefinitionId": "r-sec",
         "roleDefinition": {"displayName": "Security Reader"}, "directoryScopeId": "/",
         "memberType": "Group", "endDateTime": "2026-03-01T17:00:00Z"},
    ]
    api.eligible_groups = [{"groupId": "g1", "group": {"displayName": "SecOps"}, "accessId": "member"}]
    api.active_groups = [{"id": "ginst", "assignmentScheduleId": "gsched", "groupId": "g1",
                          "group": {"displayName": "SecOps"}, "accessId": "member",
                          "endDateTime": "2026-03-01T17:00:00Z"}]
    api.group_role_assignments["g1"] = [
        {"roleDefinitionId": "r-sec", "roleDefinition": {"displayName": "Security Reader"}, "directoryScopeId": "/"},
    ]
    api.policy_assignments = [{"roleDefinitionId": "r-ga", "policyId": "p-ga"}]
    api.policies = {"p-ga": directory_policy(expiration_rule("PT2H"))}


def _fetcher(api, clock):
    directory = DirectoryRoleAdapter(api)
    groups = GroupRoleAdapter(api, scope_resolver=directory.scope_display)
    return BatchRoleFetcher(directory, groups, PolicyContextCache(api), clock=clock)


class TestAdapters:
    """Graph rows to Role records."""

    def test_directory_roles(self, api):
        _seed(api)
        eligible, active = DirectoryRoleAdapter(api).fetch_roles("user-1")
        assert [r.display_name for r in eligible] == ["Global Administrator", "User Administrator"]
        assert eligible[1].scope_display == "AU: Unit au1"
        assert eligible[0].schedule_id is None
        assert active[0].schedule_id == "sched-1"
        assert active[0].member_type == MemberType.INHERITED
        assert active[0].end_date_time.hour == 17

    def test_au_names_cached(self, api):
        adapter = DirectoryRoleAdapter(api)
        adapter.scope_display("/administrativeUnits/au1")
        adapter.scope_display("/administrativeUnits/au1")
        assert api.count("get_administrative_unit") == 1

    def test_groups_with_provided_roles(self, api):
        _seed(api)
        eligible, active = GroupRoleAdapter(api).fetch_roles("user-1", include_provided_roles=True)
        assert eligible[0].type == RoleType.GROUP
        assert eligible[0].member_type == MemberType.MEMBER
        assert active[0].schedule_id == "gsched"
        assert active[0].provided_roles[0].role_definition_id == "r-sec"
        assert api.count("list_group_role_assignments") == 1

    def test_group_scope_failure_defaults_to_directory(self, api):
        api.fail["get_group_scope"] = GraphApiError(403, "Forbidden", "")
        assert GroupRoleAdapter(api).classify_scope("g1") == "Directory"


class TestAggregator:
    """Fan-out, merge and failure isolation."""

    def test_duplicates_removed(self):
        role = make_role("r1")
        assert fncDedupeRoles([role, make_role("r1"), make_role("r2")]) == [role, make_role("r2")]

    @pytest.mark.parametrize("parallel", [False, True])
    def test_one_failing_source_does_not_sink_others(self, parallel):
        def boom(_uid):
            raise GraphApiError(500, "ServiceUnavailable", "down")

        sources = [
            RoleSource("broken", boom),
            RoleSource("ok", lambda uid: ([make_role("r1")], [])),
        ]
        done = []
        out = RoleAggregator(sources, parallel=parallel).collect("u", lambda name, err: done.append(name))
        assert [r.id for r in out.eligible] == ["r1"]
        assert out.succeeded == ["ok"]
        assert out.failures[0].source == "broken"
        assert sorted(done) == ["broken", "ok"]


class TestBatchFetcher:
    """The one-shot fetch pipeline."""

    def test_full_fetch(self, api, clock):
        _seed(api)
        progress = []
        result = _fetcher(api, clock).fetch_all("user-1", FetchFlags(), lambda m, p: progress.append(p))

        ga = next(r for r in result.eligible_roles if r.id == "r-ga")
        assert ga.policy.max_duration_hours == 2
        assert all(r.policy is not None for r in result.eligible_roles)
        sec = next(r for r in result.active_roles if r.id == "r-sec")
        assert sec.provided_by_group_name == "SecOps"
        assert progress[0] == 0 and progress[-1] == 100
        assert progress == sorted(progress)
        assert result.warnings == []
        assert result.fetched_at == clock.now
        assert "DirectoryRole:r-ga" in result.policy_cache

    def test_partial_failure_becomes_warning(self, api, clock):
        _seed(api)
        api.fail["list_eligible_group_memberships"] = GraphApiError(500, "InternalServerError", "boom")
        result = _fetcher(api, clock).fetch_all("user-1", FetchFlags())
        assert {r.id for r in result.eligible_roles} == {"r-ga", "r-ua"}
        assert len(result.warnings) == 1
        assert "PIM groups" in result.warnings[0]

    def test_all_sources_failing_is_fatal(self, api, clock):
        api.fail["list_eligible_directory_roles"] = GraphApiError(500, "x", "")
        api.fail["list_eligible_group_memberships"] = GraphApiError(500, "x", "")
        with pytest.raises(RoleSourceError):
            _fetcher(api, clock).fetch_all("user-1", FetchFlags())

    def test_groups_excluded(self, api, clock):
        _seed(api)
        result = _fetcher(api, clock).fetch_all("user-1", FetchFlags(include_groups=False))
        assert all(r.type == RoleType.DIRECTORY_ROLE for r in result.eligible_roles)
        assert api.count("list_eligible_group_memberships") == 0

    def test_nothing_requested(self, api, clock):
        flags = FetchFlags(include_directory_roles=False, include_groups=False)
        result = _fetcher(api, clock).fetch_all("user-1", flags)
        assert result.eligible_roles == [] and result.active_roles == []

    def test_active_roles_status(self, api, clock):
        _seed(api)
        result = _fetcher(api, clock).fetch_all("user-1", FetchFlags())
        assert all(r.status == RoleStatus.ACTIVE for r in result.active_roles)


class TestFatalAuthentication:
    def test_sign_in_loss_propagates(self, api, clock):
        api.fail["list_eligible_directory_roles"] = AuthenticationError("refresh token revoked")
        with pytest.raises(AuthenticationError):
            _fetcher(api, clock).fetch_all("user-1", FetchFlags(include_groups=False))
