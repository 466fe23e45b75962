"""Tests for the policy & authentication-context cache."""

from core.errors import GraphApiError
from core.models import DEFAULT_MAX_DURATION_HOURS, RoleKey, RoleType
from modules.pim.policy_cache import PolicyContextCache
from fakes import auth_context_rule, directory_policy, enablement_rule, expiration_rule


def _dir(role_id: str) -> RoleKey:
    return RoleKey(RoleType.DIRECTORY_ROLE, role_id)


def _grp(group_id: str) -> RoleKey:
    return RoleKey(RoleType.GROUP, group_id)


class TestDirectoryPolicies:
    """Batch resolution for directory roles."""

    def test_shared_policy_fetched_once(self, api):
        api.policy_assignments = [
            {"roleDefinitionId": "r1", "policyId": "p-shared"},
            {"roleDefinitionId": "r2", "policyId": "p-shared"},
            {"roleDefinitionId": "r3", "policyId": "p-other"},
        ]
        api.policies = {
            "p-shared": directory_policy(expiration_rule("PT2H")),
            "p-other": directory_policy(expiration_rule("PT4H")),
        }
        cache = PolicyContextCache(api)
        out = cache.resolve_batch([_dir("r1"), _dir("r2"), _dir("r3")])

        assert out[_dir("r1")].max_duration_hours == 2
        assert out[_dir("r2")].max_duration_hours == 2
        assert out[_dir("r3")].max_duration_hours == 4
        assert api.count("get_policy_assignments") == 1
        assert api.count("get_policy") == 2

    def test_second_resolve_is_served_from_cache(self, api):
        api.policy_assignments = [{"roleDefinitionId": "r1", "policyId": "p1"}]
        api.policies = {"p1": directory_policy(expiration_rule("PT1H"))}
        cache = PolicyContextCache(api)
        cache.resolve_batch([_dir("r1")])
        calls = len(api.calls)

        again = cache.resolve_batch([_dir("r1")])

        assert again[_dir("r1")].max_duration_hours == 1
        assert len(api.calls) == calls
        assert cache.get(_dir("r1")) is again[_dir("r1")]
        assert "DirectoryRole:r1" in cache.policies()

    def test_many_roles_are_chunked(self, api):
        ids = [f"r{i}" for i in range(20)]
        api.policy_assignments = [{"roleDefinitionId": r, "policyId": "p"} for r in ids]
        api.policies = {"p": directory_policy()}
        PolicyContextCache(api).resolve_batch([_dir(r) for r in ids])
        assert api.count("get_policy_assignments") == 2

    def test_batch_failure_falls_back_per_role(self, api):
        api.policy_assignments = [{"roleDefinitionId": "r1", "policyId": "p1"}]
        api.policies = {"p1": directory_policy(expiration_rule("PT3H"))}
        cache = PolicyContextCache(api)

        original = api.get_policy_assignments
        state = {"first": True}

        def flaky(odata_filter):
            if state["first"]:
                state["first"] = False
                api.calls.append(("get_policy_assignments", odata_filter))
                raise GraphApiError(400, "BadRequest", "filter too complex")
            return original(odata_filter)

        api.get_policy_assignments = flaky
        out = cache.resolve_batch([_dir("r1"), _dir("r2")])

        assert out[_dir("r1")].max_duration_hours == 3
        assert out[_dir("r2")].max_duration_hours == DEFAULT_MAX_DURATION_HOURS
        assert api.count("get_policy_assignments") == 3

    def test_missing_policy_degrades_to_defaults(self, api):
        api.policy_assignments = [{"roleDefinitionId": "r1", "policyId": "gone"}]
        out = PolicyContextCache(api).resolve_batch([_dir("r1")])
        assert out[_dir("r1")].max_duration_hours == DEFAULT_MAX_DURATION_HOURS


class TestGroupPolicies:
    """Group policies come from member/owner assignments."""

    def test_member_assignment_preferred(self, api):
        api.group_policy_assignments["g1"] = [
            {"roleDefinitionId": "owner", "policy": directory_policy(expiration_rule("PT1H"))},
            {"roleDefinitionId": "member", "policy": directory_policy(expiration_rule("PT5H"),
                                                                      enablement_rule("Justification"))},
        ]
        desc = PolicyContextCache(api).resolve_batch([_grp("g1")])[_grp("g1")]
        assert desc.max_duration_hours == 5
        assert desc.requires_justification

    def test_policy_fetched_when_not_expanded(self, api):
        api.group_policy_assignments["g1"] = [{"roleDefinitionId": "member", "policyId": "gp"}]
        api.policies = {"gp": directory_policy(expiration_rule("PT2H"))}
        desc = PolicyContextCache(api).resolve_batch([_grp("g1")])[_grp("g1")]
        assert desc.max_duration_hours == 2

    def test_lookup_failure_gives_defaults(self, api):
        api.fail["get_group_policy_assignments"] = GraphApiError(403, "Forbidden", "nope")
        desc = PolicyContextCache(api).resolve_batch([_grp("g1")])[_grp("g1")]
        assert desc.max_duration_hours == DEFAULT_MAX_DURATION_HOURS
        assert not desc.requires_authentication_context


class TestAuthenticationContexts:
    """Context display names are looked up once per id."""

    def test_context_enrichment(self, api):
        api.policy_assignments = [
            {"roleDefinitionId": "r1", "policyId": "p1"},
            {"roleDefinitionId": "r2", "policyId": "p2"},
        ]
        api.policies = {
            "p1": directory_policy(auth_context_rule("c3")),
            "p2": directory_policy(auth_context_rule("c3"), expiration_rule("PT1H")),
        }
        api.auth_contexts["c3"] = {"id": "c3", "displayName": "Phishing-resistant", "description": "FIDO2"}
        cache = PolicyContextCache(api)
        out = cache.resolve_batch([_dir("r1"), _dir("r2")])

        assert out[_dir("r1")].authentication_context_display_name == "Phishing-resistant"
        assert out[_dir("r2")].authentication_context_description == "FIDO2"
        assert api.count("get_authentication_context") == 1
        assert cache.contexts()["c3"]["displayName"] == "Phishing-resistant"

    def test_context_lookup_failure_uses_id(self, api):
        api.policy_assignments = [{"roleDefinitionId": "r1", "policyId": "p1"}]
        api.policies = {"p1": directory_policy(auth_context_rule("c9"))}
        api.fail["get_authentication_context"] = GraphApiError(404, "NotFound", "")
        desc = PolicyContextCache(api).resolve_batch([_dir("r1")])[_dir("r1")]
        assert desc.requires_authentication_context
        assert desc.authentication_context_display_name == "c9"

    def test_clear_drops_everything(self, api):
        api.policy_assignments = [{"roleDefinitionId": "r1", "policyId": "p1"}]
        api.policies = {"p1": directory_policy()}
        cache = PolicyContextCache(api)
        cache.resolve_batch([_dir("r1")])
        cache.clear()
        assert cache.policies() == {}
        assert cache.get(_dir("r1")) is None


class TestFailureReporting:
    """Degraded lookups are recorded for the fetch warnings."""

    def test_failures_recorded_and_reset(self, api):
        api.fail["get_group_policy_assignments"] = GraphApiError(500, "InternalServerError", "boom")
        cache = PolicyContextCache(api)
        cache.resolve_batch([_grp("g1")])
        assert len(cache.last_failures) == 1
        assert "g1" in str(cache.last_failures[0])

        del api.fail["get_group_policy_assignments"]
        cache.resolve_batch([_grp("g2")])
        assert cache.last_failures == []
