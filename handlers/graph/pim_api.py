# ================================================================
# File     : handlers/graph/pim_api.py
# Purpose  : The PIM provider surface (directory roles + PIM groups)
# Notes    : Thin: one method per Graph call the orchestrator needs.
#            List reads for the signed-in principal tolerate 403/404;
#            policy/submission calls raise GraphApiError.
# ================================================================

from typing import Any, Dict, List, Optional

from handlers.graph.graph_helpers import fncGetAllTolerant, fncQuote

DIRECTORY_REQUESTS = "roleManagement/directory/roleAssignmentScheduleRequests"
GROUP_REQUESTS = "identityGovernance/privilegedAccess/group/assignmentScheduleRequests"


class PimGraphApi:
    def __init__(self, client):
        self.client = client

    # ---------- Identity ----------

    def get_me(self) -> Dict[str, Any]:
        return self.client.get("me?$select=id,displayName,userPrincipalName")

    # ---------- Directory roles ----------

    def list_eligible_directory_roles(self, principal_id: str) -> List[Dict[str, Any]]:
        return fncGetAllTolerant(
            self.client,
            "roleManagement/directory/roleEligibilityScheduleInstances"
            f"?$filter=principalId eq {fncQuote(principal_id)}&$expand=roleDefinition",
            "eligible directory roles",
        )

    def list_active_directory_roles(self, principal_id: str) -> List[Dict[str, Any]]:
        return fncGetAllTolerant(
            self.client,
            "roleManagement/directory/roleAssignmentScheduleInstances"
            f"?$filter=principalId eq {fncQuote(principal_id)}&$expand=roleDefinition",
            "active directory roles",
        )

    def list_group_role_assignments(self, group_id: str) -> List[Dict[str, Any]]:
        """Directory roles held by a group (what membership transitively grants)."""
        return fncGetAllTolerant(
            self.client,
            "roleManagement/directory/roleAssignmentScheduleInstances"
            f"?$filter=principalId eq {fncQuote(group_id)}&$expand=roleDefinition",
            "group role assignments",
        )

    def get_administrative_unit(self, au_id: str) -> Dict[str, Any]:
        return self.client.get(f"directory/administrativeUnits/{au_id}?$select=id,displayName")

    # ---------- PIM groups ----------

    def list_eligible_group_memberships(self, principal_id: str) -> List[Dict[str, Any]]:
        return fncGetAllTolerant(
            self.client,
            "identityGovernance/privilegedAccess/group/eligibilityScheduleInstances"
            f"?$filter=principalId eq {fncQuote(principal_id)}&$expand=group",
            "eligible PIM groups",
        )

    def list_active_group_memberships(self, principal_id: str) -> List[Dict[str, Any]]:
        return fncGetAllTolerant(
            self.client,
            "identityGovernance/privilegedAccess/group/assignmentScheduleInstances"
            f"?$filter=principalId eq {fncQuote(principal_id)}&$expand=group",
            "active PIM groups",
        )

    def get_group_scope(self, group_id: str) -> Dict[str, Any]:
        """isAssignableToRole plus administrative-unit membership edges."""
        group = self.client.get(f"groups/{group_id}?$select=id,displayName,isAssignableToRole")
        units = fncGetAllTolerant(
            self.client,
            f"groups/{group_id}/memberOf/microsoft.graph.administrativeUnit?$select=id,displayName",
            "administrative units",
        )
        return {
            "isAssignableToRole": bool(group.get("isAssignableToRole")),
            "administrativeUnits": units,
        }

    # ---------- Policies ----------

    def get_policy_assignments(self, odata_filter: str) -> List[Dict[str, Any]]:
        return self.client.get_all(f"policies/roleManagementPolicyAssignments?$filter={odata_filter}")

    def get_policy(self, policy_id: str) -> Dict[str, Any]:
        return self.client.get(f"policies/roleManagementPolicies/{policy_id}?$expand=rules")

    def get_group_policy_assignments(self, group_id: str) -> List[Dict[str, Any]]:
        """Member and owner policy assignments for one group, rules expanded."""
        flt = f"scopeId eq {fncQuote(group_id)} and scopeType eq 'Group'"
        return self.client.get_all(
            f"policies/roleManagementPolicyAssignments?$filter={flt}&$expand=policy($expand=rules)"
        )

    def get_authentication_context(self, context_id: str) -> Dict[str, Any]:
        return self.client.get(f"identity/conditionalAccess/authenticationContextClassReferences/{context_id}")

    # ---------- Submission ----------

    def submit_directory_request(self, payload: Dict[str, Any], token: Optional[str] = None) -> Dict[str, Any]:
        return self.client.post(DIRECTORY_REQUESTS, payload, token=token)

    def submit_group_request(self, payload: Dict[str, Any], token: Optional[str] = None) -> Dict[str, Any]:
        return self.client.post(GROUP_REQUESTS, payload, token=token)

    def find_directory_schedule_id(self, principal_id: str, role_definition_id: str,
                                   directory_scope_id: str = "/") -> Optional[str]:
        rows = fncGetAllTolerant(
            self.client,
            "roleManagement/directory/roleAssignmentSchedules"
            f"?$filter=principalId eq {fncQuote(principal_id)} and roleDefinitionId eq {fncQuote(role_definition_id)}",
            "active directory schedules",
        )
        for r in rows:
            if (r.get("directoryScopeId") or "/") == (directory_scope_id or "/"):
                return r.get("id")
        return None

    def find_group_schedule_id(self, principal_id: str, group_id: str, access_id: str) -> Optional[str]:
        rows = fncGetAllTolerant(
            self.client,
            "identityGovernance/privilegedAccess/group/assignmentSchedules"
            f"?$filter=principalId eq {fncQuote(principal_id)} and groupId eq {fncQuote(group_id)}",
            "active group schedules",
        )
        for r in rows:
            if (r.get("accessId") or "member").lower() == access_id.lower():
                return r.get("id")
        return None
