# ================================================================
# File     : modules/pim/directory_roles.py
# Purpose  : Role source adapter for Entra directory roles
# Notes    : Eligible = roleEligibilityScheduleInstances,
#            Active   = roleAssignmentScheduleInstances, both for the
#            signed-in principal with roleDefinition expanded.
# ================================================================

import threading
from typing import Any, Dict, List, Tuple

from core.errors import GraphApiError
from core.models import MemberType, Role, RoleStatus, RoleType
from core.utils import fncParseDateTime, fncPrintMessage

RESOURCE_NAME = "Entra ID"
AU_PREFIX = "/administrativeUnits/"

# memberType values Graph uses for assignments reached through a group
_INHERITED_MEMBER_TYPES = {"group", "inherited"}


class DirectoryRoleAdapter:
    name = "Directory roles"

    def __init__(self, api):
        self.api = api
        self._au_names: Dict[str, str] = {}
        self._lock = threading.Lock()

    def clear(self) -> None:
        with self._lock:
            self._au_names.clear()

    def fetch_roles(self, user_id: str) -> Tuple[List[Role], List[Role]]:
        eligible_raw = self.api.list_eligible_directory_roles(user_id)
        active_raw = self.api.list_active_directory_roles(user_id)
        fncPrintMessage(f"Directory roles: {len(eligible_raw)} eligible, {len(active_raw)} active", "debug")

        eligible = [self._to_role(r, RoleStatus.ELIGIBLE) for r in eligible_raw if r.get("roleDefinitionId")]
        active = [self._to_role(r, RoleStatus.ACTIVE) for r in active_raw if r.get("roleDefinitionId")]
        return eligible, active

    def scope_display(self, directory_scope_id: str) -> str:
        """'/' -> Directory, '/administrativeUnits/<id>' -> 'AU: <name>'."""
        scope = directory_scope_id or "/"
        if scope == "/":
            return "Directory"
        if not scope.startswith(AU_PREFIX):
            return scope

        au_id = scope[len(AU_PREFIX):]
        with self._lock:
            if au_id in self._au_names:
                return f"AU: {self._au_names[au_id]}"
        try:
            name = (self.api.get_administrative_unit(au_id) or {}).get("displayName") or au_id
        except GraphApiError as ex:
            fncPrintMessage(f"Administrative unit {au_id} lookup failed ({ex.status}); showing id.", "debug")
            name = au_id
        with self._lock:
            self._au_names[au_id] = name
        return f"AU: {name}"

    def _to_role(self, raw: Dict[str, Any], status: RoleStatus) -> Role:
        role_def = raw.get("roleDefinition") or {}
        role_id = raw["roleDefinitionId"]
        scope_id = raw.get("directoryScopeId") or "/"
        member_type = (MemberType.INHERITED
                       if str(raw.get("memberType") or "").lower() in _INHERITED_MEMBER_TYPES
                       else MemberType.DIRECT)
        schedule_id = None
        if status == RoleStatus.ACTIVE:
            schedule_id = raw.get("roleAssignmentScheduleId") or raw.get("id")

        return Role(
            id=role_id,
            type=RoleType.DIRECTORY_ROLE,
            display_name=role_def.get("displayName") or role_id,
            status=status,
            member_type=member_type,
            resource_name=RESOURCE_NAME,
            scope_display=self.scope_display(scope_id),
            directory_scope_id=scope_id,
            start_date_time=fncParseDateTime(raw.get("startDateTime")),
            end_date_time=fncParseDateTime(raw.get("endDateTime")),
            schedule_id=schedule_id,
            assignment_type=raw.get("assignmentType"),
        )
