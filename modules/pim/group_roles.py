# ================================================================
# File     : modules/pim/group_roles.py
# Purpose  : Role source adapter for PIM-enabled groups
# Notes    : accessId decides Member vs Owner. Scope classification
#            (Directory vs Administrative Unit) is best effort and
#            cached per group; failure means "Directory".
# ================================================================

import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.errors import GraphApiError
from core.models import MemberType, ProvidedRole, Role, RoleStatus, RoleType
from core.utils import fncParseDateTime, fncPrintMessage

RESOURCE_NAME = "PIM Group"


def _default_scope(directory_scope_id: str) -> str:
    return "Directory" if (directory_scope_id or "/") == "/" else directory_scope_id


class GroupRoleAdapter:
    name = "PIM groups"

    def __init__(self, api, scope_resolver: Optional[Callable[[str], str]] = None):
        self.api = api
        self.scope_resolver = scope_resolver or _default_scope
        self._scopes: Dict[str, str] = {}
        self._provided: Dict[str, List[ProvidedRole]] = {}
        self._lock = threading.Lock()

    def clear(self) -> None:
        with self._lock:
            self._scopes.clear()
            self._provided.clear()

    def fetch_roles(self, user_id: str, include_provided_roles: bool = False) -> Tuple[List[Role], List[Role]]:
        eligible_raw = self.api.list_eligible_group_memberships(user_id)
        active_raw = self.api.list_active_group_memberships(user_id)
        fncPrintMessage(f"PIM groups: {len(eligible_raw)} eligible, {len(active_raw)} active", "debug")

        eligible = [self._to_role(r, RoleStatus.ELIGIBLE) for r in eligible_raw if r.get("groupId")]
        active = [self._to_role(r, RoleStatus.ACTIVE) for r in active_raw if r.get("groupId")]

        if include_provided_roles:
            for role in eligible + active:
                role.provided_roles = self.provided_roles(role.id)
        return eligible, active

    # ---------- lookups ----------

    def classify_scope(self, group_id: str) -> str:
        with self._lock:
            if group_id in self._scopes:
                return self._scopes[group_id]
        scope = "Directory"
        try:
            info = self.api.get_group_scope(group_id) or {}
            units = [u.get("displayName") or u.get("id") for u in info.get("administrativeUnits") or []]
            if units:
                scope = "AU: " + ", ".join(sorted(u for u in units if u))
            elif not info.get("isAssignableToRole"):
                fncPrintMessage(f"Group {group_id} is not role-assignable; scoping as Directory.", "debug")
        except GraphApiError as ex:
            fncPrintMessage(f"Scope lookup for group {group_id} failed ({ex.status}); defaulting to Directory.", "debug")
        with self._lock:
            self._scopes[group_id] = scope
        return scope

    def provided_roles(self, group_id: str) -> List[ProvidedRole]:
        """Directory roles that membership in this group transitively grants."""
        with self._lock:
            if group_id in self._provided:
                return list(self._provided[group_id])
        out: List[ProvidedRole] = []
        try:
            for r in self.api.list_group_role_assignments(group_id):
                role_id = r.get("roleDefinitionId")
                if not role_id:
                    continue
                scope_id = r.get("directoryScopeId") or "/"
                out.append(ProvidedRole(
                    role_definition_id=role_id,
                    display_name=(r.get("roleDefinition") or {}).get("displayName") or role_id,
                    directory_scope_id=scope_id,
                    scope_display=self.scope_resolver(scope_id),
                ))
        except GraphApiError as ex:
            fncPrintMessage(f"Provided roles for group {group_id} unavailable: {ex}", "warn")
            return []
        # several schedule instances can describe one grant
        out = list(dict.fromkeys(out))
        with self._lock:
            self._provided[group_id] = out
        return list(out)

    def _to_role(self, raw: Dict[str, Any], status: RoleStatus) -> Role:
        group = raw.get("group") or {}
        group_id = raw["groupId"]
        access = str(raw.get("accessId") or "member").lower()
        schedule_id = None
        if status == RoleStatus.ACTIVE:
            schedule_id = raw.get("assignmentScheduleId") or raw.get("id")

        return Role(
            id=group_id,
            type=RoleType.GROUP,
            display_name=group.get("displayName") or group_id,
            status=status,
            member_type=MemberType.OWNER if access == "owner" else MemberType.MEMBER,
            resource_name=RESOURCE_NAME,
            scope_display=self.classify_scope(group_id),
            directory_scope_id="/",
            start_date_time=fncParseDateTime(raw.get("startDateTime")),
            end_date_time=fncParseDateTime(raw.get("endDateTime")),
            schedule_id=schedule_id,
            assignment_type=raw.get("assignmentType"),
        )
