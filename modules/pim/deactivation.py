# ================================================================
# File     : modules/pim/deactivation.py
# Purpose  : End a batch of active role assignments early
# Notes    : One confirmation for the whole batch, then a
#            selfDeactivate per role. Roles granted through a group
#            must be ended on the group, not on the role.
# ================================================================

import time
from typing import Callable, List, Optional

from core.errors import ActivationRejectedError, AuthenticationError, GraphApiError
from core.models import MemberType, OperationResult, Role, RoleOutcome, RoleStatus, RoleType
from core.utils import fncNewRunId, fncPrintMessage
from modules.pim.role_cache import RetryPolicy
from modules.pim.submission import (
    fncAccessId,
    fncClassifyFailure,
    fncDeactivationPayload,
    fncDropStaleRoles,
    fncFinalizeBatch,
    fncSubmitRequest,
)


class DeactivationOrchestrator:
    def __init__(self, api, input_provider, role_cache=None, retry_policy: RetryPolicy = RetryPolicy(),
                 sleep: Callable[[float], None] = time.sleep):
        self.api = api
        self.input_provider = input_provider
        self.role_cache = role_cache
        self.retry_policy = retry_policy
        self.sleep = sleep

    def deactivate(self, principal_id: str, roles: List[Role], flags=None) -> OperationResult:
        run_id = fncNewRunId("deactivate")
        result = OperationResult(total_count=len(roles))
        if not roles:
            fncPrintMessage("No roles selected for deactivation.", "warn")
            return result

        if not self.input_provider.confirm_deactivation(roles):
            fncPrintMessage("Deactivation cancelled. Nothing was submitted.", "info")
            result.cancelled = True
            return result

        fncPrintMessage(f"[{run_id}] deactivating {len(roles)} role(s)", "debug")
        try:
            for role in roles:
                result.record(self._deactivate_one(principal_id, role))
        except AuthenticationError:
            fncDropStaleRoles(result, self.role_cache)
            raise

        ended = [o.role for o in result.outcomes if o.success]
        fncFinalizeBatch(result, "Deactivated", self.role_cache, principal_id,
                         reflects=lambda fetched: _none_active(fetched, ended),
                         retry_policy=self.retry_policy, flags=flags, sleep=self.sleep)
        return result

    def _deactivate_one(self, principal_id: str, role: Role) -> RoleOutcome:
        if role.status != RoleStatus.ACTIVE:
            return RoleOutcome(role, False, "Only active roles can be deactivated.")
        if role.member_type == MemberType.INHERITED:
            via = role.provided_by_group_name or "a group"
            return RoleOutcome(role, False, f"Granted via {via}; deactivate the group membership instead.")

        try:
            schedule_id = role.schedule_id or self._lookup_schedule(principal_id, role)
            if not schedule_id:
                fncPrintMessage(f"{role.display_name}: no active schedule found, submitting without one", "debug")
            payload = fncDeactivationPayload(principal_id, role, schedule_id)
            response = fncSubmitRequest(self.api, role, payload)
        except AuthenticationError:
            raise
        except (ActivationRejectedError, GraphApiError, ValueError) as ex:
            code, message = fncClassifyFailure(ex)
            fncPrintMessage(f"{role.display_name}: deactivation failed ({code or 'error'})", "debug")
            return RoleOutcome(role, False, message)
        except Exception as ex:  # network and anything unexpected stay per-role
            _, message = fncClassifyFailure(ex)
            return RoleOutcome(role, False, message)

        fncPrintMessage(f"{role.display_name}: deactivated", "success")
        return RoleOutcome(role, True, "Deactivated", request_id=(response or {}).get("id"))

    def _lookup_schedule(self, principal_id: str, role: Role) -> Optional[str]:
        fncPrintMessage(f"{role.display_name}: schedule id missing, looking it up", "debug")
        if role.type == RoleType.DIRECTORY_ROLE:
            return self.api.find_directory_schedule_id(principal_id, role.id, role.directory_scope_id)
        if role.type == RoleType.GROUP:
            return self.api.find_group_schedule_id(principal_id, role.id, fncAccessId(role))
        return None


def _none_active(fetched, roles: List[Role]) -> bool:
    if fetched is None:
        return False
    active = {(r.type, r.id, r.directory_scope_id) for r in fetched.active_roles
              if r.member_type != MemberType.INHERITED}
    return not any((r.type, r.id, r.directory_scope_id) in active for r in roles)
