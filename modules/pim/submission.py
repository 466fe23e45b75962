# ================================================================
# File     : modules/pim/submission.py
# Purpose  : Schedule-request payloads, duration clamping, and the
#            per-role submit/classify step shared by activation and
#            deactivation
# ================================================================

import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from core.errors import ActivationRejectedError, AuthContextTokenError, GraphApiError, GraphServerError, fncFriendlyError
from core.models import ActivationRequest, EffectiveDuration, MemberType, OperationResult, Role, RoleType
from core.utils import fncPrintMessage, fncUtcNowIso
from modules.pim.role_cache import RetryPolicy, RoleCache, fncRefreshAfterMutation


# ================================================================
# Function: fncEffectiveDuration
# Purpose : min(requested, policy maximum), as hours + minutes
# Notes   : The policy maximum is a ceiling, never a rejection
# ================================================================
def fncEffectiveDuration(requested_hours: int, requested_minutes: int, max_duration_hours: int) -> EffectiveDuration:
    requested = max(0, int(requested_hours) * 60 + int(requested_minutes))
    cap = max(0, int(max_duration_hours)) * 60
    return EffectiveDuration.from_minutes(min(requested, cap))


def fncAccessId(role: Role) -> str:
    return "owner" if role.member_type == MemberType.OWNER else "member"


def _role_target(role: Role, directory_scope_id: Optional[str] = None) -> Dict[str, Any]:
    if role.type == RoleType.DIRECTORY_ROLE:
        return {
            "roleDefinitionId": role.id,
            "directoryScopeId": directory_scope_id or role.directory_scope_id or "/",
        }
    if role.type == RoleType.GROUP:
        return {"groupId": role.id, "accessId": fncAccessId(role)}
    raise ValueError(f"{role.type.value} roles cannot be submitted")


# ================================================================
# Function: fncActivationPayload
# Purpose : Build a selfActivate schedule request body
# ================================================================
def fncActivationPayload(request: ActivationRequest, now: Optional[datetime] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "action": "selfActivate",
        "principalId": request.principal_id,
        "justification": request.justification or "",
        "scheduleInfo": {
            "startDateTime": fncUtcNowIso(now),
            "expiration": {
                "type": "afterDuration",
                "duration": request.effective_duration.to_iso(),
            },
        },
    }
    payload.update(_role_target(request.role, request.directory_scope_id))
    if request.ticket_info and request.ticket_info.number:
        payload["ticketInfo"] = {
            "ticketNumber": request.ticket_info.number,
            "ticketSystem": request.ticket_info.system or "",
        }
    return payload


# ================================================================
# Function: fncDeactivationPayload
# Purpose : Build a selfDeactivate schedule request body
# ================================================================
def fncDeactivationPayload(principal_id: str, role: Role, schedule_id: Optional[str],
                           justification: str = "Deactivated via PimPoodle") -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "action": "selfDeactivate",
        "principalId": principal_id,
        "justification": justification,
    }
    if schedule_id:
        payload["targetScheduleId"] = schedule_id
    payload.update(_role_target(role))
    return payload


# ================================================================
# Function: fncSubmitRequest
# Purpose : Route a schedule request to the directory or group API
# Notes   : Structured 4xx answers become ActivationRejectedError;
#           server and transport errors pass through unchanged
# ================================================================
def fncSubmitRequest(api, role: Role, payload: Dict[str, Any], token: Optional[str] = None) -> Dict[str, Any]:
    if role.type == RoleType.DIRECTORY_ROLE:
        submit = api.submit_directory_request
    elif role.type == RoleType.GROUP:
        submit = api.submit_group_request
    else:
        raise ValueError(f"{role.type.value} roles cannot be submitted")
    try:
        return submit(payload, token=token)
    except GraphServerError:
        raise
    except GraphApiError as ex:
        raise ActivationRejectedError(ex.code, ex.message) from ex


# ================================================================
# Function: fncClassifyFailure
# Purpose : (error code, user-facing message) for a failed submit
# ================================================================
def fncClassifyFailure(ex: Exception) -> Tuple[str, str]:
    if isinstance(ex, ActivationRejectedError):
        return ex.code, str(ex)
    if isinstance(ex, GraphApiError):
        return ex.code, fncFriendlyError(ex.code, ex.message)
    if isinstance(ex, AuthContextTokenError):
        return "AuthContextTokenFailure", str(ex)
    if isinstance(ex, requests.RequestException):
        return "NetworkError", f"Network error talking to Microsoft Graph: {ex}"
    return type(ex).__name__, str(ex)


# ================================================================
# Function: fncFinalizeBatch
# Purpose : Summarise, then invalidate the role cache and re-fetch
#           with bounded retries when anything changed
# Notes   : Returns the refreshed BatchFetchResult (or None)
# ================================================================
def fncFinalizeBatch(result: OperationResult, verb: str, role_cache: Optional[RoleCache] = None,
                     user_id: str = "", reflects: Optional[Callable] = None,
                     retry_policy: Optional[RetryPolicy] = None, flags=None,
                     sleep: Callable[[float], None] = time.sleep):
    level = "success" if result.success_count == result.total_count else "warn"
    fncPrintMessage(f"{verb} {result.success_count}/{result.total_count} role(s)", level)
    for err in result.errors:
        fncPrintMessage(err, "error")

    if role_cache is None:
        return None
    if result.success_count == 0:
        role_cache.invalidate()
        return None
    refreshed, _ = fncRefreshAfterMutation(role_cache, user_id, reflects or (lambda _r: True),
                                           policy=retry_policy or RetryPolicy(), flags=flags, sleep=sleep)
    return refreshed


# ================================================================
# Function: fncDropStaleRoles
# Purpose : Invalidate the role cache for a batch cut short
# Notes   : Used when sign-in is lost mid-batch. Roles already
#           changed must not be served from the old listing.
# ================================================================
def fncDropStaleRoles(result: OperationResult, role_cache: Optional[RoleCache] = None) -> None:
    if role_cache is None or result.success_count == 0:
        return
    fncPrintMessage(f"Batch interrupted after {result.success_count} change(s); dropping cached roles", "warn")
    role_cache.invalidate()
