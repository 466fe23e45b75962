# ================================================================
# File     : modules/pim/activation.py
# Purpose  : Activate a batch of eligible roles in one go
# Notes    : duration -> policy requirements -> one prompt ->
#            buckets per authentication context -> per-role submit
#            (clamped duration) -> summary -> cache refresh.
#            Cancelling the prompt leaves no trace: nothing is
#            submitted and no cache is touched.
# ================================================================

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from core.errors import ActivationRejectedError, AuthContextTokenError, AuthenticationError, GraphApiError
from core.models import (
    ActivationRequest,
    OperationResult,
    PolicyDescriptor,
    Role,
    RoleOutcome,
    RoleStatus,
    TicketInfo,
)
from core.utils import fncNewRunId, fncPrintMessage
from modules.pim.role_cache import RetryPolicy
from modules.pim.submission import (
    fncActivationPayload,
    fncClassifyFailure,
    fncDropStaleRoles,
    fncEffectiveDuration,
    fncFinalizeBatch,
    fncSubmitRequest,
)

ACRS_FAILED = "RoleAssignmentRequestAcrsValidationFailed"


@dataclass
class PolicyRequirements:
    requires_justification: bool = False
    requires_ticket: bool = False
    requires_mfa: bool = False
    requires_approval: bool = False
    requires_authentication_context: bool = False
    authentication_context_ids: List[str] = field(default_factory=list)
    max_duration_hours: Optional[int] = None


@dataclass
class ActivationInput:
    justification: str = ""
    ticket_number: str = ""
    ticket_system: str = ""


def _policy_of(role: Role) -> PolicyDescriptor:
    return role.policy or PolicyDescriptor()


# ================================================================
# Function: fncAggregateRequirements
# Purpose : Union of what the selected roles' policies demand
# Notes   : max_duration_hours is the tightest cap, for display
# ================================================================
def fncAggregateRequirements(roles: List[Role]) -> PolicyRequirements:
    req = PolicyRequirements()
    contexts: List[str] = []
    for role in roles:
        p = _policy_of(role)
        req.requires_justification |= p.requires_justification
        req.requires_ticket |= p.requires_ticket
        req.requires_mfa |= p.requires_mfa
        req.requires_approval |= p.requires_approval
        if p.requires_authentication_context and p.authentication_context_id:
            req.requires_authentication_context = True
            contexts.append(p.authentication_context_id)
        if req.max_duration_hours is None or p.max_duration_hours < req.max_duration_hours:
            req.max_duration_hours = p.max_duration_hours
    req.authentication_context_ids = list(dict.fromkeys(contexts))
    return req


# ================================================================
# Function: fncPartitionByContext
# Purpose : Bucket roles by authentication context id
# Notes   : None = no context; that bucket comes first and uses
#           the ambient sign-in
# ================================================================
def fncPartitionByContext(roles: List[Role]) -> "OrderedDict[Optional[str], List[Role]]":
    buckets: "OrderedDict[Optional[str], List[Role]]" = OrderedDict()
    for role in roles:
        p = _policy_of(role)
        ctx = p.authentication_context_id if p.requires_authentication_context else None
        buckets.setdefault(ctx, []).append(role)
    if None in buckets:
        buckets.move_to_end(None, last=False)
    return buckets


class ActivationOrchestrator:
    def __init__(
        self,
        api,
        token_manager,
        input_provider,
        role_cache=None,
        retry_policy: RetryPolicy = RetryPolicy(),
        default_duration=(8, 0),
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.api = api
        self.token_manager = token_manager
        self.input_provider = input_provider
        self.role_cache = role_cache
        self.retry_policy = retry_policy
        self.default_duration = default_duration
        self.sleep = sleep
        self.clock = clock

    def activate(self, principal_id: str, roles: List[Role], hours: Optional[int] = None,
                 minutes: Optional[int] = None, flags=None) -> OperationResult:
        run_id = fncNewRunId("activate")
        result = OperationResult(total_count=len(roles))
        if not roles:
            fncPrintMessage("No roles selected for activation.", "warn")
            return result

        # 1. duration
        if hours is None and minutes is None:
            hours, minutes = self.default_duration
        hours, minutes = int(hours or 0), int(minutes or 0)

        # 2. requirements
        requirements = fncAggregateRequirements(roles)
        fncPrintMessage(
            f"[{run_id}] {len(roles)} role(s); justification={requirements.requires_justification} "
            f"ticket={requirements.requires_ticket} mfa={requirements.requires_mfa} "
            f"contexts={requirements.authentication_context_ids or '-'}", "debug")

        # 3. one prompt for the whole batch
        user_input = self.input_provider.collect_activation_input(requirements, roles)
        if user_input is None:
            fncPrintMessage("Activation cancelled. Nothing was submitted.", "info")
            result.cancelled = True
            return result

        problem = self._validate_input(requirements, user_input)
        if problem:
            result.errors.append(problem)
            fncPrintMessage(problem, "error")
            return result

        ticket = None
        if user_input.ticket_number:
            ticket = TicketInfo(user_input.ticket_number.strip(), (user_input.ticket_system or "").strip())

        # 4./5. context buckets, context-less first
        submittable = []
        for role in roles:
            if role.status != RoleStatus.ELIGIBLE:
                result.record(RoleOutcome(role, False, "Only eligible roles can be activated."))
            else:
                submittable.append(role)

        buckets = fncPartitionByContext(submittable)
        try:
            for context_id, bucket in buckets.items():
                if context_id is None:
                    for role in bucket:
                        outcome, _ = self._submit_role(principal_id, role, hours, minutes,
                                                       user_input.justification, ticket, token=None)
                        result.record(outcome)
                else:
                    self._submit_context_bucket(principal_id, context_id, bucket, hours, minutes,
                                                user_input.justification, ticket, result)
        except AuthenticationError:
            fncDropStaleRoles(result, self.role_cache)
            raise

        # 7. finalise
        succeeded = [o.role for o in result.outcomes if o.success and not _policy_of(o.role).requires_approval]
        fncFinalizeBatch(result, "Activated", self.role_cache, principal_id,
                         reflects=lambda fetched: _all_active(fetched, succeeded),
                         retry_policy=self.retry_policy, flags=flags, sleep=self.sleep)
        return result

    @staticmethod
    def _validate_input(requirements: PolicyRequirements, user_input: ActivationInput) -> Optional[str]:
        if requirements.requires_justification and not (user_input.justification or "").strip():
            return "A justification is required by at least one selected role."
        if requirements.requires_ticket and not (user_input.ticket_number or "").strip():
            return "A ticket number is required by at least one selected role."
        return None

    def _submit_context_bucket(self, principal_id: str, context_id: str, bucket: List[Role], hours: int,
                               minutes: int, justification: str, ticket: Optional[TicketInfo],
                               result: OperationResult) -> None:
        try:
            token = self.token_manager.get_token(context_id)
        except AuthContextTokenError as ex:
            fncPrintMessage(f"{ex}. Retrying sign-in per role.", "warn")
            for role in bucket:
                try:
                    role_token = self.token_manager.get_token(context_id)
                except AuthContextTokenError as role_ex:
                    _, message = fncClassifyFailure(role_ex)
                    result.record(RoleOutcome(role, False, message))
                    continue
                outcome, _ = self._submit_role(principal_id, role, hours, minutes, justification, ticket,
                                               token=role_token)
                result.record(outcome)
            return

        refreshed = False
        for role in bucket:
            outcome, code = self._submit_role(principal_id, role, hours, minutes, justification, ticket, token=token)
            if code == ACRS_FAILED and not refreshed:
                # cached claim no longer satisfies the policy; step up once more
                refreshed = True
                try:
                    token = self.token_manager.get_token(context_id, force_refresh=True)
                    outcome, _ = self._submit_role(principal_id, role, hours, minutes, justification, ticket,
                                                   token=token)
                except AuthContextTokenError as ex:
                    _, message = fncClassifyFailure(ex)
                    outcome = RoleOutcome(role, False, message)
            result.record(outcome)

    def _submit_role(self, principal_id: str, role: Role, hours: int, minutes: int, justification: str,
                     ticket: Optional[TicketInfo], token: Optional[str]) -> Tuple[RoleOutcome, Optional[str]]:
        """Submit one role. Returns the outcome and the Graph error code, if any."""
        policy = _policy_of(role)
        duration = fncEffectiveDuration(hours, minutes, policy.max_duration_hours)
        if duration.total_minutes < hours * 60 + minutes:
            fncPrintMessage(f"{role.display_name}: duration capped at {duration.hours}h{duration.minutes:02d}m "
                            f"by policy (max {policy.max_duration_hours}h)", "info")
        if duration.total_minutes == 0:
            return RoleOutcome(role, False, "Activation duration must be greater than zero."), None

        request = ActivationRequest(
            principal_id=principal_id,
            role=role,
            justification=justification,
            effective_duration=duration,
            ticket_info=ticket,
            directory_scope_id=role.directory_scope_id,
        )
        try:
            response = fncSubmitRequest(self.api, role, fncActivationPayload(request, now=self.clock()), token=token)
        except AuthenticationError:
            raise
        except (ActivationRejectedError, GraphApiError, ValueError) as ex:
            code, message = fncClassifyFailure(ex)
            fncPrintMessage(f"{role.display_name}: activation failed ({code or 'error'})", "debug")
            return RoleOutcome(role, False, message), code
        except Exception as ex:  # network and anything unexpected stay per-role
            code, message = fncClassifyFailure(ex)
            return RoleOutcome(role, False, message), code

        status = (response or {}).get("status") or ""
        message = "Pending approval" if status.lower().startswith("pendingapproval") or policy.requires_approval \
            else f"Active for {duration.hours}h{duration.minutes:02d}m"
        fncPrintMessage(f"{role.display_name}: {message}", "success")
        return RoleOutcome(role, True, message, request_id=(response or {}).get("id")), None


def _all_active(fetched, roles: List[Role]) -> bool:
    if fetched is None:
        return False
    active = {(r.type, r.id) for r in fetched.active_roles}
    return all((r.type, r.id) in active for r in roles)
