# ================================================================
# File     : modules/pim/console.py
# Purpose  : Console side of the role workflow: role tables and
#            the prompts activation/deactivation need
# Notes    : Values passed on the command line win; the console
#            only asks for what is still missing.
# ================================================================

from typing import Iterable, List, Optional

from core.models import BatchFetchResult, MemberType, Role
from core.utils import fncPrintMessage, fncPromptYesNo, fncToTable
from modules.pim.activation import ActivationInput, PolicyRequirements

ROLE_HEADERS = ["Role", "Type", "Scope", "Membership", "Expires", "Requires", "Max"]


def _requires(role: Role) -> str:
    p = role.policy
    if p is None:
        return "?"
    flags = []
    if p.requires_justification:
        flags.append("justification")
    if p.requires_ticket:
        flags.append("ticket")
    if p.requires_mfa:
        flags.append("MFA")
    if p.requires_approval:
        flags.append("approval")
    if p.requires_authentication_context:
        flags.append(f"context {p.authentication_context_display_name or p.authentication_context_id}")
    return ", ".join(flags) or "-"


def _membership(role: Role) -> str:
    if role.member_type == MemberType.INHERITED and role.provided_by_group_name:
        return f"via {role.provided_by_group_name}"
    return role.member_type.value


# ================================================================
# Function: fncRoleRows
# Purpose : Flatten roles into dict rows for tables and exports
# ================================================================
def fncRoleRows(roles: Iterable[Role]) -> List[dict]:
    rows = []
    for r in roles:
        rows.append({
            "Role": r.display_name,
            "Type": r.type.value,
            "Scope": r.scope_display,
            "Membership": _membership(r),
            "Expires": r.end_date_time.strftime("%Y-%m-%d %H:%M") if r.end_date_time else "Permanent",
            "Requires": _requires(r),
            "Max": f"{r.policy.max_duration_hours}h" if r.policy else "",
            "Id": r.id,
            "Status": r.status.value,
        })
    return rows


# ================================================================
# Function: fncPrintRoleTables
# Purpose : Print eligible and active roles plus fetch warnings
# ================================================================
def fncPrintRoleTables(result: BatchFetchResult) -> None:
    for warning in result.warnings:
        fncPrintMessage(f"Partial results: {warning}", "warn")

    fncPrintMessage(f"Eligible roles ({len(result.eligible_roles)})", "info")
    print(fncToTable(fncRoleRows(result.eligible_roles), headers=ROLE_HEADERS))
    fncPrintMessage(f"Active roles ({len(result.active_roles)})", "info")
    print(fncToTable(fncRoleRows(result.active_roles), headers=ROLE_HEADERS))


# ================================================================
# Function: fncSelectRoles
# Purpose : Pick roles by display name or id (case-insensitive)
# Notes   : Unknown selectors are reported, not fatal
# ================================================================
def fncSelectRoles(roles: List[Role], selectors: Iterable[str]) -> List[Role]:
    picked: List[Role] = []
    for sel in selectors:
        needle = sel.strip().lower()
        if not needle:
            continue
        matches = [r for r in roles if r.id.lower() == needle or r.display_name.lower() == needle]
        if not matches:
            fncPrintMessage(f"No matching role for '{sel}'", "warn")
        for m in matches:
            if m not in picked:
                picked.append(m)
    return picked


class ConsoleInputProvider:
    def __init__(self, justification: Optional[str] = None, ticket_number: Optional[str] = None,
                 ticket_system: Optional[str] = None, assume_yes: bool = False, reader=input):
        self.justification = justification
        self.ticket_number = ticket_number
        self.ticket_system = ticket_system
        self.assume_yes = assume_yes
        self.reader = reader

    def _ask(self, prompt: str) -> Optional[str]:
        try:
            return self.reader(prompt).strip()
        except (EOFError, KeyboardInterrupt):
            return None

    def collect_activation_input(self, requirements: PolicyRequirements, roles: List[Role]) -> Optional[ActivationInput]:
        """Returns None when the user backs out."""
        if requirements.requires_approval:
            fncPrintMessage("At least one role needs approval; it will stay pending until approved.", "warn")
        if requirements.authentication_context_ids:
            fncPrintMessage("Extra sign-in required for: " + ", ".join(requirements.authentication_context_ids),
                            "info")

        justification = self.justification
        if justification is None:
            label = "Justification" + ("" if requirements.requires_justification else " (optional)")
            justification = self._ask(f"{label}: ")
            if justification is None:
                return None

        ticket_number, ticket_system = self.ticket_number or "", self.ticket_system or ""
        if requirements.requires_ticket and not ticket_number:
            answer = self._ask("Ticket number: ")
            if answer is None:
                return None
            ticket_number = answer
            if not ticket_system:
                answer = self._ask("Ticket system: ")
                if answer is None:
                    return None
                ticket_system = answer

        return ActivationInput(justification=justification, ticket_number=ticket_number, ticket_system=ticket_system)

    def confirm_deactivation(self, roles: List[Role]) -> bool:
        print(fncToTable(fncRoleRows(roles), headers=["Role", "Type", "Scope", "Expires"]))
        if self.assume_yes:
            return True
        try:
            return fncPromptYesNo(f"Deactivate {len(roles)} role(s)?")
        except (EOFError, KeyboardInterrupt):
            return False
