# ================================================================
# File     : modules/pim/attribution.py
# Purpose  : Attribute active directory roles to the PIM group that
#            grants them ("granted via Group X")
# Notes    : Best-effort heuristic on ambiguous Graph data. Display
#            metadata only, never used for authorisation. Pure and
#            deterministic so it can be tested without Graph.
#
#            Tie-break order for an inherited instance:
#              1. unused group with an exact expiration match
#              2. unused group
#              3. least-used group with an exact expiration match
#              4. least-used group
#              then active before eligible, display name, group id.
#            Eligible-only groups never provide an active path.
# ================================================================

from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from core.models import MemberType, Role, RoleStatus, RoleType
from core.utils import fncPrintMessage

# Graph marks self-activated PIM assignments this way; group-derived
# instances are never "Activated" by the user directly.
DIRECT_SIGNAL_ASSIGNMENT_TYPE = "activated"


@dataclass(frozen=True)
class ProviderCandidate:
    group_id: str
    group_name: str
    is_active: bool
    end_date_time: Optional[datetime]
    directory_scope_id: str = "/"


def _same_end(a: Optional[datetime], b: Optional[datetime]) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return a.replace(microsecond=0) == b.replace(microsecond=0)


def _end_sort(role: Role):
    end = role.end_date_time
    return (end is None, end.timestamp() if end else 0.0, role.schedule_id or "")


# ================================================================
# Function: fncBuildProviderIndex
# Purpose : roleDefinitionId -> groups whose membership grants it
# Notes   : A group seen both eligible and active counts as active
# ================================================================
def fncBuildProviderIndex(group_roles: Iterable[Role]) -> Dict[str, List[ProviderCandidate]]:
    merged: Dict[tuple, ProviderCandidate] = {}
    for g in group_roles:
        if g.type != RoleType.GROUP:
            continue
        for pr in g.provided_roles:
            key = (pr.role_definition_id, g.id, pr.directory_scope_id)
            cand = ProviderCandidate(
                group_id=g.id,
                group_name=g.display_name,
                is_active=g.status == RoleStatus.ACTIVE,
                end_date_time=g.end_date_time,
                directory_scope_id=pr.directory_scope_id or "/",
            )
            existing = merged.get(key)
            if existing is None or (cand.is_active and not existing.is_active):
                merged[key] = cand

    index: Dict[str, List[ProviderCandidate]] = {}
    for (role_id, _, _), cand in merged.items():
        index.setdefault(role_id, []).append(cand)
    for cands in index.values():
        cands.sort(key=lambda c: (not c.is_active, c.group_name.lower(), c.group_id))
    return index


def _active_candidates(role: Role, candidates: List[ProviderCandidate]) -> List[ProviderCandidate]:
    scope = role.directory_scope_id or "/"
    return [c for c in candidates if c.is_active and c.directory_scope_id == scope]


def _has_direct_signal(role: Role) -> bool:
    return str(role.assignment_type or "").lower() == DIRECT_SIGNAL_ASSIGNMENT_TYPE


def fncIsInherited(role: Role, active_candidates: List[ProviderCandidate]) -> bool:
    if role.member_type == MemberType.INHERITED:
        return True
    if role.end_date_time is not None:
        return any(c.end_date_time is not None and _same_end(c.end_date_time, role.end_date_time)
                   for c in active_candidates)
    # both permanent and nothing says the user holds it directly
    return (not _has_direct_signal(role)) and any(c.end_date_time is None for c in active_candidates)


def _rank(role: Role, cand: ProviderCandidate, usage: Counter):
    used = usage[cand.group_id]
    return (
        used > 0,
        not _same_end(cand.end_date_time, role.end_date_time),
        used,
        not cand.is_active,
        cand.group_name.lower(),
        cand.group_id,
    )


def _attribute(role: Role, cand: ProviderCandidate) -> Role:
    end = role.end_date_time if role.end_date_time is not None else cand.end_date_time
    return replace(
        role,
        member_type=MemberType.INHERITED,
        provided_by_group_id=cand.group_id,
        provided_by_group_name=cand.group_name,
        end_date_time=end,
    )


# ================================================================
# Function: fncAttributeGroupRoles
# Purpose : Re-label active directory roles granted through groups
# Notes   : Returns a new list in the input order; other role types
#           pass through untouched
# ================================================================
def fncAttributeGroupRoles(active_roles: List[Role], group_roles: Iterable[Role]) -> List[Role]:
    index = fncBuildProviderIndex(group_roles)
    out = list(active_roles)
    if not index:
        return out

    by_role: Dict[str, List[int]] = {}
    for i, role in enumerate(out):
        if role.type == RoleType.DIRECTORY_ROLE and role.status == RoleStatus.ACTIVE:
            by_role.setdefault(role.id, []).append(i)

    for role_id, positions in by_role.items():
        candidates = index.get(role_id) or []
        if not candidates:
            continue
        positions = sorted(positions, key=lambda i: _end_sort(out[i]))
        cands_for = {i: _active_candidates(out[i], candidates) for i in positions}

        inherited = [i for i in positions if fncIsInherited(out[i], cands_for[i])]
        direct = [i for i in positions if i not in inherited]
        usage: Counter = Counter()
        pending: List[int] = []

        # pass 1: exact expiration matches claim their group first
        for i in inherited:
            exact = [c for c in cands_for[i]
                     if usage[c.group_id] == 0 and _same_end(c.end_date_time, out[i].end_date_time)]
            if exact:
                usage[exact[0].group_id] += 1
                out[i] = _attribute(out[i], exact[0])
            else:
                pending.append(i)

        # pass 2: everything else takes the best remaining candidate
        for i in pending:
            cands = cands_for[i]
            if not cands:
                # inherited, but no group currently provides an active path
                out[i] = replace(out[i], member_type=MemberType.INHERITED)
                continue
            best = min(cands, key=lambda c: _rank(out[i], c, usage))
            usage[best.group_id] += 1
            out[i] = _attribute(out[i], best)

        # lone direct instance with a single active provider
        if len(direct) == 1 and not inherited:
            i = direct[0]
            cands = cands_for[i]
            if len(cands) == 1:
                cand, role = cands[0], out[i]
                if (role.end_date_time is not None and cand.end_date_time is not None
                        and not _same_end(role.end_date_time, cand.end_date_time)):
                    fncPrintMessage(f"{role.display_name}: direct and group paths both grant it; keeping direct.",
                                    "debug")
                else:
                    out[i] = replace(role, provided_by_group_id=cand.group_id,
                                     provided_by_group_name=cand.group_name)

    return out
