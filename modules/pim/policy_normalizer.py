# ================================================================
# File     : modules/pim/policy_normalizer.py
# Purpose  : Turn a PIM policy rule list into one PolicyDescriptor
# Notes    : Two schema pre-mappers (directory policy JSON, group
#            assignment expansion in SDK casing) feed one interpreter
#            for the four rule kinds. Pure functions, no I/O.
# ================================================================

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from core.models import DEFAULT_MAX_DURATION_HOURS, PolicyDescriptor
from core.utils import fncPrintMessage

EXPIRATION = "Expiration"
ENABLEMENT = "Enablement"
APPROVAL = "Approval"
AUTH_CONTEXT = "AuthenticationContext"

_ODATA_KINDS = {
    "unifiedrolemanagementpolicyexpirationrule": EXPIRATION,
    "unifiedrolemanagementpolicyenablementrule": ENABLEMENT,
    "unifiedrolemanagementpolicyapprovalrule": APPROVAL,
    "unifiedrolemanagementpolicyauthenticationcontextrule": AUTH_CONTEXT,
}

_DURATION_RE = re.compile(
    r"^P(?:(?P<d>\d+)D)?(?:T(?:(?P<h>\d+)H)?(?:(?P<m>\d+)M)?(?:(?P<s>\d+(?:\.\d+)?)S)?)?$",
    re.IGNORECASE,
)


@dataclass
class RawPolicyRule:
    kind: str
    caller: Optional[str] = None
    level: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def targets_end_user_activation(self) -> bool:
        # Admin-side and eligibility rules (e.g. Expiration_Admin_Eligibility)
        # must not shape what an end user may activate.
        if self.caller and self.caller.lower() != "enduser":
            return False
        if self.level and self.level.lower() != "assignment":
            return False
        return True


# ---------- schema helpers ----------

def _ci(obj: Dict[str, Any], *names: str, default=None):
    """Case-insensitive key lookup over a dict (SDK output is PascalCase)."""
    if not isinstance(obj, dict):
        return default
    lowered = {str(k).lower(): v for k, v in obj.items()}
    for n in names:
        if n.lower() in lowered:
            return lowered[n.lower()]
    return default


def _flatten_additional(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Fold SDK 'AdditionalProperties' into the object itself."""
    if not isinstance(obj, dict):
        return {}
    extra = _ci(obj, "AdditionalProperties") or {}
    merged = {k: v for k, v in obj.items() if str(k).lower() != "additionalproperties"}
    if isinstance(extra, dict):
        for k, v in extra.items():
            merged.setdefault(k, v)
    return merged


def _rule_kind(rule: Dict[str, Any]) -> str:
    odata = str(_ci(rule, "@odata.type", "OdataType", "odataType", default="") or "")
    kind = _ODATA_KINDS.get(odata.split(".")[-1].lower())
    if kind:
        return kind
    rule_id = str(_ci(rule, "id", default="") or "")
    return rule_id.split("_")[0] if "_" in rule_id else ""


def _rule_target(rule: Dict[str, Any]):
    target = _flatten_additional(_ci(rule, "target") or {})
    caller = _ci(target, "caller")
    level = _ci(target, "level")
    if not caller or not level:
        # Rule ids carry the same information: Kind_Caller_Level
        parts = str(_ci(rule, "id", default="") or "").split("_")
        if len(parts) == 3:
            caller = caller or parts[1]
            level = level or parts[2]
    return caller, level


def _map_rule(rule: Dict[str, Any]) -> RawPolicyRule:
    rule = _flatten_additional(rule)
    caller, level = _rule_target(rule)
    setting = _flatten_additional(_ci(rule, "setting") or {})
    payload = {
        "maximumDuration": _ci(rule, "maximumDuration"),
        "enabledRules": list(_ci(rule, "enabledRules") or []),
        "isApprovalRequired": _ci(setting, "isApprovalRequired"),
        "isEnabled": _ci(rule, "isEnabled"),
        "claimValue": _ci(rule, "claimValue"),
    }
    return RawPolicyRule(kind=_rule_kind(rule), caller=caller, level=level, payload=payload)


# ================================================================
# Function: fncRulesFromDirectoryPolicy
# Purpose : Pre-map a roleManagementPolicy fetched with $expand=rules
# ================================================================
def fncRulesFromDirectoryPolicy(policy: Dict[str, Any]) -> List[RawPolicyRule]:
    return [_map_rule(r) for r in (policy or {}).get("rules") or [] if isinstance(r, dict)]


# ================================================================
# Function: fncRulesFromGroupAssignment
# Purpose : Pre-map a group policy assignment with policy($expand=rules)
# Notes   : Tolerates PascalCase / AdditionalProperties (SDK output)
# ================================================================
def fncRulesFromGroupAssignment(assignment: Dict[str, Any]) -> List[RawPolicyRule]:
    assignment = _flatten_additional(assignment or {})
    policy = _flatten_additional(_ci(assignment, "policy") or {})
    rules = _ci(policy, "rules") or []
    return [_map_rule(r) for r in rules if isinstance(r, dict)]


# ================================================================
# Function: fncParseDurationHours
# Purpose : ISO-8601 duration -> whole hours (truncated)
# Notes   : Returns None when unparseable
# ================================================================
def fncParseDurationHours(value: Any) -> Optional[int]:
    if not isinstance(value, str):
        return None
    m = _DURATION_RE.match(value.strip())
    if not m or value.strip().upper() in ("P", "PT") or value.strip().upper().endswith("T"):
        return None
    days = int(m.group("d") or 0)
    hours = int(m.group("h") or 0)
    minutes = int(m.group("m") or 0)
    seconds = float(m.group("s") or 0)
    total_seconds = days * 86400 + hours * 3600 + minutes * 60 + seconds
    return int(total_seconds // 3600)


# ---------- rule interpretation ----------

def _apply_expiration(payload: Dict[str, Any], out: Dict[str, Any]) -> None:
    hours = fncParseDurationHours(payload.get("maximumDuration"))
    if hours is None:
        if payload.get("maximumDuration"):
            fncPrintMessage(f"Unparseable maximumDuration '{payload.get('maximumDuration')}'; "
                            f"keeping {DEFAULT_MAX_DURATION_HOURS}h", "debug")
        return
    out["max_duration_hours"] = hours


def _apply_enablement(payload: Dict[str, Any], out: Dict[str, Any]) -> None:
    enabled = {str(r) for r in payload.get("enabledRules") or []}
    if "Justification" in enabled:
        out["requires_justification"] = True
    if "Ticketing" in enabled:
        out["requires_ticket"] = True
    if "MultiFactorAuthentication" in enabled:
        out["requires_mfa"] = True
    if "AuthenticationContext" in enabled:
        out["requires_authentication_context"] = True


def _apply_approval(payload: Dict[str, Any], out: Dict[str, Any]) -> None:
    if payload.get("isApprovalRequired"):
        out["requires_approval"] = True


def _apply_auth_context(payload: Dict[str, Any], out: Dict[str, Any]) -> None:
    claim = payload.get("claimValue")
    if payload.get("isEnabled") and claim:
        out["requires_authentication_context"] = True
        out["authentication_context_id"] = str(claim)


_HANDLERS = {
    EXPIRATION: _apply_expiration,
    ENABLEMENT: _apply_enablement,
    APPROVAL: _apply_approval,
    AUTH_CONTEXT: _apply_auth_context,
}


# ================================================================
# Function: fncNormalizePolicy
# Purpose : Interpret the four rule kinds into a PolicyDescriptor
# Notes   : Unknown kinds ignored; one bad rule never sinks the rest
# ================================================================
def fncNormalizePolicy(rules: Iterable[RawPolicyRule]) -> PolicyDescriptor:
    out: Dict[str, Any] = {"max_duration_hours": DEFAULT_MAX_DURATION_HOURS}
    for rule in rules or []:
        if not rule.targets_end_user_activation:
            continue
        handler = _HANDLERS.get(rule.kind)
        if handler:
            handler(rule.payload or {}, out)

    if out.get("requires_authentication_context") and not out.get("authentication_context_id"):
        # Enablement names the control but no context rule supplies a claim
        fncPrintMessage("AuthenticationContext enabled without a claim value; ignoring.", "debug")
        out["requires_authentication_context"] = False
    return PolicyDescriptor(**out)
