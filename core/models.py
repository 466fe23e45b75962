# ================================================================
# File     : models.py
# Purpose  : Fixed record types shared by every PimPoodle component
# Notes    : Roles are rebuilt on every fetch and never mutated in
#            place; use dataclasses.replace to derive new ones
# ================================================================

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

DEFAULT_MAX_DURATION_HOURS = 8


class RoleType(str, Enum):
    DIRECTORY_ROLE = "DirectoryRole"
    GROUP = "Group"
    AZURE_RESOURCE = "AzureResource"


class RoleStatus(str, Enum):
    ELIGIBLE = "Eligible"
    ACTIVE = "Active"


class MemberType(str, Enum):
    DIRECT = "Direct"
    INHERITED = "Inherited"
    MEMBER = "Member"
    OWNER = "Owner"


@dataclass(frozen=True)
class RoleKey:
    type: RoleType
    id: str

    @property
    def cache_key(self) -> str:
        return f"{self.type.value}:{self.id}"


@dataclass
class PolicyDescriptor:
    max_duration_hours: int = DEFAULT_MAX_DURATION_HOURS
    requires_justification: bool = False
    requires_ticket: bool = False
    requires_mfa: bool = False
    requires_approval: bool = False
    requires_authentication_context: bool = False
    authentication_context_id: Optional[str] = None
    authentication_context_display_name: Optional[str] = None
    authentication_context_description: Optional[str] = None

    def __post_init__(self):
        if self.requires_authentication_context and not self.authentication_context_id:
            raise ValueError("requires_authentication_context needs an authentication_context_id")


@dataclass(frozen=True)
class ProvidedRole:
    role_definition_id: str
    display_name: str
    directory_scope_id: str = "/"
    scope_display: str = "Directory"


@dataclass
class Role:
    id: str
    type: RoleType
    display_name: str
    status: RoleStatus
    member_type: MemberType = MemberType.DIRECT
    resource_name: str = ""
    scope_display: str = "Directory"
    directory_scope_id: str = "/"
    start_date_time: Optional[datetime] = None
    end_date_time: Optional[datetime] = None
    schedule_id: Optional[str] = None
    assignment_type: Optional[str] = None
    provided_roles: List[ProvidedRole] = field(default_factory=list)
    policy: Optional[PolicyDescriptor] = None
    provided_by_group_id: Optional[str] = None
    provided_by_group_name: Optional[str] = None

    @property
    def key(self) -> RoleKey:
        return RoleKey(self.type, self.id)

    @property
    def is_permanent(self) -> bool:
        return self.end_date_time is None

    @property
    def identity(self) -> Tuple:
        """Fields that make two fetched instances the same assignment."""
        return (self.type, self.id, self.status, self.directory_scope_id, self.member_type,
                self.schedule_id, self.end_date_time)


@dataclass
class AuthenticationContextToken:
    context_id: str
    access_token: str
    expiry_time: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expiry_time


@dataclass(frozen=True)
class EffectiveDuration:
    hours: int
    minutes: int

    @property
    def total_minutes(self) -> int:
        return self.hours * 60 + self.minutes

    @classmethod
    def from_minutes(cls, total: int) -> "EffectiveDuration":
        total = max(0, int(total))
        return cls(hours=total // 60, minutes=total % 60)

    def to_iso(self) -> str:
        return f"PT{self.hours}H{self.minutes}M"


@dataclass(frozen=True)
class TicketInfo:
    number: str
    system: str = ""


@dataclass
class ActivationRequest:
    principal_id: str
    role: Role
    justification: str
    effective_duration: EffectiveDuration
    ticket_info: Optional[TicketInfo] = None
    directory_scope_id: Optional[str] = None


@dataclass
class BatchFetchResult:
    eligible_roles: List[Role] = field(default_factory=list)
    active_roles: List[Role] = field(default_factory=list)
    policy_cache: Dict[str, PolicyDescriptor] = field(default_factory=dict)
    auth_context_cache: Dict[str, Dict[str, str]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    fetched_at: Optional[datetime] = None


@dataclass
class RoleOutcome:
    role: Role
    success: bool
    message: str = ""
    request_id: Optional[str] = None


@dataclass
class OperationResult:
    success_count: int = 0
    total_count: int = 0
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False
    outcomes: List[RoleOutcome] = field(default_factory=list)

    def record(self, outcome: RoleOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.success:
            self.success_count += 1
        else:
            self.errors.append(f"{outcome.role.display_name}: {outcome.message}")
