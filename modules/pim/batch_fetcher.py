# ================================================================
# File     : modules/pim/batch_fetcher.py
# Purpose  : One call that fetches everything a role screen needs
# Notes    : directory roles -> groups -> (Azure stub) -> policies ->
#            attach policies -> group attribution. Source failures
#            become warnings unless every source fails.
# ================================================================

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from core.errors import RoleSourceError
from core.models import BatchFetchResult, Role, RoleType
from core.utils import fncPrintMessage
from modules.pim.aggregator import RoleAggregator, RoleSource
from modules.pim.attribution import fncAttributeGroupRoles

ProgressSink = Callable[[str, int], None]


@dataclass(frozen=True)
class FetchFlags:
    include_directory_roles: bool = True
    include_groups: bool = True
    include_azure_resources: bool = False
    include_provided_roles: bool = True
    parallel: bool = False


def _reporter(progress: Optional[ProgressSink]) -> ProgressSink:
    def report(message: str, percent: int) -> None:
        fncPrintMessage(f"[{percent:3d}%] {message}", "debug")
        if progress:
            progress(message, percent)
    return report


def _fetch_azure_resources(user_id: str) -> Tuple[List[Role], List[Role]]:
    # Subscription-scoped Azure roles are not supported yet
    fncPrintMessage("Azure resource roles are not supported yet; skipping.", "debug")
    return [], []


class BatchRoleFetcher:
    def __init__(self, directory_adapter, group_adapter, policy_cache,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.directory_adapter = directory_adapter
        self.group_adapter = group_adapter
        self.policy_cache = policy_cache
        self.clock = clock

    def _sources(self, flags: FetchFlags) -> List[RoleSource]:
        sources = []
        if flags.include_directory_roles:
            sources.append(RoleSource(self.directory_adapter.name, self.directory_adapter.fetch_roles))
        if flags.include_groups:
            sources.append(RoleSource(
                self.group_adapter.name,
                lambda uid: self.group_adapter.fetch_roles(uid, include_provided_roles=flags.include_provided_roles),
            ))
        if flags.include_azure_resources:
            sources.append(RoleSource("Azure resources", _fetch_azure_resources))
        return sources

    def fetch_all(self, user_id: str, flags: Optional[FetchFlags] = None,
                  progress: Optional[ProgressSink] = None) -> BatchFetchResult:
        flags = flags or FetchFlags()
        report = _reporter(progress)
        report("Discovering roles…", 0)

        sources = self._sources(flags)
        if not sources:
            report("Nothing to fetch", 100)
            return BatchFetchResult(fetched_at=self.clock())

        completed = []

        def on_source_done(name: str, error: Optional[Exception]) -> None:
            completed.append(name)
            state = "unavailable" if error else "loaded"
            report(f"{name} {state}", 5 + int(55 * len(completed) / len(sources)))

        agg = RoleAggregator(sources, parallel=flags.parallel).collect(user_id, on_source_done)
        if not agg.succeeded:
            raise RoleSourceError(agg.failures)

        report("Resolving activation policies…", 65)
        keys = list(dict.fromkeys(r.key for r in agg.eligible))
        policies = self.policy_cache.resolve_batch(keys)

        eligible = [replace(r, policy=policies.get(r.key)) for r in agg.eligible]
        active = [replace(r, policy=policies.get(r.key) or self.policy_cache.get(r.key)) for r in agg.active]

        if flags.include_groups:
            report("Attributing group-provided roles…", 85)
            group_roles = [r for r in eligible + active if r.type == RoleType.GROUP]
            active = fncAttributeGroupRoles(active, group_roles)

        result = BatchFetchResult(
            eligible_roles=eligible,
            active_roles=active,
            policy_cache=self.policy_cache.policies(),
            auth_context_cache=self.policy_cache.contexts(),
            warnings=[str(f) for f in agg.failures + self.policy_cache.last_failures],
            fetched_at=self.clock(),
        )
        report(f"Found {len(eligible)} eligible and {len(active)} active roles", 100)
        return result
