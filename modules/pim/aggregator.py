# ================================================================
# File     : modules/pim/aggregator.py
# Purpose  : Fan out to role sources, merge, de-duplicate
# Notes    : A failing source is recorded and skipped; siblings are
#            never cancelled. Losing the sign-in is the exception
#            and propagates. Parallel mode uses a small thread pool.
# ================================================================

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Tuple

from core.errors import AuthenticationError, SourceUnavailableError
from core.models import Role
from core.utils import fncPrintMessage

RoleFetch = Callable[[str], Tuple[List[Role], List[Role]]]


@dataclass
class RoleSource:
    name: str
    fetch: RoleFetch


@dataclass
class AggregateResult:
    eligible: List[Role] = field(default_factory=list)
    active: List[Role] = field(default_factory=list)
    failures: List[SourceUnavailableError] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)


# ================================================================
# Function: fncDedupeRoles
# Purpose : Drop repeated instances of the same assignment
# Notes   : First occurrence wins; order is otherwise preserved
# ================================================================
def fncDedupeRoles(roles: Iterable[Role]) -> List[Role]:
    seen = set()
    out: List[Role] = []
    for role in roles:
        if role.identity in seen:
            continue
        seen.add(role.identity)
        out.append(role)
    return out


class RoleAggregator:
    def __init__(self, sources: List[RoleSource], parallel: bool = False, max_workers: int = 3):
        self.sources = list(sources)
        self.parallel = parallel
        self.max_workers = max_workers

    def collect(self, user_id: str,
                on_source_done: Optional[Callable[[str, Optional[Exception]], None]] = None) -> AggregateResult:
        """Run every source; merge what succeeded, keep failures as warnings."""
        results = {}

        def _run(source: RoleSource):
            try:
                return source.fetch(user_id), None
            except AuthenticationError:
                raise
            except Exception as ex:  # any source may fail without sinking the others
                return None, ex

        def _done(source: RoleSource, value, error):
            results[source.name] = (value, error)
            if error:
                fncPrintMessage(f"{source.name} unavailable: {error}", "warn")
            if on_source_done:
                on_source_done(source.name, error)

        if self.parallel and len(self.sources) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = {executor.submit(_run, s): s for s in self.sources}
                for future in as_completed(futures):
                    value, error = future.result()
                    _done(futures[future], value, error)
        else:
            for source in self.sources:
                value, error = _run(source)
                _done(source, value, error)

        out = AggregateResult()
        # merge in declaration order so output does not depend on thread timing
        for source in self.sources:
            value, error = results[source.name]
            if error is not None:
                out.failures.append(SourceUnavailableError(source.name, error))
                continue
            eligible, active = value
            out.eligible.extend(eligible)
            out.active.extend(active)
            out.succeeded.append(source.name)

        out.eligible = fncDedupeRoles(out.eligible)
        out.active = fncDedupeRoles(out.active)
        return out
