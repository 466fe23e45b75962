# ================================================================
# File     : modules/pim/policy_cache.py
# Purpose  : Policy & authentication-context cache with batch resolve
# Notes    : Two tiers: a per-call memo keyed by policy id and the
#            process-lifetime dictionaries keyed by "<type>:<id>".
#            Policies live until clear(); staleness is accepted to
#            avoid one Graph round-trip per eligible role.
# ================================================================

import threading
from typing import Dict, Iterable, List, Optional

import requests

from core.errors import GraphApiError, PolicyResolutionError
from core.models import PolicyDescriptor, RoleKey, RoleType
from core.utils import fncPrintMessage
from handlers.graph.graph_helpers import fncOrFilters, fncQuote
from modules.pim.policy_normalizer import (
    fncNormalizePolicy,
    fncRulesFromDirectoryPolicy,
    fncRulesFromGroupAssignment,
)

# Failures we degrade on; authentication loss is not one of them
_RECOVERABLE = (GraphApiError, requests.RequestException)

_DIRECTORY_SCOPE = "scopeId eq '/' and scopeType eq 'DirectoryRole'"


class PolicyContextCache:
    def __init__(self, api):
        self.api = api
        self._policies: Dict[str, PolicyDescriptor] = {}
        self._contexts: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()
        # failures from the most recent resolve_batch, surfaced as warnings
        self.last_failures: List[PolicyResolutionError] = []

    # ---------- cache surface ----------

    def clear(self) -> None:
        with self._lock:
            self._policies.clear()
            self._contexts.clear()

    def get(self, key: RoleKey) -> Optional[PolicyDescriptor]:
        with self._lock:
            return self._policies.get(key.cache_key)

    def policies(self) -> Dict[str, PolicyDescriptor]:
        with self._lock:
            return dict(self._policies)

    def contexts(self) -> Dict[str, Dict[str, str]]:
        with self._lock:
            return {k: dict(v) for k, v in self._contexts.items()}

    # ---------- batch resolution ----------

    def resolve_batch(self, keys: Iterable[RoleKey]) -> Dict[RoleKey, PolicyDescriptor]:
        """
        Resolve policies for every key, touching Graph only for cache misses.
        Directory roles share one OR'd assignment query per chunk and one
        fetch per distinct policy id; groups are queried one by one.
        """
        keys = list(dict.fromkeys(keys))
        self.last_failures = []
        result: Dict[RoleKey, PolicyDescriptor] = {}
        uncached: List[RoleKey] = []
        with self._lock:
            for key in keys:
                hit = self._policies.get(key.cache_key)
                if hit is not None:
                    result[key] = hit
                else:
                    uncached.append(key)

        if not uncached:
            fncPrintMessage(f"Policies: {len(result)} served from cache", "debug")
            return result

        fncPrintMessage(f"Policies: {len(result)} cached, {len(uncached)} to resolve", "debug")
        fresh: Dict[RoleKey, PolicyDescriptor] = {}

        directory_ids = [k.id for k in uncached if k.type == RoleType.DIRECTORY_ROLE]
        for role_id, desc in self._resolve_directory(directory_ids).items():
            fresh[RoleKey(RoleType.DIRECTORY_ROLE, role_id)] = desc

        group_ids = [k.id for k in uncached if k.type == RoleType.GROUP]
        for group_id in group_ids:
            fresh[RoleKey(RoleType.GROUP, group_id)] = self._resolve_group(group_id)

        for key in uncached:
            # Azure resource roles have no policy source yet
            fresh.setdefault(key, PolicyDescriptor())

        self._enrich_contexts(list(fresh.values()) + list(result.values()))

        with self._lock:
            for key, desc in fresh.items():
                self._policies[key.cache_key] = desc
        result.update(fresh)
        return result

    def _degrade(self, what: str, ex: Exception) -> PolicyDescriptor:
        failure = PolicyResolutionError(f"{what}: {ex}")
        self.last_failures.append(failure)
        fncPrintMessage(f"{failure}; using defaults.", "warn")
        return PolicyDescriptor()

    # ---------- directory roles ----------

    def _resolve_directory(self, role_ids: List[str]) -> Dict[str, PolicyDescriptor]:
        if not role_ids:
            return {}
        try:
            assignments = []
            for clause in fncOrFilters("roleDefinitionId", role_ids):
                assignments.extend(self.api.get_policy_assignments(f"{_DIRECTORY_SCOPE} and {clause}"))
        except _RECOVERABLE as ex:
            fncPrintMessage(f"Batch policy assignment query failed ({ex}); falling back to per-role queries.", "warn")
            return self._resolve_directory_individually(role_ids)

        policy_by_role: Dict[str, str] = {}
        for a in assignments:
            role_id, policy_id = a.get("roleDefinitionId"), a.get("policyId")
            if role_id and policy_id:
                policy_by_role.setdefault(role_id, policy_id)

        memo: Dict[str, PolicyDescriptor] = {}
        out: Dict[str, PolicyDescriptor] = {}
        for role_id in role_ids:
            policy_id = policy_by_role.get(role_id)
            if not policy_id:
                fncPrintMessage(f"No policy assignment for role {role_id}; using defaults.", "debug")
                out[role_id] = PolicyDescriptor()
                continue
            out[role_id] = self._directory_policy(policy_id, memo)
        return out

    def _resolve_directory_individually(self, role_ids: List[str]) -> Dict[str, PolicyDescriptor]:
        memo: Dict[str, PolicyDescriptor] = {}
        out: Dict[str, PolicyDescriptor] = {}
        for role_id in role_ids:
            try:
                rows = self.api.get_policy_assignments(
                    f"{_DIRECTORY_SCOPE} and roleDefinitionId eq {fncQuote(role_id)}")
            except _RECOVERABLE as ex:
                out[role_id] = self._degrade(f"Policy lookup for role {role_id} failed", ex)
                continue
            policy_id = next((r.get("policyId") for r in rows if r.get("policyId")), None)
            out[role_id] = self._directory_policy(policy_id, memo) if policy_id else PolicyDescriptor()
        return out

    def _directory_policy(self, policy_id: str, memo: Dict[str, PolicyDescriptor]) -> PolicyDescriptor:
        if policy_id in memo:
            return memo[policy_id]
        try:
            desc = fncNormalizePolicy(fncRulesFromDirectoryPolicy(self.api.get_policy(policy_id)))
        except _RECOVERABLE as ex:
            desc = self._degrade(f"Policy {policy_id} unavailable", ex)
        memo[policy_id] = desc
        return desc

    # ---------- groups ----------

    def _resolve_group(self, group_id: str) -> PolicyDescriptor:
        try:
            rows = self.api.get_group_policy_assignments(group_id)
        except _RECOVERABLE as ex:
            return self._degrade(f"Policy lookup for group {group_id} failed", ex)
        if not rows:
            return PolicyDescriptor()

        # member assignment preferred over owner
        rows = sorted(rows, key=lambda r: 0 if str(r.get("roleDefinitionId") or "").lower() == "member" else 1)
        chosen = rows[0]
        rules = fncRulesFromGroupAssignment(chosen)
        if not rules and chosen.get("policyId"):
            try:
                rules = fncRulesFromDirectoryPolicy(self.api.get_policy(chosen["policyId"]))
            except _RECOVERABLE as ex:
                return self._degrade(f"Group policy {chosen['policyId']} unavailable", ex)
        return fncNormalizePolicy(rules)

    # ---------- authentication contexts ----------

    def _enrich_contexts(self, descriptors: List[PolicyDescriptor]) -> None:
        with self._lock:
            wanted = [d.authentication_context_id for d in descriptors
                      if d.authentication_context_id and d.authentication_context_id not in self._contexts]
        for context_id in dict.fromkeys(wanted):
            try:
                info = self.api.get_authentication_context(context_id) or {}
                entry = {
                    "displayName": info.get("displayName") or context_id,
                    "description": info.get("description") or "",
                }
            except _RECOVERABLE as ex:
                fncPrintMessage(f"Authentication context {context_id} lookup failed ({ex}).", "warn")
                entry = {"displayName": context_id, "description": ""}
            with self._lock:
                self._contexts[context_id] = entry

        with self._lock:
            for d in descriptors:
                entry = self._contexts.get(d.authentication_context_id or "")
                if entry:
                    d.authentication_context_display_name = entry["displayName"]
                    d.authentication_context_description = entry["description"]
