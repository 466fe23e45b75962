# ================================================================
# File     : modules/pim/session.py
# Purpose  : Wire one signed-in account to every cache and
#            orchestrator it needs
# Notes    : All caches hang off the session instead of module
#            globals, so switching account is a single clear().
# ================================================================

from typing import Optional

from core.config import fncGetSection
from core.models import BatchFetchResult, OperationResult
from core.utils import fncPrintMessage
from handlers.graph.pim_api import PimGraphApi
from modules.pim.activation import ActivationOrchestrator
from modules.pim.auth_context import AuthContextTokenManager
from modules.pim.batch_fetcher import BatchRoleFetcher, FetchFlags, ProgressSink
from modules.pim.deactivation import DeactivationOrchestrator
from modules.pim.directory_roles import DirectoryRoleAdapter
from modules.pim.group_roles import GroupRoleAdapter
from modules.pim.policy_cache import PolicyContextCache
from modules.pim.role_cache import RetryPolicy, RoleCache


# ================================================================
# Function: fncFetchFlagsFromConfig
# Purpose : Build FetchFlags from the "fetch" config block
# ================================================================
def fncFetchFlagsFromConfig(cfg: dict) -> FetchFlags:
    block = (cfg or {}).get("fetch") or {}
    return FetchFlags(
        include_groups=bool(block.get("include_groups", True)),
        include_azure_resources=bool(block.get("include_azure_resources", False)),
        parallel=bool(block.get("parallel", False)),
    )


class PimSession:
    def __init__(self, client, cfg: dict, input_provider, api=None, sleep=None):
        self.client = client
        self.cfg = cfg
        self.api = api or PimGraphApi(client)
        self.flags = fncFetchFlagsFromConfig(cfg)
        self.user_id: Optional[str] = None

        cache_cfg = fncGetSection(cfg, "cache")
        auth_cfg = fncGetSection(cfg, "auth")
        activation_cfg = fncGetSection(cfg, "activation")
        duration = activation_cfg.get("default_duration") or {}
        retry_policy = RetryPolicy.from_config(cfg)
        extra = {"sleep": sleep} if sleep else {}

        self.directory_adapter = DirectoryRoleAdapter(self.api)
        self.group_adapter = GroupRoleAdapter(self.api, scope_resolver=self.directory_adapter.scope_display)
        self.policy_cache = PolicyContextCache(self.api)
        self.fetcher = BatchRoleFetcher(self.directory_adapter, self.group_adapter, self.policy_cache)
        self.role_cache = RoleCache(self.fetcher, ttl_seconds=cache_cfg.get("role_cache_ttl_seconds", 120))
        self.token_manager = AuthContextTokenManager(
            client.acquire_token_with_claims,
            timeout_seconds=auth_cfg.get("interactive_timeout_seconds", 120),
            max_token_minutes=auth_cfg.get("auth_context_token_max_minutes", 45),
        )
        self.activator = ActivationOrchestrator(
            self.api, self.token_manager, input_provider,
            role_cache=self.role_cache,
            retry_policy=retry_policy,
            default_duration=(duration.get("hours", 8), duration.get("minutes", 0)),
            **extra,
        )
        self.deactivator = DeactivationOrchestrator(
            self.api, input_provider, role_cache=self.role_cache, retry_policy=retry_policy, **extra,
        )

    def principal_id(self) -> str:
        if not self.user_id:
            me = self.api.get_me() or {}
            self.user_id = me.get("id") or ""
            fncPrintMessage(f"Principal: {me.get('userPrincipalName') or self.user_id}", "debug")
        return self.user_id

    def roles(self, progress: Optional[ProgressSink] = None, force: bool = False) -> BatchFetchResult:
        if force:
            self.role_cache.invalidate()
        return self.role_cache.get_or_fetch(self.principal_id(), self.flags, progress)

    def activate(self, roles, hours=None, minutes=None) -> OperationResult:
        return self.activator.activate(self.principal_id(), roles, hours=hours, minutes=minutes, flags=self.flags)

    def deactivate(self, roles) -> OperationResult:
        return self.deactivator.deactivate(self.principal_id(), roles, flags=self.flags)

    def clear(self) -> None:
        """Drop everything tied to the current account."""
        self.role_cache.invalidate()
        self.policy_cache.clear()
        self.token_manager.clear()
        self.directory_adapter.clear()
        self.group_adapter.clear()
        self.user_id = None
        fncPrintMessage("Session caches cleared", "debug")
