# ================================================================
# File     : modules/pim/auth_context.py
# Purpose  : Acquire and cache step-up tokens per authentication
#            context (acrs claim), e.g. "c3"
# Notes    : Cached expiry is deliberately shorter than the token's
#            own lifetime. Failures are never cached: every call after
#            a failure prompts afresh.
# ================================================================

import json
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List

from core.errors import AuthContextTokenError, AuthenticationError
from core.models import AuthenticationContextToken
from core.utils import fncMask, fncPrintMessage

SAFETY_MARGIN = timedelta(minutes=5)


# ================================================================
# Function: fncClaimsChallenge
# Purpose : Build the claims request for one authentication context
# ================================================================
def fncClaimsChallenge(context_id: str) -> str:
    return json.dumps({"access_token": {"acrs": {"essential": True, "value": context_id}}},
                      separators=(",", ":"))


class AuthContextTokenManager:
    def __init__(
        self,
        acquire: Callable[[str, int], Dict],
        timeout_seconds: int = 120,
        max_token_minutes: int = 45,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """
        acquire(claims_challenge, timeout) performs the interactive sign-in
        and returns an MSAL-style result with access_token and expires_in.
        """
        self.acquire = acquire
        self.timeout_seconds = timeout_seconds
        self.max_token_lifetime = timedelta(minutes=max_token_minutes)
        self.clock = clock
        self._tokens: Dict[str, AuthenticationContextToken] = {}
        self._lock = threading.Lock()

    def cached_contexts(self) -> List[str]:
        now = self.clock()
        with self._lock:
            return sorted(k for k, t in self._tokens.items() if t.is_valid(now))

    def invalidate(self, context_id: str) -> None:
        with self._lock:
            self._tokens.pop(context_id, None)

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()

    def get_token(self, context_id: str, force_refresh: bool = False) -> str:
        if not context_id:
            raise AuthContextTokenError(context_id or "", "no authentication context id")
        now = self.clock()
        with self._lock:
            cached = self._tokens.get(context_id)
            if cached and not force_refresh and cached.is_valid(now):
                fncPrintMessage(f"Reusing cached token for authentication context '{context_id}'", "debug")
                return cached.access_token
            # a stale or forcibly refreshed entry must never be handed out again
            self._tokens.pop(context_id, None)

        fncPrintMessage(f"Authentication context '{context_id}' needs a fresh sign-in", "info")
        try:
            result = self.acquire(fncClaimsChallenge(context_id), self.timeout_seconds) or {}
        except AuthenticationError as ex:
            raise AuthContextTokenError(context_id, str(ex)) from ex

        access_token = result.get("access_token")
        if not access_token:
            raise AuthContextTokenError(context_id, result.get("error_description") or "no access token returned")

        lifetime = timedelta(seconds=int(result.get("expires_in") or 3600))
        cache_for = min(lifetime - SAFETY_MARGIN, self.max_token_lifetime)
        if cache_for <= timedelta(0):
            cache_for = lifetime / 2
        token = AuthenticationContextToken(context_id, access_token, self.clock() + cache_for)
        with self._lock:
            self._tokens[context_id] = token
        fncPrintMessage(f"Token for '{context_id}' cached until {token.expiry_time:%H:%M:%S} ({fncMask(access_token)})",
                        "debug")
        return access_token
