# ================================================================
# File     : client.py
# Purpose  : Microsoft Graph client for Entra PIM (delegated user)
# Notes    : GET + pagination + retries, POST for schedule requests.
#            - Silent sign-in first, interactive only when needed
#            - Proactive refresh if token expires in <5 minutes
#            - Auto-refresh on 401 InvalidAuthenticationToken
#            - Per-call bearer override for auth-context tokens
# ================================================================

import json
import time
from typing import Any, Dict, List, Optional

import msal
import requests

from core.errors import AuthenticationError, GraphApiError, GraphServerError
from core.utils import fncPrintMessage, fncRetry

GRAPH_ROOT = "https://graph.microsoft.com/v1.0"

DEFAULT_SCOPES = [
    "https://graph.microsoft.com/RoleManagement.ReadWrite.Directory",
    "https://graph.microsoft.com/RoleEligibilitySchedule.ReadWrite.Directory",
    "https://graph.microsoft.com/RoleAssignmentSchedule.ReadWrite.Directory",
    "https://graph.microsoft.com/RoleManagementPolicy.Read.Directory",
    "https://graph.microsoft.com/PrivilegedAccess.ReadWrite.AzureADGroup",
    "https://graph.microsoft.com/PrivilegedEligibilitySchedule.ReadWrite.AzureADGroup",
    "https://graph.microsoft.com/PrivilegedAssignmentSchedule.ReadWrite.AzureADGroup",
    "https://graph.microsoft.com/RoleManagementPolicy.Read.AzureADGroup",
    "https://graph.microsoft.com/Policy.Read.ConditionalAccess",
    "https://graph.microsoft.com/AdministrativeUnit.Read.All",
    "https://graph.microsoft.com/User.Read",
]

REFRESH_SKEW_SECONDS = 300
MAX_THROTTLE_RETRIES = 5


class GraphClient:
    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        authority_host: str = "https://login.microsoftonline.com",
        scopes: Optional[List[str]] = None,
        interactive_timeout: int = 120,
        app=None,
        session: Optional[requests.Session] = None,
    ):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.scopes = list(scopes or DEFAULT_SCOPES)
        self.authority = f"{authority_host.rstrip('/')}/{tenant_id}"
        self.interactive_timeout = interactive_timeout
        self.session = session or requests.Session()

        fncPrintMessage("Initialising Microsoft Graph (delegated) client...", "debug")
        self.app = app or msal.PublicClientApplication(client_id=client_id, authority=self.authority)

        # token/bookkeeping
        self.token: str = ""
        self.account: Optional[Dict[str, Any]] = None
        self._token_expires_on: int = 0  # epoch seconds

    # ---------- Sign-in ----------

    @property
    def username(self) -> str:
        return (self.account or {}).get("username", "")

    def sign_in(self, login_hint: Optional[str] = None) -> str:
        """Sign in (silent where the MSAL cache allows). Returns the account username."""
        self._set_token(self._acquire_token(login_hint=login_hint))
        fncPrintMessage(f"Signed in as {self.username or 'unknown account'}", "success")
        return self.username

    def sign_out(self) -> None:
        for acct in self.app.get_accounts():
            self.app.remove_account(acct)
        self.token = ""
        self.account = None
        self._token_expires_on = 0

    def _pick_account(self, login_hint: Optional[str]):
        accounts = self.app.get_accounts(username=login_hint) if login_hint else self.app.get_accounts()
        return accounts[0] if accounts else None

    def _acquire_token(self, login_hint: Optional[str] = None) -> Dict[str, Any]:
        """Acquire a token using MSAL (silent -> interactive). Returns MSAL result dict."""
        fncPrintMessage("Requesting Microsoft Graph access token...", "debug")
        account = self.account or self._pick_account(login_hint)
        result = None
        if account:
            result = self.app.acquire_token_silent(self.scopes, account=account)
        if not result:
            result = self.app.acquire_token_interactive(
                self.scopes,
                login_hint=login_hint or (account or {}).get("username"),
                timeout=self.interactive_timeout,
            )
        if not result or "access_token" not in result:
            reason = (result or {}).get("error_description", "Unknown error")
            fncPrintMessage(f"MSAL Authentication failed: {reason}", "error")
            raise AuthenticationError(f"Failed to acquire access token: {reason}")
        accounts = self.app.get_accounts(username=login_hint) if login_hint else self.app.get_accounts()
        if accounts:
            self.account = accounts[0]
        return result

    def acquire_token_with_claims(self, claims_challenge: str, timeout: Optional[int] = None) -> Dict[str, Any]:
        """
        Interactive sign-in answering a claims challenge (authentication context).
        Always interactive: a cached token never carries a fresh acrs claim.
        Returns the raw MSAL result (access_token, expires_in).
        """
        fncPrintMessage("Prompting for step-up sign-in (authentication context)...", "info")
        try:
            result = self.app.acquire_token_interactive(
                self.scopes,
                login_hint=self.username or None,
                claims_challenge=claims_challenge,
                timeout=timeout or self.interactive_timeout,
            )
        except Exception as ex:
            # msal surfaces browser/broker failures as assorted exception types
            raise AuthenticationError(f"Interactive sign-in failed: {ex}") from ex
        if not result or "access_token" not in result:
            reason = (result or {}).get("error_description") or (result or {}).get("error") or "timed out or cancelled"
            raise AuthenticationError(f"Interactive sign-in failed: {reason}")
        return result

    def _set_token(self, msal_result: Dict[str, Any]) -> None:
        self.token = msal_result["access_token"]
        try:
            self._token_expires_on = int(msal_result.get("expires_on") or 0)
        except (TypeError, ValueError):
            self._token_expires_on = 0
        if not self._token_expires_on:
            self._token_expires_on = int(time.time()) + int(msal_result.get("expires_in", 3600))

    def _ensure_fresh_token(self) -> None:
        now = int(time.time())
        if not self.token or now >= (self._token_expires_on - REFRESH_SKEW_SECONDS):
            fncPrintMessage("Refreshing access token (nearing expiry)...", "debug")
            self._set_token(self._acquire_token())

    def _auth_headers(self, token: Optional[str] = None) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token or self.token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    # ---------- HTTP handling ----------

    @staticmethod
    def _error_from(response: requests.Response) -> GraphApiError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        err = (body.get("error") or {}) if isinstance(body, dict) else {}
        code = err.get("code") or ""
        msg = err.get("message") or response.text
        cls = GraphServerError if response.status_code >= 500 else GraphApiError
        return cls(response.status_code, code, msg, url=response.url)

    def _request(self, method: str, url: str, params: Optional[Dict[str, Any]] = None,
                 payload: Optional[Dict[str, Any]] = None, token: Optional[str] = None) -> Dict[str, Any]:
        """Single HTTP request with proactive token refresh, 429 back-off and 401 auto-refresh."""
        if token is None:
            self._ensure_fresh_token()
        data = json.dumps(payload) if payload is not None else None
        refreshed = False
        throttled = 0

        while True:
            resp = self.session.request(method, url, headers=self._auth_headers(token), params=params, data=data)
            status = resp.status_code

            if status in (200, 201):
                return resp.json() if resp.content else {}
            if status == 204:
                return {}

            if status == 429 and throttled < MAX_THROTTLE_RETRIES:
                throttled += 1
                retry_after = int(resp.headers.get("Retry-After", 5))
                fncPrintMessage(f"Rate limit hit. Sleeping for {retry_after}s...", "warn")
                time.sleep(retry_after)
                continue

            err = self._error_from(resp)
            if status == 401 and token is None and not refreshed and (
                    "InvalidAuthenticationToken" in err.code or "expired" in err.message.lower()):
                fncPrintMessage("Access token expired, attempting refresh.", "warn")
                self.account = self.account or self._pick_account(None)
                self._set_token(self._acquire_token())
                refreshed = True
                continue

            fncPrintMessage(f"Graph API Error [{status}] {err.code} -> {err.message}", "debug")
            raise err

    # ---------- Public API ----------

    def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Perform a GET request to a Graph endpoint (single page).
        Use get_all for paginated resources.
        """
        url = f"{GRAPH_ROOT}/{endpoint.strip().lstrip('/')}"
        fncPrintMessage(f"GET {url}", "debug")
        return fncRetry(lambda: self._request("GET", url, params=params),
                        exceptions=(requests.ConnectionError, requests.Timeout, GraphServerError))

    def get_all(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Retrieve all items from a paginated Graph endpoint.
        Returns a flat list of items (value) for list endpoints.
        """
        data = self.get(endpoint, params=params)
        if isinstance(data, dict) and "value" not in data:
            return [data]

        items: List[Dict[str, Any]] = list(data.get("value", []))
        next_link = data.get("@odata.nextLink")
        while next_link:
            fncPrintMessage(f"Following nextLink -> {next_link}", "debug")
            page = fncRetry(lambda: self._request("GET", next_link),
                            exceptions=(requests.ConnectionError, requests.Timeout, GraphServerError))
            items.extend(page.get("value", []))
            next_link = page.get("@odata.nextLink")
        return items

    def post(self, endpoint: str, payload: Dict[str, Any], token: Optional[str] = None) -> Dict[str, Any]:
        """
        POST a JSON body. Not retried: schedule requests are not idempotent.
        token overrides the ambient bearer (authentication-context tokens).
        """
        url = f"{GRAPH_ROOT}/{endpoint.strip().lstrip('/')}"
        fncPrintMessage(f"POST {url}", "debug")
        return self._request("POST", url, payload=payload, token=token)
