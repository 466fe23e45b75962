"""Tests for the Graph transport and the PIM API surface (no network)."""

import json
import time

import pytest

from core.errors import AuthenticationError, GraphApiError
from handlers.graph.client import GraphClient
from handlers.graph.graph_helpers import fncGetAllTolerant, fncOrFilters, fncQuote
from handlers.graph.pim_api import PimGraphApi


class FakeResponse:
    def __init__(self, status, body=None, headers=None, url="https://graph.test"):
        self.status_code = status
        self._body = body
        self.headers = headers or {}
        self.url = url
        self.content = json.dumps(body).encode() if body is not None else b""
        self.text = self.content.decode()

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, headers=None, params=None, data=None):
        self.requests.append({"method": method, "url": url, "headers": headers, "data": data})
        return self.responses.pop(0)


class FakeMsalApp:
    def __init__(self, interactive=None):
        self.interactive_calls = []
        self.interactive = interactive or {"access_token": "interactive", "expires_in": 3600}
        self.accounts = [{"username": "alex@contoso.test"}]

    def get_accounts(self, username=None):
        return list(self.accounts)

    def remove_account(self, acct):
        self.accounts.remove(acct)

    def acquire_token_silent(self, scopes, account=None):
        return {"access_token": "silent", "expires_in": 3600}

    def acquire_token_interactive(self, scopes, **kwargs):
        self.interactive_calls.append(kwargs)
        return self.interactive


def _client(responses, app=None):
    return GraphClient("tenant", "client", app=app or FakeMsalApp(), session=FakeSession(responses))


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(time, "sleep", lambda s: None)


class TestGraphClient:
    """HTTP handling."""

    def test_sign_in_prefers_silent(self):
        client = _client([])
        assert client.sign_in() == "alex@contoso.test"
        assert client.token == "silent"
        assert client.app.interactive_calls == []

    def test_get_all_follows_next_link(self):
        client = _client([
            FakeResponse(200, {"value": [{"id": 1}], "@odata.nextLink": "https://graph.test/next"}),
            FakeResponse(200, {"value": [{"id": 2}]}),
        ])
        assert client.get_all("things") == [{"id": 1}, {"id": 2}]

    def test_throttling_is_retried(self):
        client = _client([FakeResponse(429, {}, headers={"Retry-After": "1"}), FakeResponse(200, {"ok": True})])
        assert client.get("me") == {"ok": True}

    def test_error_envelope_parsed(self):
        client = _client([FakeResponse(400, {"error": {"code": "RoleAssignmentExists", "message": "dup"}})])
        with pytest.raises(GraphApiError) as exc:
            client.post("x", {"a": 1})
        assert exc.value.code == "RoleAssignmentExists"
        assert exc.value.status == 400

    def test_post_uses_override_token(self):
        client = _client([FakeResponse(201, {"id": "req"})])
        client.post("x", {"a": 1}, token="ctx-token")
        sent = client.session.requests[0]
        assert sent["headers"]["Authorization"] == "Bearer ctx-token"
        assert json.loads(sent["data"]) == {"a": 1}

    def test_expired_token_refreshed_once(self):
        client = _client([
            FakeResponse(401, {"error": {"code": "InvalidAuthenticationToken", "message": "expired"}}),
            FakeResponse(200, {"id": "me"}),
        ])
        assert client.get("me") == {"id": "me"}
        assert len(client.session.requests) == 2

    def test_claims_challenge_is_interactive(self):
        app = FakeMsalApp()
        client = _client([], app=app)
        result = client.acquire_token_with_claims('{"access_token":{}}', timeout=30)
        assert result["access_token"] == "interactive"
        assert app.interactive_calls[0]["claims_challenge"] == '{"access_token":{}}'
        assert app.interactive_calls[0]["timeout"] == 30

    def test_claims_challenge_failure(self):
        client = _client([], app=FakeMsalApp(interactive={"error": "authorization_pending"}))
        with pytest.raises(AuthenticationError):
            client.acquire_token_with_claims("{}")


class TestGraphHelpers:
    def test_quote_escapes(self):
        assert fncQuote("O'Brien") == "'O''Brien'"

    def test_or_filters_chunk(self):
        clauses = fncOrFilters("roleDefinitionId", [f"r{i}" for i in range(16)] + ["r0"], limit=15)
        assert len(clauses) == 2
        assert clauses[1] == "(roleDefinitionId eq 'r15')"

    def test_tolerant_read_maps_denied_to_empty(self):
        class Denied:
            def get_all(self, endpoint):
                raise GraphApiError(403, "Forbidden", "")
        assert fncGetAllTolerant(Denied(), "x", "things") == []

    def test_tolerant_read_raises_other_errors(self):
        class Broken:
            def get_all(self, endpoint):
                raise GraphApiError(400, "BadRequest", "")
        with pytest.raises(GraphApiError):
            fncGetAllTolerant(Broken(), "x", "things")


class TestPimGraphApi:
    """Endpoint shapes."""

    class Recorder:
        def __init__(self):
            self.endpoints = []

        def get_all(self, endpoint):
            self.endpoints.append(endpoint)
            return []

        def get(self, endpoint):
            self.endpoints.append(endpoint)
            return {}

        def post(self, endpoint, payload, token=None):
            self.endpoints.append(endpoint)
            return {"token": token}

    def test_endpoints(self):
        rec = self.Recorder()
        api = PimGraphApi(rec)
        api.list_eligible_directory_roles("u1")
        api.get_group_policy_assignments("g1")
        api.submit_group_request({}, token="t")
        assert rec.endpoints[0].startswith("roleManagement/directory/roleEligibilityScheduleInstances")
        assert "$expand=policy($expand=rules)" in rec.endpoints[1]
        assert "scopeType eq 'Group'" in rec.endpoints[1]
        assert rec.endpoints[2] == "identityGovernance/privilegedAccess/group/assignmentScheduleRequests"
