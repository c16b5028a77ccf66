import pytest
import requests

from mailsentry.modules.errors import RemoteSyncError
from mailsentry.modules.fingerprint import compute_fingerprint
from mailsentry.modules.policy_sync import PolicySyncClient
from mailsentry.modules.threat_detection import RuleCache


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    def __init__(self, responses=None, error=None):
        self.responses = responses or {}
        self.error = error
        self.requests = []

    def _handle(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        if self.error:
            raise self.error
        response = self.responses.get((method, url), FakeResponse(200, {"status": "ok"}))
        if isinstance(response, list):
            return response.pop(0)
        return response

    def get(self, url, **kwargs):
        return self._handle("get", url, **kwargs)

    def post(self, url, **kwargs):
        return self._handle("post", url, **kwargs)


def client(store, session):
    return PolicySyncClient("https://policy.example.net/api/", "mx-01", "secret", store,
                            session=session, hostname="mx.example.com")


FINGERPRINT = compute_fingerprint("Cheap pills", "Order now")


def test_report_is_sent_at_most_once(store):
    session = FakeSession()
    sync = client(store, session)

    first = sync.report_if_new(FINGERPRINT, "Cheap pills", "Order now", {"Subject": "Cheap pills"},
                               client_ip="203.0.113.7")
    second = sync.report_if_new(FINGERPRINT, "Cheap pills", "Order now", {"Subject": "Cheap pills"},
                                client_ip="203.0.113.7")

    assert first == ["content", "ip"]
    assert second == []
    assert len(session.requests) == 2
    method, url, kwargs = session.requests[0]
    assert (method, url) == ("post", "https://policy.example.net/api/spam/report")
    assert kwargs["headers"]["Authorization"] == "Bearer secret"
    assert kwargs["headers"]["X-Client-ID"] == "mx-01"
    assert kwargs["json"]["metadata"]["combined_hash"] == FINGERPRINT.combined_hash
    assert session.requests[1][2]["json"]["metadata"]["type"] == "ip_report"


def test_new_ip_is_reported_for_known_content(store):
    session = FakeSession()
    sync = client(store, session)
    sync.report_if_new(FINGERPRINT, "s", "b", {}, client_ip="203.0.113.7")

    sent = sync.report_if_new(FINGERPRINT, "s", "b", {}, client_ip="198.51.100.20")

    assert sent == ["ip"]
    assert session.requests[-1][2]["json"]["metadata"]["client_ip"] == "198.51.100.20"


def test_report_failure_raises_and_is_retried_next_time(store):
    failing = client(store, FakeSession(error=requests.ConnectionError("down")))

    with pytest.raises(RemoteSyncError):
        failing.report_if_new(FINGERPRINT, "s", "b", {})

    assert client(store, FakeSession()).report_if_new(FINGERPRINT, "s", "b", {}) == ["content"]


def test_http_error_status_raises(store):
    session = FakeSession({("post", "https://policy.example.net/api/spam/report"): FakeResponse(503)})

    with pytest.raises(RemoteSyncError) as exc_info:
        client(store, session).report_if_new(FINGERPRINT, "s", "b", {})

    assert "HTTP 503" in str(exc_info.value)


def test_sync_rules_upserts_and_invalidates(store):
    url = "https://policy.example.net/api/rules"
    session = FakeSession({("get", url): [
        FakeResponse(200, {"version": 12, "rules": [
            {"id": 7, "name": "casino", "detection_type": "keyword", "target": "subject,body",
             "pattern": "casino", "score": 40, "priority": 2},
            {"id": 8, "name": "pharma", "detection_type": "regex", "pattern": "/v[i1]agra/i",
             "score": 60},
        ]}),
        FakeResponse(200, [
            {"id": 20, "name": "bank-link", "detection_type": "domain", "pattern": "evil-bank",
             "score": 50, "target": "body"},
        ]),
    ]})
    rule_cache = RuleCache(store)
    assert rule_cache.get("spam") == []

    count = client(store, session).sync_rules(["spam", "phishing"], rule_cache)

    assert count == 3
    assert [r.name for r in rule_cache.get("spam")] == ["casino", "pharma"]
    assert [r.name for r in rule_cache.get("phishing")] == ["bank-link"]
    assert store.get_cache("rules_version_spam") == 12
    params = session.requests[0][2]["params"]
    assert params == {"category": "spam", "client_id": "mx-01", "version": 0}


def test_sync_rules_sends_known_version_and_applies_deletions(store):
    store.add_rule("old", "spam", "keyword", "old", 10, server_id=5)
    store.set_cache("rules_version_spam", 3)
    url = "https://policy.example.net/api/rules"
    session = FakeSession({("get", url): FakeResponse(200, {"version": 4, "rules": [
        {"id": 5, "deleted": True},
    ]})})

    client(store, session).sync_rules(["spam"])

    assert session.requests[0][2]["params"]["version"] == 3
    assert store.list_rules("spam") == []


def test_sync_rules_rejects_incomplete_records(store):
    url = "https://policy.example.net/api/rules"
    session = FakeSession({("get", url): FakeResponse(200, {"rules": [{"id": 1, "name": "x"}]})})

    with pytest.raises(RemoteSyncError):
        client(store, session).sync_rules(["spam"])


def test_invalid_json_raises(store):
    url = "https://policy.example.net/api/rules"
    session = FakeSession({("get", url): FakeResponse(200, ValueError("not json"))})

    with pytest.raises(RemoteSyncError):
        client(store, session).sync_rules(["spam"])


def test_disabled_api_has_no_client(make_config, store):
    assert PolicySyncClient.from_config(make_config(), store) is None
    enabled = make_config(api={"enabled": True, "endpoint": "https://policy.example.net"})
    assert isinstance(PolicySyncClient.from_config(enabled, store), PolicySyncClient)
