import base64
import hashlib
import hmac
import json

from fastapi.testclient import TestClient

from src.main import app
from src.observability import metrics_snapshot, reset_metrics
from src.providers.klaviyo import client as klaviyo_client
from src.services import relay as relay_service


CONSENT_REF = "318e5266-b416-4f99-acf3-17549aacf2f0"


class _FakeResponse:
    def __init__(self, status_code: int, payload=None, headers: dict | None = None):
        self.status_code = status_code
        self._payload = payload
        self.text = "" if payload is None else json.dumps(payload)
        self.headers = headers or {}

    def json(self):
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


class FakeKlaviyo:
    def __init__(self, *, create_status: int = 201, lookup_status: int = 200, event_status: int = 202):
        self.create_status = create_status
        self.lookup_status = lookup_status
        self.event_status = event_status
        self.properties = {"quiz_history": [{"typeform_response_id": "tok-old", "horse": "Storm"}]}
        self.calls: list[dict] = []

    def paths(self) -> list[tuple[str, str]]:
        return [(call["method"], call["url"].replace("https://a.klaviyo.com", "")) for call in self.calls]

    def bodies(self, method: str, path: str) -> list[dict]:
        url = f"https://a.klaviyo.com{path}"
        return [call["json_payload"] for call in self.calls if call["method"] == method and call["url"] == url]

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        method = kwargs["method"]
        path = kwargs["url"].replace("https://a.klaviyo.com", "")

        if method == "POST" and path == "/api/profiles/":
            if self.create_status >= 400:
                return _FakeResponse(self.create_status, {"errors": [{"detail": "boom"}]})
            return _FakeResponse(self.create_status, {"data": {"type": "profile", "id": "p-1"}})
        if method == "GET" and path == "/api/profiles/":
            if self.lookup_status >= 400:
                return _FakeResponse(self.lookup_status, {"errors": []})
            return _FakeResponse(200, {"data": [{"type": "profile", "id": "p-1"}]})
        if method == "GET" and path == "/api/profiles/p-1/":
            return _FakeResponse(200, {"data": {"id": "p-1", "attributes": {"properties": self.properties}}})
        if method == "PATCH" and path == "/api/profiles/p-1/":
            return _FakeResponse(200, {"data": {"id": "p-1"}})
        if method == "POST" and path == "/api/profile-subscription-bulk-create-jobs/":
            return _FakeResponse(202, None)
        if method == "POST" and path == "/api/events/":
            if self.event_status >= 400:
                return _FakeResponse(self.event_status, {"errors": [{"detail": "unavailable"}]})
            return _FakeResponse(self.event_status, None)
        raise AssertionError(f"unexpected Klaviyo call {method} {path}")


def _configure(monkeypatch, fake: FakeKlaviyo | None = None, **overrides):
    values = {
        "klaviyo_api_key": "pk_test",
        "klaviyo_api_base": "https://a.klaviyo.com",
        "klaviyo_schema_strategy": "nested_metric_name",
        "klaviyo_metric_name": "Fager Quiz Completed",
        "klaviyo_metric_id": None,
        "klaviyo_list_id": "L1",
        "klaviyo_list_mode": "subscription_job",
        "klaviyo_subscription_poll_attempts": 0,
        "typeform_secret": None,
        "typeform_consent_field_refs": CONSENT_REF,
        "quiz_history_limit": 50,
    }
    values.update(overrides)
    for name, value in values.items():
        monkeypatch.setattr(relay_service.settings, name, value)
    if fake is not None:
        monkeypatch.setattr(klaviyo_client, "_request_with_retry", fake)
    return TestClient(app)


def _payload(*, email="rider@example.com", consent=True, hidden=None):
    answers = [
        {"type": "text", "text": "Blixten", "field": {"id": "f1", "ref": "horse", "type": "short_text"}},
        {"type": "boolean", "boolean": consent, "field": {"id": "f3", "ref": CONSENT_REF, "type": "legal"}},
    ]
    if email is not None:
        answers.insert(1, {"type": "email", "email": email, "field": {"id": "f2", "ref": "email", "type": "email"}})
    return {
        "event_id": "evt-1",
        "event_type": "form_response",
        "form_response": {
            "form_id": "frm-1",
            "token": "tok-1",
            "submitted_at": "2024-05-02T08:00:00Z",
            "hidden": hidden if hidden is not None else {"quiz_name": "FagerBitQuiz", "source": "Website", "lang": "sv"},
            "calculated": {"outcome": {"title": "Modig Mustang"}},
            "definition": {"fields": [{"id": "f1", "title": "Vad heter din häst?"}]},
            "answers": answers,
        },
    }


def test_submission_is_relayed_to_klaviyo(monkeypatch):
    reset_metrics()
    fake = FakeKlaviyo()
    client = _configure(monkeypatch, fake)

    response = client.post("/api/webhooks/typeform", json=_payload())

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert fake.paths() == [
        ("POST", "/api/profiles/"),
        ("GET", "/api/profiles/p-1/"),
        ("PATCH", "/api/profiles/p-1/"),
        ("POST", "/api/profile-subscription-bulk-create-jobs/"),
        ("POST", "/api/events/"),
    ]

    properties = fake.bodies("PATCH", "/api/profiles/p-1/")[0]["data"]["attributes"]["properties"]
    assert properties["ending_key"] == "modig_mustang"
    assert properties["horse_name"] == "Blixten"
    assert properties["country"] == "Sweden"
    assert [entry["typeform_response_id"] for entry in properties["quiz_history"]] == ["tok-1", "tok-old"]

    event = fake.bodies("POST", "/api/events/")[0]["data"]["attributes"]
    assert event["unique_id"] == "tok-1"
    assert event["profile"] == {"data": {"type": "profile", "id": "p-1"}}
    assert event["properties"]["ending_title"] == "Modig Mustang"

    snapshot = metrics_snapshot()
    assert snapshot["webhook.events.received|provider_slug=typeform"] == 1
    assert snapshot["typeform.relay.outcome|kind=delivered"] == 1


def test_legacy_route_alias(monkeypatch):
    fake = FakeKlaviyo()
    client = _configure(monkeypatch, fake)

    response = client.post("/api/typeform-quiz", json=_payload())
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert ("POST", "/api/events/") in fake.paths()


def test_only_post_is_accepted(monkeypatch):
    client = _configure(monkeypatch, FakeKlaviyo())
    assert client.get("/api/webhooks/typeform").status_code == 405
    assert client.get("/api/typeform-quiz").status_code == 405


def test_typeform_test_payload_is_skipped(monkeypatch):
    fake = FakeKlaviyo()
    client = _configure(monkeypatch, fake)

    response = client.post("/api/webhooks/typeform", json=_payload(hidden={"quiz_name": "hidden_value"}))
    assert response.status_code == 200
    assert response.json() == {"ok": True, "note": "Typeform test – skipped Klaviyo"}
    assert fake.calls == []


def test_secret_mismatch_is_ignored(monkeypatch):
    fake = FakeKlaviyo()
    client = _configure(monkeypatch, fake, typeform_secret="s3cret")

    payload = _payload()
    payload["secret"] = "wrong"
    response = client.post("/api/webhooks/typeform", json=payload)

    assert response.status_code == 200
    assert response.json() == {"ok": True, "note": "Secret mismatch"}
    assert fake.calls == []


def test_typeform_signature_is_verified(monkeypatch):
    fake = FakeKlaviyo()
    client = _configure(monkeypatch, fake, typeform_secret="s3cret")
    body = json.dumps(_payload()).encode()
    signature = "sha256=" + base64.b64encode(hmac.new(b"s3cret", body, hashlib.sha256).digest()).decode()

    bad = client.post(
        "/api/webhooks/typeform",
        content=body,
        headers={"Content-Type": "application/json", "Typeform-Signature": "sha256=bogus"},
    )
    assert bad.json() == {"ok": True, "note": "Secret mismatch"}
    assert fake.calls == []

    good = client.post(
        "/api/webhooks/typeform",
        content=body,
        headers={"Content-Type": "application/json", "Typeform-Signature": signature},
    )
    assert good.status_code == 200
    assert good.json() == {"ok": True}
    assert ("POST", "/api/events/") in fake.paths()


def test_submission_without_usable_email_is_skipped(monkeypatch):
    fake = FakeKlaviyo()
    client = _configure(monkeypatch, fake)

    missing = client.post("/api/webhooks/typeform", json=_payload(email=None))
    assert missing.status_code == 200
    assert missing.json() == {"ok": True, "note": "No email; skipping."}

    invalid = client.post("/api/webhooks/typeform", json=_payload(email="not-an-email"))
    assert invalid.status_code == 200
    assert invalid.json() == {"ok": True, "note": "Invalid email; skipping."}
    assert fake.calls == []


def test_no_consent_skips_subscription(monkeypatch):
    fake = FakeKlaviyo()
    client = _configure(monkeypatch, fake)

    response = client.post("/api/webhooks/typeform", json=_payload(consent=False))
    assert response.json() == {"ok": True}
    assert ("POST", "/api/profile-subscription-bulk-create-jobs/") not in fake.paths()
    assert ("POST", "/api/events/") in fake.paths()


def test_consent_without_list_is_not_subscribed(monkeypatch):
    fake = FakeKlaviyo()
    client = _configure(monkeypatch, fake, klaviyo_list_id=None)

    response = client.post("/api/webhooks/typeform", json=_payload())
    assert response.json() == {"ok": True}
    assert ("POST", "/api/profile-subscription-bulk-create-jobs/") not in fake.paths()


def test_event_failure_is_reported_with_200(monkeypatch):
    fake = FakeKlaviyo(event_status=503)
    client = _configure(monkeypatch, fake)

    response = client.post("/api/webhooks/typeform", json=_payload())
    assert response.status_code == 200
    assert response.json() == {
        "ok": False,
        "upstream": "klaviyo",
        "status": 503,
        "note": "Klaviyo event failed",
    }


def test_unresolved_profile_skips_event(monkeypatch):
    fake = FakeKlaviyo(create_status=500, lookup_status=500)
    client = _configure(monkeypatch, fake)

    response = client.post("/api/webhooks/typeform", json=_payload())
    body = response.json()
    assert response.status_code == 200
    assert body["ok"] is False
    assert body["status"] == 500
    assert ("POST", "/api/events/") not in fake.paths()


def test_missing_api_key_is_a_server_error(monkeypatch):
    fake = FakeKlaviyo()
    client = _configure(monkeypatch, fake, klaviyo_api_key=None)

    response = client.post("/api/webhooks/typeform", json=_payload())
    assert response.status_code == 500
    assert response.json() == {"ok": False, "error": "Server not configured"}
    assert fake.calls == []


def test_invalid_json_is_rejected(monkeypatch):
    client = _configure(monkeypatch, FakeKlaviyo())

    response = client.post(
        "/api/webhooks/typeform",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["ok"] is False


def test_request_id_is_echoed(monkeypatch):
    client = _configure(monkeypatch, FakeKlaviyo())

    response = client.post(
        "/api/webhooks/typeform",
        json=_payload(hidden={"quiz_name": "hidden_value"}),
        headers={"X-Request-ID": "req-123"},
    )
    assert response.headers["X-Request-ID"] == "req-123"
