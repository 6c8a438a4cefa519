from __future__ import annotations

import types

import httpx
import pytest

from src.providers.klaviyo import client as klaviyo_client


class _FakeResponse:
    def __init__(self, status_code: int, payload=None, headers: dict | None = None):
        self.status_code = status_code
        self._payload = payload
        self.text = "" if payload is None else str(payload)
        self.headers = headers or {}

    def json(self):
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


def test_profile_paths_and_headers(monkeypatch):
    calls: list[dict] = []

    def _fake_request_with_retry(**kwargs):
        calls.append(kwargs)
        if kwargs["method"] == "GET" and kwargs.get("params"):
            return _FakeResponse(200, {"data": [{"id": "p-9"}]})
        return _FakeResponse(200, {"data": {"id": "p-1"}})

    monkeypatch.setattr(klaviyo_client, "_request_with_retry", _fake_request_with_retry)
    klaviyo_client.create_profile(
        "pk_test",
        {"data": {"type": "profile", "attributes": {"email": "a@b.se"}}},
        base_url="https://klaviyo.example/",
        revision="2024-02-15",
    )
    klaviyo_client.get_profile("pk_test", "p-1", base_url="https://klaviyo.example")
    klaviyo_client.update_profile("pk_test", "p-1", {"data": {}}, base_url="https://klaviyo.example")
    found = klaviyo_client.find_profiles_by_email("pk_test", 'o"neil@b.se', base_url="https://klaviyo.example")

    assert [(call["method"], call["url"]) for call in calls] == [
        ("POST", "https://klaviyo.example/api/profiles/"),
        ("GET", "https://klaviyo.example/api/profiles/p-1/"),
        ("PATCH", "https://klaviyo.example/api/profiles/p-1/"),
        ("GET", "https://klaviyo.example/api/profiles/"),
    ]
    assert calls[0]["headers"]["Authorization"] == "Klaviyo-API-Key pk_test"
    assert calls[0]["headers"]["revision"] == "2024-02-15"
    assert calls[1]["headers"]["revision"] == klaviyo_client.KLAVIYO_DEFAULT_REVISION
    assert calls[3]["params"] == {"filter": 'equals(email,"o\\"neil@b.se")'}
    assert found == [{"id": "p-9"}]
    assert all(call["max_attempts"] == 1 for call in calls)


def test_conflict_exposes_duplicate_profile_id(monkeypatch):
    def _fake_request_with_retry(**_kwargs):
        return _FakeResponse(
            409,
            {"errors": [{"code": "duplicate_profile", "meta": {"duplicate_profile_id": "01HDUP"}}]},
        )

    monkeypatch.setattr(klaviyo_client, "_request_with_retry", _fake_request_with_retry)
    with pytest.raises(klaviyo_client.KlaviyoProviderError) as excinfo:
        klaviyo_client.create_profile("pk_test", {"data": {}})

    assert excinfo.value.status_code == 409
    assert excinfo.value.category == "conflict"
    assert excinfo.value.retryable is False
    assert excinfo.value.duplicate_profile_id == "01HDUP"


def test_error_categories():
    assert klaviyo_client.KlaviyoProviderError("x", status_code=429).category == "transient"
    assert klaviyo_client.KlaviyoProviderError("x", status_code=503).retryable is True
    assert klaviyo_client.KlaviyoProviderError("Invalid Klaviyo API key", status_code=401).category == "terminal"
    assert klaviyo_client.KlaviyoProviderError("x", status_code=400).category == "terminal"
    assert klaviyo_client.KlaviyoProviderError("Klaviyo connectivity error: boom").category == "transient"
    assert klaviyo_client.KlaviyoProviderError("something odd").category == "unknown"
    assert klaviyo_client.KlaviyoProviderError("x", status_code=400).duplicate_profile_id is None


def test_auth_and_missing_key_failures(monkeypatch):
    monkeypatch.setattr(
        klaviyo_client,
        "_request_with_retry",
        lambda **_kwargs: _FakeResponse(401, {"errors": []}),
    )
    with pytest.raises(klaviyo_client.KlaviyoProviderError, match="Invalid Klaviyo API key"):
        klaviyo_client.get_profile("pk_bad", "p-1")

    with pytest.raises(klaviyo_client.KlaviyoProviderError, match="Missing Klaviyo API key"):
        klaviyo_client.get_profile("", "p-1")


def test_subscription_job_returns_location_or_built_url(monkeypatch):
    responses = [
        _FakeResponse(202, None, headers={"Location": "https://a.klaviyo.com/api/profile-subscription-bulk-create-jobs/j-1/"}),
        _FakeResponse(202, {"data": {"type": "profile-subscription-bulk-create-job", "id": "j-2"}}),
        _FakeResponse(202, None),
    ]
    monkeypatch.setattr(klaviyo_client, "_request_with_retry", lambda **_kwargs: responses.pop(0))

    assert klaviyo_client.create_subscription_job("pk_test", {"data": {}}).endswith("/j-1/")
    assert (
        klaviyo_client.create_subscription_job("pk_test", {"data": {}}, base_url="https://klaviyo.example")
        == "https://klaviyo.example/api/profile-subscription-bulk-create-jobs/j-2/"
    )
    assert klaviyo_client.create_subscription_job("pk_test", {"data": {}}) is None


def test_job_status_accepts_absolute_url(monkeypatch):
    calls: list[str] = []

    def _fake_request_with_retry(**kwargs):
        calls.append(kwargs["url"])
        return _FakeResponse(200, {"data": {"attributes": {"status": "Complete"}}})

    monkeypatch.setattr(klaviyo_client, "_request_with_retry", _fake_request_with_retry)
    status_value = klaviyo_client.get_job_status("pk_test", "https://a.klaviyo.com/api/jobs/j-1/")

    assert status_value == "complete"
    assert calls == ["https://a.klaviyo.com/api/jobs/j-1/"]


def test_event_passes_retry_budget_and_list_link_path(monkeypatch):
    calls: list[dict] = []

    def _fake_request_with_retry(**kwargs):
        calls.append(kwargs)
        return _FakeResponse(202, None)

    monkeypatch.setattr(klaviyo_client, "_request_with_retry", _fake_request_with_retry)
    klaviyo_client.create_event("pk_test", {"data": {}}, max_attempts=4)
    klaviyo_client.add_profiles_to_list("pk_test", "L1", {"data": []})

    assert calls[0]["url"] == "https://a.klaviyo.com/api/events/"
    assert calls[0]["max_attempts"] == 4
    assert calls[1]["url"] == "https://a.klaviyo.com/api/lists/L1/relationships/profiles/"
    assert calls[1]["json_payload"] == {"data": []}


def test_metrics_pagination_uses_next_link_without_params(monkeypatch):
    calls: list[dict] = []

    def _fake_request_with_retry(**kwargs):
        calls.append(kwargs)
        return _FakeResponse(200, {"data": []})

    monkeypatch.setattr(klaviyo_client, "_request_with_retry", _fake_request_with_retry)
    klaviyo_client.list_metrics("pk_test", params={"fields[metric]": "name"})
    klaviyo_client.list_metrics("pk_test", page_url="https://a.klaviyo.com/api/metrics/?page[cursor]=abc")

    assert calls[0]["url"] == "https://a.klaviyo.com/api/metrics/"
    assert calls[0]["params"] == {"fields[metric]": "name"}
    assert calls[1]["url"] == "https://a.klaviyo.com/api/metrics/?page[cursor]=abc"
    assert calls[1]["params"] is None


def test_create_metric_requires_data_object(monkeypatch):
    monkeypatch.setattr(klaviyo_client, "_request_with_retry", lambda **_kwargs: _FakeResponse(201, {"data": []}))
    with pytest.raises(klaviyo_client.KlaviyoProviderError, match="create metric"):
        klaviyo_client.create_metric("pk_test", {"data": {}})


def test_request_with_retry_retries_transient_statuses(monkeypatch):
    statuses = [503, 429, 202]
    sleeps: list[float] = []

    class _FakeClient:
        def __init__(self, **_kwargs):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *_args):
            return False

        def request(self, **_kwargs):
            return _FakeResponse(statuses.pop(0), None)

    monkeypatch.setattr(klaviyo_client.httpx, "Client", _FakeClient)
    monkeypatch.setattr(klaviyo_client.time, "sleep", sleeps.append)
    response = klaviyo_client._request_with_retry(
        method="POST",
        url="https://a.klaviyo.com/api/events/",
        headers={},
        timeout_seconds=5.0,
        max_attempts=3,
    )

    assert response.status_code == 202
    assert len(sleeps) == 2


def test_request_with_retry_stops_at_budget(monkeypatch):
    attempts: list[int] = []

    class _FakeClient:
        def __init__(self, **_kwargs):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *_args):
            return False

        def request(self, **_kwargs):
            attempts.append(1)
            return _FakeResponse(500, None)

    monkeypatch.setattr(klaviyo_client.httpx, "Client", _FakeClient)
    monkeypatch.setattr(klaviyo_client.time, "sleep", lambda _delay: None)
    response = klaviyo_client._request_with_retry(
        method="POST",
        url="https://a.klaviyo.com/api/events/",
        headers={},
        timeout_seconds=5.0,
        max_attempts=2,
    )

    assert response.status_code == 500
    assert len(attempts) == 2


def test_connectivity_errors_become_transient_provider_errors(monkeypatch):
    def _fake_request_with_retry(**_kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(klaviyo_client, "_request_with_retry", _fake_request_with_retry)
    with pytest.raises(klaviyo_client.KlaviyoProviderError) as excinfo:
        klaviyo_client.create_event("pk_test", {"data": {}})
    assert excinfo.value.retryable is True


def test_registry_covers_all_public_client_methods():
    public_callables = {
        name
        for name, value in vars(klaviyo_client).items()
        if isinstance(value, types.FunctionType) and not name.startswith("_")
    }
    registered = set(klaviyo_client.KLAVIYO_IMPLEMENTED_ENDPOINT_REGISTRY.keys())
    assert public_callables == registered
