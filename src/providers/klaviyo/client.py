from __future__ import annotations

import random
import time
from typing import Any

import httpx


KLAVIYO_API_BASE = "https://a.klaviyo.com"
KLAVIYO_DEFAULT_REVISION = "2024-07-15"
_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_MAX_RETRY_ATTEMPTS = 3
_RETRY_BASE_DELAY_SECONDS = 0.25
_RETRY_MAX_DELAY_SECONDS = 2.0

_EP_PROFILES = "/api/profiles/"
_EP_SUBSCRIPTION_JOBS = "/api/profile-subscription-bulk-create-jobs/"
_EP_EVENTS = "/api/events/"
_EP_METRICS = "/api/metrics/"
_EP_LISTS = "/api/lists/"


class KlaviyoProviderError(Exception):
    """Provider-level exception for Klaviyo integration failures."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        errors: list[dict[str, Any]] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []

    @property
    def category(self) -> str:
        if self.status_code == 409:
            return "conflict"
        if self.status_code in _RETRYABLE_STATUS_CODES:
            return "transient"
        message = str(self).lower()
        if "connectivity error" in message:
            return "transient"
        if (
            "invalid klaviyo api key" in message
            or "endpoint not found" in message
            or "missing klaviyo api key" in message
            or "unexpected klaviyo" in message
        ):
            return "terminal"
        if self.status_code is not None and 400 <= self.status_code < 500:
            return "terminal"
        return "unknown"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"

    @property
    def duplicate_profile_id(self) -> str | None:
        for error in self.errors:
            meta = error.get("meta") if isinstance(error, dict) else None
            if isinstance(meta, dict) and meta.get("duplicate_profile_id"):
                return str(meta["duplicate_profile_id"])
        return None


def _build_base_url(base_url: str | None) -> str:
    return (base_url or KLAVIYO_API_BASE).rstrip("/")


def _headers(api_key: str, revision: str | None) -> dict[str, str]:
    return {
        "Authorization": f"Klaviyo-API-Key {api_key}",
        "Accept": "application/json",
        "Content-Type": "application/json",
        "revision": revision or KLAVIYO_DEFAULT_REVISION,
    }


def _request_with_retry(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    timeout_seconds: float,
    params: dict[str, Any] | None = None,
    json_payload: dict[str, Any] | None = None,
    max_attempts: int = _MAX_RETRY_ATTEMPTS,
) -> httpx.Response:
    last_exc: httpx.HTTPError | None = None
    response: httpx.Response | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            with httpx.Client(timeout=timeout_seconds) as client:
                response = client.request(
                    method=method,
                    url=url,
                    headers=headers,
                    params=params,
                    json=json_payload,
                )
        except httpx.HTTPError as exc:
            last_exc = exc
            if attempt >= max_attempts:
                raise
            delay = min(_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), _RETRY_MAX_DELAY_SECONDS)
            delay += random.uniform(0, delay * 0.2)
            time.sleep(delay)
            continue

        if response.status_code in _RETRYABLE_STATUS_CODES and attempt < max_attempts:
            delay = min(_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), _RETRY_MAX_DELAY_SECONDS)
            delay += random.uniform(0, delay * 0.2)
            time.sleep(delay)
            continue
        return response

    if last_exc:
        raise last_exc
    assert response is not None
    return response


def _error_entries(response: httpx.Response) -> list[dict[str, Any]]:
    try:
        payload = response.json()
    except ValueError:
        return []
    errors = payload.get("errors") if isinstance(payload, dict) else None
    if not isinstance(errors, list):
        return []
    return [item for item in errors if isinstance(item, dict)]


def _request(
    *,
    method: str,
    path: str,
    api_key: str,
    revision: str | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 10.0,
    params: dict[str, Any] | None = None,
    json_payload: dict[str, Any] | None = None,
    max_attempts: int = 1,
) -> httpx.Response:
    if not api_key:
        raise KlaviyoProviderError("Missing Klaviyo API key")

    url = path if path.startswith("http") else f"{_build_base_url(base_url)}{path}"
    try:
        response = _request_with_retry(
            method=method,
            url=url,
            headers=_headers(api_key, revision),
            timeout_seconds=timeout_seconds,
            params=params,
            json_payload=json_payload,
            max_attempts=max(max_attempts, 1),
        )
    except httpx.HTTPError as exc:
        raise KlaviyoProviderError(f"Klaviyo connectivity error: {exc}") from exc

    if response.status_code in {401, 403}:
        raise KlaviyoProviderError("Invalid Klaviyo API key", status_code=response.status_code)
    if response.status_code == 404:
        raise KlaviyoProviderError(
            f"Klaviyo endpoint not found: {path}",
            status_code=404,
            errors=_error_entries(response),
        )
    if response.status_code >= 400:
        raise KlaviyoProviderError(
            f"Klaviyo API returned HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
            errors=_error_entries(response),
        )
    return response


def _json_body(response: httpx.Response) -> dict[str, Any]:
    if response.status_code == 204 or not (response.text or "").strip():
        return {}
    try:
        data = response.json()
    except ValueError as exc:
        raise KlaviyoProviderError("Klaviyo returned non-JSON response", status_code=response.status_code) from exc
    if not isinstance(data, dict):
        raise KlaviyoProviderError("Unexpected Klaviyo response type", status_code=response.status_code)
    return data


def create_profile(
    api_key: str,
    payload: dict[str, Any],
    *,
    revision: str | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 10.0,
) -> dict[str, Any]:
    response = _request(
        method="POST",
        path=_EP_PROFILES,
        api_key=api_key,
        revision=revision,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        json_payload=payload,
    )
    return _json_body(response)


def get_profile(
    api_key: str,
    profile_id: str,
    *,
    revision: str | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 10.0,
) -> dict[str, Any]:
    response = _request(
        method="GET",
        path=f"{_EP_PROFILES}{profile_id}/",
        api_key=api_key,
        revision=revision,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
    )
    return _json_body(response)


def find_profiles_by_email(
    api_key: str,
    email: str,
    *,
    revision: str | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 10.0,
) -> list[dict[str, Any]]:
    quoted = email.replace("\\", "\\\\").replace('"', '\\"')
    response = _request(
        method="GET",
        path=_EP_PROFILES,
        api_key=api_key,
        revision=revision,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        params={"filter": f'equals(email,"{quoted}")'},
    )
    data = _json_body(response).get("data")
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if isinstance(data, dict):
        return [data]
    return []


def update_profile(
    api_key: str,
    profile_id: str,
    payload: dict[str, Any],
    *,
    revision: str | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 10.0,
) -> dict[str, Any]:
    response = _request(
        method="PATCH",
        path=f"{_EP_PROFILES}{profile_id}/",
        api_key=api_key,
        revision=revision,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        json_payload=payload,
    )
    return _json_body(response)


def create_subscription_job(
    api_key: str,
    payload: dict[str, Any],
    *,
    revision: str | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 10.0,
) -> str | None:
    """Start a bulk subscription job and return its status URL, if Klaviyo gave one."""
    response = _request(
        method="POST",
        path=_EP_SUBSCRIPTION_JOBS,
        api_key=api_key,
        revision=revision,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        json_payload=payload,
    )
    headers = getattr(response, "headers", None) or {}
    location = headers.get("Location") or headers.get("location")
    if location:
        return str(location)
    job_id = (_json_body(response).get("data") or {}).get("id")
    if job_id:
        return f"{_build_base_url(base_url)}{_EP_SUBSCRIPTION_JOBS}{job_id}/"
    return None


def get_job_status(
    api_key: str,
    job_url: str,
    *,
    revision: str | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 10.0,
) -> str | None:
    response = _request(
        method="GET",
        path=job_url,
        api_key=api_key,
        revision=revision,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
    )
    data = _json_body(response).get("data") or {}
    attributes = data.get("attributes") if isinstance(data, dict) else None
    if not isinstance(attributes, dict) or attributes.get("status") is None:
        return None
    return str(attributes["status"]).strip().lower()


def add_profiles_to_list(
    api_key: str,
    list_id: str,
    payload: dict[str, Any],
    *,
    revision: str | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 10.0,
) -> None:
    _request(
        method="POST",
        path=f"{_EP_LISTS}{list_id}/relationships/profiles/",
        api_key=api_key,
        revision=revision,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        json_payload=payload,
    )


def create_event(
    api_key: str,
    payload: dict[str, Any],
    *,
    revision: str | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 10.0,
    max_attempts: int = _MAX_RETRY_ATTEMPTS,
) -> None:
    _request(
        method="POST",
        path=_EP_EVENTS,
        api_key=api_key,
        revision=revision,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        json_payload=payload,
        max_attempts=max_attempts,
    )


def list_metrics(
    api_key: str,
    *,
    page_url: str | None = None,
    params: dict[str, Any] | None = None,
    revision: str | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 10.0,
) -> dict[str, Any]:
    response = _request(
        method="GET",
        path=page_url or _EP_METRICS,
        api_key=api_key,
        revision=revision,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        params=None if page_url else params,
    )
    return _json_body(response)


def create_metric(
    api_key: str,
    payload: dict[str, Any],
    *,
    revision: str | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 10.0,
) -> dict[str, Any]:
    response = _request(
        method="POST",
        path=_EP_METRICS,
        api_key=api_key,
        revision=revision,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        json_payload=payload,
    )
    data = _json_body(response)
    if not isinstance(data.get("data"), dict):
        raise KlaviyoProviderError("Unexpected Klaviyo create metric response shape", status_code=response.status_code)
    return data


KLAVIYO_IMPLEMENTED_ENDPOINT_REGISTRY: dict[str, list[dict[str, str]]] = {
    "create_profile": [{"method": "POST", "path": _EP_PROFILES}],
    "get_profile": [{"method": "GET", "path": "/api/profiles/{id}/"}],
    "find_profiles_by_email": [{"method": "GET", "path": _EP_PROFILES}],
    "update_profile": [{"method": "PATCH", "path": "/api/profiles/{id}/"}],
    "create_subscription_job": [{"method": "POST", "path": _EP_SUBSCRIPTION_JOBS}],
    "get_job_status": [{"method": "GET", "path": "/api/profile-subscription-bulk-create-jobs/{job_id}/"}],
    "add_profiles_to_list": [{"method": "POST", "path": "/api/lists/{id}/relationships/profiles/"}],
    "create_event": [{"method": "POST", "path": _EP_EVENTS}],
    "list_metrics": [{"method": "GET", "path": _EP_METRICS}],
    "create_metric": [{"method": "POST", "path": _EP_METRICS}],
}
