from __future__ import annotations

from typing import Any, Protocol


class ProviderErrorLike(Protocol):
    status_code: int | None
    errors: list[dict[str, Any]]

    @property
    def category(self) -> str: ...

    @property
    def retryable(self) -> bool: ...


def provider_error_codes(exc: ProviderErrorLike) -> list[str]:
    """Distinct ``errors[].code`` values of a JSON:API error body, in order."""
    codes: list[str] = []
    for entry in getattr(exc, "errors", None) or []:
        code = entry.get("code") if isinstance(entry, dict) else None
        if code and str(code) not in codes:
            codes.append(str(code))
    return codes


def provider_error_detail(*, provider: str, operation: str, exc: ProviderErrorLike) -> dict[str, Any]:
    detail: dict[str, Any] = {
        "type": "provider_error",
        "provider": provider,
        "operation": operation,
        "category": exc.category,
        "retryable": exc.retryable,
        "status_code": exc.status_code,
        "message": str(exc)[:300],
    }
    codes = provider_error_codes(exc)
    if codes:
        detail["error_codes"] = codes
    return detail
