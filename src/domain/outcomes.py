from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from src.models.relay import WebhookRelayResponse

T = TypeVar("T")


@dataclass
class StepResult(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    status_code: Optional[int] = None

    @staticmethod
    def success(value: T = None) -> "StepResult[T]":
        return StepResult(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown", status_code: int | None = None) -> "StepResult[T]":
        return StepResult(ok=False, error=error, error_code=code, status_code=status_code)


class RelayOutcomeKind(str, Enum):
    DELIVERED = "delivered"
    SKIPPED_NO_EMAIL = "skipped_no_email"
    SKIPPED_INVALID_EMAIL = "skipped_invalid_email"
    SKIPPED_TEST_PAYLOAD = "skipped_test_payload"
    SKIPPED_SECRET_MISMATCH = "skipped_secret_mismatch"
    PROFILE_UNRESOLVED = "profile_unresolved"
    EVENT_FAILED = "event_failed"
    INVALID_PAYLOAD = "invalid_payload"
    NOT_CONFIGURED = "not_configured"


_SKIP_NOTES: dict[RelayOutcomeKind, str] = {
    RelayOutcomeKind.SKIPPED_NO_EMAIL: "No email; skipping.",
    RelayOutcomeKind.SKIPPED_INVALID_EMAIL: "Invalid email; skipping.",
    RelayOutcomeKind.SKIPPED_TEST_PAYLOAD: "Typeform test – skipped Klaviyo",
    RelayOutcomeKind.SKIPPED_SECRET_MISMATCH: "Secret mismatch",
}


@dataclass
class RelayOutcome:
    kind: RelayOutcomeKind
    note: str | None = None
    upstream_status: int | None = None
    steps: dict[str, StepResult[Any]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.kind == RelayOutcomeKind.DELIVERED or self.kind in _SKIP_NOTES


def relay_http_response(outcome: RelayOutcome) -> tuple[int, dict[str, Any]]:
    """Map a relay outcome to ``(http_status, body)``.

    Everything the upstream delivery system could usefully retry is still
    answered with 200; only internal faults get another status.
    """
    if outcome.kind == RelayOutcomeKind.INVALID_PAYLOAD:
        body = WebhookRelayResponse(ok=False, error=outcome.note or "Invalid JSON payload")
        return 400, body.model_dump(exclude_none=True)
    if outcome.kind == RelayOutcomeKind.NOT_CONFIGURED:
        body = WebhookRelayResponse(ok=False, error=outcome.note or "Server not configured")
        return 500, body.model_dump(exclude_none=True)

    if outcome.kind in _SKIP_NOTES:
        body = WebhookRelayResponse(ok=True, note=outcome.note or _SKIP_NOTES[outcome.kind])
    elif outcome.kind == RelayOutcomeKind.EVENT_FAILED:
        body = WebhookRelayResponse(
            ok=False,
            upstream="klaviyo",
            status=outcome.upstream_status,
            note=outcome.note,
        )
    elif outcome.kind == RelayOutcomeKind.PROFILE_UNRESOLVED:
        body = WebhookRelayResponse(
            ok=False,
            upstream="klaviyo",
            status=outcome.upstream_status,
            note=outcome.note or "Profile could not be resolved; event not sent.",
        )
    else:
        body = WebhookRelayResponse(ok=True, note=outcome.note)
    return 200, body.model_dump(exclude_none=True)
