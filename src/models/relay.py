from __future__ import annotations

from pydantic import BaseModel


class NormalizedFact(BaseModel):
    email: str | None = None
    raw_email: str | None = None
    consent_given: bool = False
    ending_title: str | None = None
    ending_key: str = "unknown"
    quiz_path: str | None = None
    quiz_group: str | None = None
    quiz_name: str | None = None
    source: str | None = None
    horse_name: str | None = None
    language: str | None = None
    newsletter_segment: str | None = None
    country: str | None = None
    submitted_at: str | None = None
    form_id: str | None = None
    response_token: str | None = None


class QuizHistoryEntry(BaseModel):
    date: str | None = None
    horse: str | None = None
    ending: str | None = None
    ending_key: str | None = None
    quiz_path: str | None = None
    quiz_group: str | None = None
    quiz_name: str | None = None
    source: str | None = None
    typeform_form_id: str | None = None
    typeform_response_id: str | None = None


class WebhookRelayResponse(BaseModel):
    ok: bool
    note: str | None = None
    upstream: str | None = None
    status: int | None = None
    error: str | None = None
