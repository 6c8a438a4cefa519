from __future__ import annotations

import logging
import time
from typing import Any

from src.domain.outcomes import StepResult
from src.domain.provider_errors import provider_error_detail
from src.models.relay import NormalizedFact
from src.observability import incr_metric, log_event
from src.providers.klaviyo import client as klaviyo_client
from src.providers.klaviyo.client import KlaviyoProviderError
from src.services.klaviyo_target import KlaviyoTarget


_JOB_SUCCEEDED = {"complete", "completed", "succeeded", "success"}
_JOB_FAILED = {"cancelled", "canceled", "failed", "error"}
_METRIC_MAX_PAGES = 20


def wait_for_subscription_job(
    target: KlaviyoTarget,
    job_url: str,
    *,
    attempts: int,
    interval_seconds: float,
    request_id: str | None = None,
) -> str:
    """Poll a bulk subscription job; returns ``succeeded``, ``failed`` or ``timeout``."""
    for attempt in range(1, attempts + 1):
        try:
            status_value = klaviyo_client.get_job_status(target.api_key, job_url, **target.call_kwargs())
        except KlaviyoProviderError as exc:
            status_value = None
            log_event(
                "klaviyo_subscription_poll_failed",
                level=logging.WARNING,
                request_id=request_id,
                attempt=attempt,
                **provider_error_detail(provider="klaviyo", operation="get_job_status", exc=exc),
            )
        if status_value in _JOB_SUCCEEDED:
            return "succeeded"
        if status_value in _JOB_FAILED:
            return "failed"
        if attempt < attempts:
            time.sleep(interval_seconds)
    return "timeout"


def subscribe_profile(
    target: KlaviyoTarget,
    *,
    email: str,
    profile_id: str | None,
    list_id: str,
    list_mode: str = "subscription_job",
    custom_source: str | None = None,
    poll_attempts: int = 0,
    poll_interval_seconds: float = 1.0,
    request_id: str | None = None,
) -> StepResult[str]:
    if list_mode == "list_relationship":
        try:
            klaviyo_client.add_profiles_to_list(
                target.api_key,
                list_id,
                target.schema.list_relationship_payload(email, profile_id),
                **target.call_kwargs(),
            )
        except KlaviyoProviderError as exc:
            log_event(
                "klaviyo_list_link_failed",
                level=logging.ERROR,
                request_id=request_id,
                list_id=list_id,
                **provider_error_detail(provider="klaviyo", operation="add_profiles_to_list", exc=exc),
            )
            return StepResult.failure(str(exc), code=exc.category, status_code=exc.status_code)
        log_event("klaviyo_list_linked", request_id=request_id, list_id=list_id, profile_id=profile_id)
        return StepResult.success("linked")

    try:
        job_url = klaviyo_client.create_subscription_job(
            target.api_key,
            target.schema.subscription_job_payload(list_id=list_id, email=email, custom_source=custom_source),
            **target.call_kwargs(),
        )
    except KlaviyoProviderError as exc:
        log_event(
            "klaviyo_subscription_failed",
            level=logging.ERROR,
            request_id=request_id,
            list_id=list_id,
            **provider_error_detail(provider="klaviyo", operation="create_subscription_job", exc=exc),
        )
        return StepResult.failure(str(exc), code=exc.category, status_code=exc.status_code)

    if not job_url or poll_attempts <= 0:
        log_event("klaviyo_subscription_accepted", request_id=request_id, list_id=list_id, job_url=job_url)
        return StepResult.success("accepted")

    job_status = wait_for_subscription_job(
        target,
        job_url,
        attempts=poll_attempts,
        interval_seconds=poll_interval_seconds,
        request_id=request_id,
    )
    incr_metric("klaviyo.subscription.job", status=job_status)
    if job_status == "failed":
        log_event("klaviyo_subscription_job_failed", level=logging.ERROR, request_id=request_id, job_url=job_url)
        return StepResult.failure("Subscription job failed", code="job_failed")
    if job_status == "timeout":
        log_event(
            "klaviyo_subscription_unconfirmed",
            level=logging.WARNING,
            request_id=request_id,
            job_url=job_url,
            attempts=poll_attempts,
        )
        return StepResult.success("unconfirmed")
    log_event("klaviyo_subscription_confirmed", request_id=request_id, list_id=list_id)
    return StepResult.success("succeeded")


def resolve_metric_id(
    target: KlaviyoTarget,
    metric_name: str,
    *,
    configured_id: str | None = None,
    request_id: str | None = None,
) -> str:
    if configured_id:
        return configured_id

    page_url: str | None = None
    for _ in range(_METRIC_MAX_PAGES):
        page = klaviyo_client.list_metrics(target.api_key, page_url=page_url, **target.call_kwargs())
        for item in page.get("data") or []:
            if not isinstance(item, dict):
                continue
            attributes = item.get("attributes") or {}
            if attributes.get("name") == metric_name and item.get("id"):
                return str(item["id"])
        next_url = (page.get("links") or {}).get("next")
        if not next_url:
            break
        page_url = str(next_url)

    created = klaviyo_client.create_metric(
        target.api_key,
        target.schema.metric_create_payload(metric_name),
        **target.call_kwargs(),
    )
    metric_id = created["data"].get("id")
    if not metric_id:
        raise KlaviyoProviderError("Unexpected Klaviyo create metric response shape")
    log_event("klaviyo_metric_created", request_id=request_id, metric_name=metric_name, metric_id=metric_id)
    return str(metric_id)


def build_event_properties(fact: NormalizedFact, *, defaults: dict[str, Any]) -> dict[str, Any]:
    properties = {
        "quiz_name": fact.quiz_name or defaults.get("quiz_name"),
        "ending_key": fact.ending_key,
        "ending_title": fact.ending_title,
        "quiz_path": fact.quiz_path,
        "quiz_group": fact.quiz_group,
        "horse_name": fact.horse_name,
        "source": fact.source or defaults.get("quiz_source"),
        "language": fact.language,
        "newsletter_segment": fact.newsletter_segment,
        "country": fact.country,
        "submitted_at": fact.submitted_at,
        "typeform_form_id": fact.form_id,
        "typeform_response_id": fact.response_token,
        "consent_given": bool(fact.consent_given),
    }
    return {key: value for key, value in properties.items() if value is not None}


def send_quiz_event(
    target: KlaviyoTarget,
    fact: NormalizedFact,
    *,
    profile_id: str | None,
    metric_name: str,
    metric_id: str | None = None,
    max_attempts: int = 3,
    defaults: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> StepResult[None]:
    try:
        if target.schema.requires_metric_id:
            metric_id = resolve_metric_id(
                target,
                metric_name,
                configured_id=metric_id,
                request_id=request_id,
            )
        payload = target.schema.event_payload(
            metric_name=metric_name,
            metric_id=metric_id,
            email=fact.email or "",
            profile_id=profile_id,
            properties=build_event_properties(fact, defaults=defaults or {}),
            time=fact.submitted_at or "",
            unique_id=fact.response_token,
        )
        klaviyo_client.create_event(
            target.api_key,
            payload,
            max_attempts=max_attempts,
            **target.call_kwargs(),
        )
    except KlaviyoProviderError as exc:
        incr_metric("klaviyo.event.failed", category=exc.category)
        log_event(
            "klaviyo_event_failed",
            level=logging.ERROR,
            request_id=request_id,
            metric_name=metric_name,
            **provider_error_detail(provider="klaviyo", operation="create_event", exc=exc),
        )
        return StepResult.failure(str(exc), code=exc.category, status_code=exc.status_code)

    incr_metric("klaviyo.event.sent", schema=target.schema.name)
    log_event(
        "klaviyo_event_sent",
        request_id=request_id,
        metric_name=metric_name,
        schema=target.schema.name,
        ending_key=fact.ending_key,
    )
    return StepResult.success()
