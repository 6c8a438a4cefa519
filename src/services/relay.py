from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from typing import Any

from src.config import Settings, settings, split_refs
from src.domain.normalization import (
    UNKNOWN_ENDING_KEY,
    NormalizerOptions,
    is_test_submission,
    normalize_submission,
    parse_payload,
)
from src.domain.outcomes import RelayOutcome, RelayOutcomeKind, StepResult
from src.observability import incr_metric, log_event, mask_email
from src.services.dispatcher import send_quiz_event, subscribe_profile
from src.services.klaviyo_target import KlaviyoTarget
from src.services.profile_reconciler import ProfileResolutionFailed, resolve_profile_id, sync_profile_properties


def normalizer_options(config: Settings) -> NormalizerOptions:
    return NormalizerOptions(
        consent_refs=split_refs(config.typeform_consent_field_refs),
        email_refs=split_refs(config.typeform_email_field_refs),
        horse_refs=split_refs(config.typeform_horse_field_refs),
        ending_refs=split_refs(config.typeform_ending_field_refs),
        default_language=config.default_language,
    )


def property_defaults(config: Settings) -> dict[str, Any]:
    return {"quiz_name": config.default_quiz_name, "quiz_source": config.default_source}


def _sent_secret(raw_payload: dict[str, Any]) -> str | None:
    secret = raw_payload.get("secret")
    if secret is None:
        form_response = raw_payload.get("form_response")
        hidden = form_response.get("hidden") if isinstance(form_response, dict) else None
        if isinstance(hidden, dict):
            secret = hidden.get("secret")
    if secret is None or not str(secret).strip():
        return None
    return str(secret)


def _typeform_signature(secret: str, raw_body: bytes) -> str:
    digest = hmac.new(secret.encode(), raw_body, hashlib.sha256).digest()
    return "sha256=" + base64.b64encode(digest).decode()


def secret_mismatch(
    raw_payload: dict[str, Any],
    raw_body: bytes,
    *,
    secret: str | None,
    signature_header: str | None = None,
) -> bool:
    if not secret:
        return False
    sent = _sent_secret(raw_payload)
    if sent is not None and not hmac.compare_digest(sent.encode(), secret.encode()):
        return True
    if signature_header:
        expected = _typeform_signature(secret, raw_body)
        if not hmac.compare_digest(signature_header.strip().encode(), expected.encode()):
            return True
    return False


def _finish(outcome: RelayOutcome, *, request_id: str | None) -> RelayOutcome:
    incr_metric("typeform.relay.outcome", kind=outcome.kind.value)
    log_event(
        "typeform_relay_finished",
        level=logging.INFO if outcome.ok else logging.WARNING,
        request_id=request_id,
        kind=outcome.kind.value,
        note=outcome.note,
        upstream_status=outcome.upstream_status,
        steps={name: step.ok for name, step in outcome.steps.items()},
    )
    return outcome


def relay_typeform_submission(
    raw_body: bytes,
    *,
    signature_header: str | None = None,
    request_id: str | None = None,
) -> RelayOutcome:
    """Relay one Typeform webhook delivery to Klaviyo."""
    try:
        target = KlaviyoTarget.from_settings(settings)
    except ValueError as exc:
        log_event("typeform_relay_not_configured", level=logging.ERROR, request_id=request_id, error=str(exc))
        return _finish(
            RelayOutcome(RelayOutcomeKind.NOT_CONFIGURED, note="Server not configured"),
            request_id=request_id,
        )

    try:
        raw_payload = json.loads(raw_body.decode("utf-8"))
    except ValueError:
        log_event("typeform_payload_invalid_json", level=logging.WARNING, request_id=request_id)
        return _finish(
            RelayOutcome(RelayOutcomeKind.INVALID_PAYLOAD, note="Invalid JSON payload"),
            request_id=request_id,
        )
    if not isinstance(raw_payload, dict):
        return _finish(
            RelayOutcome(RelayOutcomeKind.INVALID_PAYLOAD, note="JSON object expected"),
            request_id=request_id,
        )

    if secret_mismatch(
        raw_payload,
        raw_body,
        secret=settings.typeform_secret,
        signature_header=signature_header,
    ):
        log_event("typeform_secret_mismatch", level=logging.WARNING, request_id=request_id)
        return _finish(RelayOutcome(RelayOutcomeKind.SKIPPED_SECRET_MISMATCH), request_id=request_id)

    if is_test_submission(parse_payload(raw_payload).form_response):
        log_event("typeform_test_payload_skipped", request_id=request_id)
        return _finish(RelayOutcome(RelayOutcomeKind.SKIPPED_TEST_PAYLOAD), request_id=request_id)

    fact = normalize_submission(raw_payload, normalizer_options(settings))
    log_event(
        "typeform_submission_normalized",
        request_id=request_id,
        email=mask_email(fact.email),
        form_id=fact.form_id,
        response_token=fact.response_token,
        ending_key=fact.ending_key,
        quiz_path=fact.quiz_path,
        quiz_group=fact.quiz_group,
        consent_given=fact.consent_given,
        language=fact.language,
        has_horse_name=bool(fact.horse_name),
    )
    if fact.ending_key == UNKNOWN_ENDING_KEY:
        log_event(
            "quiz_ending_unresolved",
            level=logging.WARNING,
            request_id=request_id,
            form_id=fact.form_id,
            response_token=fact.response_token,
        )

    if not fact.email:
        kind = RelayOutcomeKind.SKIPPED_INVALID_EMAIL if fact.raw_email else RelayOutcomeKind.SKIPPED_NO_EMAIL
        log_event(
            "typeform_submission_without_email",
            level=logging.WARNING,
            request_id=request_id,
            kind=kind.value,
            raw_email=mask_email(fact.raw_email),
        )
        return _finish(RelayOutcome(kind), request_id=request_id)

    defaults = property_defaults(settings)
    outcome = RelayOutcome(RelayOutcomeKind.DELIVERED)
    try:
        profile_id = resolve_profile_id(target, fact.email, request_id=request_id)
    except ProfileResolutionFailed as exc:
        outcome.kind = RelayOutcomeKind.PROFILE_UNRESOLVED
        outcome.upstream_status = exc.status_code
        outcome.steps["profile"] = StepResult.failure(str(exc), code="profile_unresolved", status_code=exc.status_code)
        return _finish(outcome, request_id=request_id)
    outcome.steps["profile"] = StepResult.success(profile_id)

    outcome.steps["properties"] = sync_profile_properties(
        target,
        profile_id,
        fact,
        history_limit=settings.quiz_history_limit,
        defaults=defaults,
        request_id=request_id,
    )

    if fact.consent_given and settings.klaviyo_list_id:
        outcome.steps["subscription"] = subscribe_profile(
            target,
            email=fact.email,
            profile_id=profile_id,
            list_id=settings.klaviyo_list_id,
            list_mode=settings.klaviyo_list_mode,
            custom_source=fact.quiz_name or settings.default_quiz_name,
            poll_attempts=settings.klaviyo_subscription_poll_attempts,
            poll_interval_seconds=settings.klaviyo_subscription_poll_interval_seconds,
            request_id=request_id,
        )
    elif fact.consent_given:
        log_event("klaviyo_subscription_skipped_no_list", level=logging.WARNING, request_id=request_id)

    event_step = send_quiz_event(
        target,
        fact,
        profile_id=profile_id,
        metric_name=settings.klaviyo_metric_name,
        metric_id=settings.klaviyo_metric_id,
        max_attempts=settings.klaviyo_event_max_attempts,
        defaults=defaults,
        request_id=request_id,
    )
    outcome.steps["event"] = event_step
    if not event_step.ok:
        outcome.kind = RelayOutcomeKind.EVENT_FAILED
        outcome.upstream_status = event_step.status_code
        outcome.note = "Klaviyo event failed"
    return _finish(outcome, request_id=request_id)
