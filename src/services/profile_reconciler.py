from __future__ import annotations

import logging
from typing import Any

from src.domain.outcomes import StepResult
from src.domain.provider_errors import provider_error_detail
from src.domain.quiz_history import HISTORY_PROPERTY, merge_profile_properties
from src.models.relay import NormalizedFact
from src.observability import incr_metric, log_event
from src.providers.klaviyo import client as klaviyo_client
from src.providers.klaviyo.client import KlaviyoProviderError
from src.services.klaviyo_target import KlaviyoTarget


class ProfileResolutionFailed(Exception):
    """No Klaviyo profile id could be created or found for an email."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def _profile_id(document: dict[str, Any]) -> str | None:
    data = document.get("data")
    if isinstance(data, dict) and data.get("id"):
        return str(data["id"])
    return None


def lookup_profile_id(target: KlaviyoTarget, email: str, *, request_id: str | None = None) -> str | None:
    try:
        profiles = klaviyo_client.find_profiles_by_email(target.api_key, email, **target.call_kwargs())
    except KlaviyoProviderError as exc:
        log_event(
            "klaviyo_profile_lookup_failed",
            level=logging.WARNING,
            request_id=request_id,
            **provider_error_detail(provider="klaviyo", operation="find_profiles_by_email", exc=exc),
        )
        return None
    for profile in profiles:
        if profile.get("id"):
            return str(profile["id"])
    return None


def resolve_profile_id(target: KlaviyoTarget, email: str, *, request_id: str | None = None) -> str:
    """Create the profile, or recover the existing one's id on conflict."""
    status_code: int | None = None
    try:
        created = klaviyo_client.create_profile(
            target.api_key,
            target.schema.profile_create_payload(email),
            **target.call_kwargs(),
        )
    except KlaviyoProviderError as exc:
        status_code = exc.status_code
        if exc.status_code == 409:
            duplicate_id = exc.duplicate_profile_id
            if duplicate_id:
                incr_metric("klaviyo.profile.resolved", via="conflict_meta")
                log_event(
                    "klaviyo_profile_conflict_recovered",
                    request_id=request_id,
                    profile_id=duplicate_id,
                )
                return duplicate_id
            log_event("klaviyo_profile_conflict_without_id", level=logging.WARNING, request_id=request_id)
        else:
            log_event(
                "klaviyo_profile_create_failed",
                level=logging.WARNING,
                request_id=request_id,
                **provider_error_detail(provider="klaviyo", operation="create_profile", exc=exc),
            )
    else:
        profile_id = _profile_id(created)
        if profile_id:
            incr_metric("klaviyo.profile.resolved", via="created")
            log_event("klaviyo_profile_created", request_id=request_id, profile_id=profile_id)
            return profile_id
        log_event("klaviyo_profile_create_accepted_without_id", request_id=request_id)

    profile_id = lookup_profile_id(target, email, request_id=request_id)
    if profile_id:
        incr_metric("klaviyo.profile.resolved", via="lookup")
        log_event("klaviyo_profile_found_by_email", request_id=request_id, profile_id=profile_id)
        return profile_id

    incr_metric("klaviyo.profile.unresolved")
    raise ProfileResolutionFailed("Unable to resolve Klaviyo profile id", status_code=status_code)


def sync_profile_properties(
    target: KlaviyoTarget,
    profile_id: str,
    fact: NormalizedFact,
    *,
    history_limit: int,
    defaults: dict[str, Any],
    request_id: str | None = None,
) -> StepResult[dict[str, Any]]:
    read_ok = True
    existing: dict[str, Any] = {}
    try:
        document = klaviyo_client.get_profile(target.api_key, profile_id, **target.call_kwargs())
    except KlaviyoProviderError as exc:
        read_ok = False
        log_event(
            "klaviyo_profile_read_failed",
            level=logging.WARNING,
            request_id=request_id,
            profile_id=profile_id,
            **provider_error_detail(provider="klaviyo", operation="get_profile", exc=exc),
        )
    else:
        attributes = (document.get("data") or {}).get("attributes") or {}
        properties = attributes.get("properties")
        if isinstance(properties, dict):
            existing = properties

    if read_ok:
        patch = merge_profile_properties(existing, fact, history_limit=history_limit, defaults=defaults)
    else:
        # without the current properties the history and defaults cannot be merged safely
        patch = merge_profile_properties({}, fact, history_limit=history_limit, defaults={})
        patch.pop(HISTORY_PROPERTY, None)

    try:
        klaviyo_client.update_profile(
            target.api_key,
            profile_id,
            target.schema.profile_patch_payload(profile_id, patch),
            **target.call_kwargs(),
        )
    except KlaviyoProviderError as exc:
        log_event(
            "klaviyo_profile_patch_failed",
            level=logging.WARNING,
            request_id=request_id,
            profile_id=profile_id,
            **provider_error_detail(provider="klaviyo", operation="update_profile", exc=exc),
        )
        return StepResult.failure(str(exc), code=exc.category, status_code=exc.status_code)

    log_event(
        "klaviyo_profile_patched",
        request_id=request_id,
        profile_id=profile_id,
        properties=sorted(patch),
        history_length=len(patch.get(HISTORY_PROPERTY) or []),
    )
    return StepResult.success(patch)
