from __future__ import annotations

import json
from typing import Any

from src.domain.normalization import UNKNOWN_ENDING_KEY
from src.models.relay import NormalizedFact, QuizHistoryEntry


HISTORY_PROPERTY = "quiz_history"
LAST_QUIZ_DATE_PROPERTY = "last_quiz_date"

# (profile property, fact attribute, history entry key)
_MERGED_PROPERTIES: tuple[tuple[str, str, str | None], ...] = (
    ("ending_title", "ending_title", "ending"),
    ("ending_key", "ending_key", "ending_key"),
    ("quiz_path", "quiz_path", "quiz_path"),
    ("quiz_group", "quiz_group", "quiz_group"),
    ("quiz_name", "quiz_name", "quiz_name"),
    ("quiz_source", "source", "source"),
    ("horse_name", "horse_name", "horse"),
    ("language", "language", None),
    ("newsletter_segment", "newsletter_segment", None),
    ("country", "country", None),
)


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def _first_present(*values: Any) -> Any:
    for value in values:
        if _present(value):
            return value
    return None


def build_history_entry(fact: NormalizedFact) -> dict[str, Any]:
    entry = QuizHistoryEntry(
        date=fact.submitted_at,
        horse=fact.horse_name,
        ending=fact.ending_title,
        ending_key=fact.ending_key if fact.ending_key != UNKNOWN_ENDING_KEY else None,
        quiz_path=fact.quiz_path,
        quiz_group=fact.quiz_group,
        quiz_name=fact.quiz_name,
        source=fact.source,
        typeform_form_id=fact.form_id,
        typeform_response_id=fact.response_token,
    )
    return entry.model_dump(exclude_none=True)


def existing_history(properties: dict[str, Any] | None) -> list[dict[str, Any]]:
    raw = (properties or {}).get(HISTORY_PROPERTY)
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]


def merge_profile_properties(
    existing: dict[str, Any] | None,
    fact: NormalizedFact,
    *,
    history_limit: int = 50,
    defaults: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the property patch for one submission.

    Each property resolves to the new value, else the previous newest history
    entry, else the current remote property, else a static default. Properties
    that resolve to nothing are left out so they never erase a remote value.
    """
    existing = existing or {}
    defaults = defaults or {}
    prior = existing_history(existing)
    latest = prior[0] if prior else {}

    if fact.response_token:
        prior = [item for item in prior if item.get("typeform_response_id") != fact.response_token]
    history = [build_history_entry(fact), *prior][: max(history_limit, 1)]

    patch: dict[str, Any] = {HISTORY_PROPERTY: history}
    if fact.submitted_at:
        patch[LAST_QUIZ_DATE_PROPERTY] = fact.submitted_at

    for prop, attr, history_key in _MERGED_PROPERTIES:
        new_value = getattr(fact, attr)
        if attr == "ending_key" and new_value == UNKNOWN_ENDING_KEY:
            new_value = None
        value = _first_present(
            new_value,
            latest.get(history_key) if history_key else None,
            existing.get(prop),
            defaults.get(prop),
        )
        if value is not None:
            patch[prop] = value
    return patch
