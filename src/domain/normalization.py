from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator, Literal, cast
from urllib.parse import unquote_plus, urlparse

from pydantic import ValidationError

from src.models.relay import NormalizedFact
from src.models.typeform import TypeformAnswer, TypeformFormResponse, TypeformWebhookPayload


QuizRoot = Literal["category", "product", "knowledge-base"]
QuizGroup = Literal["young", "snaffle", "pelham", "curb", "gag", "baucher", "bitless", "western"]

QUIZ_ROOTS: tuple[QuizRoot, ...] = ("category", "product", "knowledge-base")
QUIZ_GROUPS: frozenset[str] = frozenset(
    {"young", "snaffle", "pelham", "curb", "gag", "baucher", "bitless", "western"}
)
TYPEFORM_TEST_SENTINEL = "hidden_value"
UNKNOWN_ENDING_KEY = "unknown"

LANGUAGE_PROFILES: dict[str, dict[str, str | None]] = {
    "sv": {"newsletter_segment": "newsletter_sv", "country": "Sweden"},
    "en": {"newsletter_segment": "newsletter_en", "country": None},
    "da": {"newsletter_segment": "newsletter_da", "country": "Denmark"},
    "no": {"newsletter_segment": "newsletter_no", "country": "Norway"},
    "fi": {"newsletter_segment": "newsletter_fi", "country": "Finland"},
    "de": {"newsletter_segment": "newsletter_de", "country": "Germany"},
    "nl": {"newsletter_segment": "newsletter_nl", "country": "Netherlands"},
    "fr": {"newsletter_segment": "newsletter_fr", "country": "France"},
}
SUPPORTED_LANGUAGES: frozenset[str] = frozenset(LANGUAGE_PROFILES)

_SLUG_MAX_LENGTH = 60
_NAMESPACE_PREFIXES = {"global"}
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_SLUG_SEGMENT_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_TAXONOMY_PATH_RE = re.compile(
    r"(?<![a-z0-9-])(category|product|knowledge-base)/([a-z0-9][a-z0-9_-]*)",
    re.IGNORECASE,
)
_ENDING_PARAM_RE = re.compile(r"[?&]ending=([^&#\s]+)", re.IGNORECASE)
_LABEL_PAIR_RE = re.compile(
    r"^\s*([^\W\d_][^\W_]*(?:\s[^\W\d_][^\W_]*){0,2})\s+([a-z0-9]+(?:-[a-z0-9]+)+)\s*$"
)
_QUIZ_SHORTHAND_RE = re.compile(r"(?<![a-z0-9-])quiz-([a-z]+)-(\d+)(?![a-z0-9-])", re.IGNORECASE)
_QUIZ_SHORTHAND_FULL_RE = re.compile(r"^quiz-[a-z]+-\d+$")
_QUIZ_GROUP_RE = re.compile(r"quiz-([a-z]+)-")
_LANGUAGE_SEGMENT_RE = re.compile(r"/([a-z]{2})(?=/|\?|#|$)")
_LABEL_KEY_RE = re.compile(r"redirect|label|thankyou|ending|url")
_LABEL_EXCLUDED_KEYS = {"answers", "fields"}

_TRUTHY = {"true", "1", "yes", "y", "ja", "on", "accept", "accepted", "agree", "i agree"}
_FALSY = {"false", "0", "no", "n", "nej", "off", "decline", "declined"}
_EMAIL_KEYWORDS = ("email", "e-mail", "e-post", "epost", "mail")
_HORSE_KEYWORDS = ("horse", "häst", "hast", "pferd", "hest")
_ENDING_KEYWORDS = ("result", "resultat", "ending", "outcome")


@dataclass(frozen=True)
class NormalizerOptions:
    consent_refs: tuple[str, ...] = ()
    email_refs: tuple[str, ...] = ()
    horse_refs: tuple[str, ...] = ()
    ending_refs: tuple[str, ...] = ()
    default_language: str = "sv"


@dataclass(frozen=True)
class ScanResult:
    ending: str | None = None
    path: str | None = None


def slugify(value: Any) -> str:
    text = unicodedata.normalize("NFKD", str(value or ""))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = _NON_ALNUM_RE.sub("_", text.lower().strip())
    text = text.strip("_")[:_SLUG_MAX_LENGTH].strip("_")
    return text or UNKNOWN_ENDING_KEY


def is_valid_email(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    return _EMAIL_RE.match(value) is not None


def clean_email(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not is_valid_email(text):
        return None
    return text


def normalize_quiz_path(value: Any) -> str | None:
    """Reduce a captured URL or path to ``<root>/<slug>``, or None if it has no known root."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if "://" in text:
        text = urlparse(text).path
    else:
        text = text.split("?", 1)[0].split("#", 1)[0]

    segments = [segment for segment in text.lower().split("/") if segment]
    if segments and "." in segments[0]:
        segments.pop(0)
    while len(segments) > 1 and (
        segments[0] in _NAMESPACE_PREFIXES or segments[0] in SUPPORTED_LANGUAGES
    ):
        segments.pop(0)

    if len(segments) < 2 or segments[0] not in QUIZ_ROOTS:
        return None
    slug = segments[-1]
    if not _SLUG_SEGMENT_RE.match(slug):
        return None
    return f"{segments[0]}/{slug}"


def derive_quiz_group(path: str | None) -> QuizGroup | None:
    if not path:
        return None
    match = _QUIZ_GROUP_RE.search(path)
    if not match:
        return None
    group = match.group(1)
    return cast(QuizGroup, group) if group in QUIZ_GROUPS else None


def iter_keyed_strings(value: Any, path: tuple[str, ...] = ()) -> Iterator[tuple[tuple[str, ...], str]]:
    """Yield ``(key_path, text)`` for every string; list indices add no key."""
    if isinstance(value, str):
        yield path, value
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from iter_keyed_strings(item, (*path, str(key).lower()))
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_keyed_strings(item, path)


def iter_strings(value: Any) -> Iterator[str]:
    for _, text in iter_keyed_strings(value):
        yield text


def is_redirect_label_path(path: tuple[str, ...]) -> bool:
    """Label pairs are only read from redirect/ending labels, never from answers or question titles."""
    if any(key in _LABEL_EXCLUDED_KEYS for key in path):
        return False
    if not path:
        return True
    return any(_LABEL_KEY_RE.search(key) for key in path)


def scan_ending_and_path(payload: Any) -> ScanResult:
    keyed = list(iter_keyed_strings(payload))
    strings = [text for _, text in keyed]
    label_strings = [text for path, text in keyed if is_redirect_label_path(path)]

    path: str | None = None
    for text in strings:
        match = _TAXONOMY_PATH_RE.search(text)
        if match:
            path = normalize_quiz_path(f"{match.group(1)}/{match.group(2)}")
            if path:
                break

    ending: str | None = None
    for text in strings:
        match = _ENDING_PARAM_RE.search(text)
        if match:
            candidate = unquote_plus(match.group(1)).strip()
            if candidate:
                ending = candidate
                break

    if ending is None or path is None:
        for text in label_strings:
            match = _LABEL_PAIR_RE.match(text)
            if not match:
                continue
            label, slug = match.group(1).strip(), match.group(2).lower()
            if ending is None:
                ending = label
            if path is None:
                # quiz shorthands only exist under category/
                root = "category" if _QUIZ_SHORTHAND_FULL_RE.match(slug) else "product"
                path = normalize_quiz_path(f"{root}/{slug}")
            break

    if path is None:
        for text in strings:
            match = _QUIZ_SHORTHAND_RE.search(text)
            if match:
                path = f"category/quiz-{match.group(1).lower()}-{match.group(2)}"
                break

    return ScanResult(ending=ending, path=path)


def detect_language(
    form_response: TypeformFormResponse,
    raw_payload: Any,
    default_language: str = "sv",
) -> str:
    explicit = form_response.hidden_text("lang", "language", "locale")
    if explicit:
        code = explicit.strip().lower()[:2]
        if code in SUPPORTED_LANGUAGES:
            return code
    for text in iter_strings(raw_payload):
        for match in _LANGUAGE_SEGMENT_RE.finditer(text.lower()):
            if match.group(1) in SUPPORTED_LANGUAGES:
                return match.group(1)
    return default_language


def language_profile(language: str | None) -> dict[str, str | None]:
    if not language:
        return {"newsletter_segment": None, "country": None}
    return dict(LANGUAGE_PROFILES.get(language, {"newsletter_segment": f"newsletter_{language}", "country": None}))


def is_test_submission(form_response: TypeformFormResponse) -> bool:
    return any(
        form_response.hidden.get(key) == TYPEFORM_TEST_SENTINEL
        for key in ("quiz_name", "ending", "source")
    )


def parse_payload(raw_payload: Any) -> TypeformWebhookPayload:
    if not isinstance(raw_payload, dict):
        return TypeformWebhookPayload()
    try:
        return TypeformWebhookPayload.model_validate(raw_payload)
    except ValidationError:
        form_response = raw_payload.get("form_response")
        hidden = form_response.get("hidden") if isinstance(form_response, dict) else None
        try:
            # keep the hidden fields when the answers are malformed
            return TypeformWebhookPayload.model_validate(
                {"form_response": {"hidden": hidden if isinstance(hidden, dict) else {}}}
            )
        except ValidationError:
            return TypeformWebhookPayload()


def coerce_consent(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if not text:
        return None
    if text in _TRUTHY or "accept" in text or text.startswith("yes"):
        return True
    if text in _FALSY:
        return False
    return None


def _answer_label(form_response: TypeformFormResponse, answer: TypeformAnswer) -> str:
    parts = [answer.field.ref or "", form_response.field_title(answer) or ""]
    return " ".join(parts).lower()


def _answer_by_keywords(
    form_response: TypeformFormResponse,
    keywords: tuple[str, ...],
    *,
    answer_types: tuple[str, ...] | None = None,
) -> TypeformAnswer | None:
    for answer in form_response.answers:
        if answer_types is not None and answer.type not in answer_types:
            continue
        label = _answer_label(form_response, answer)
        if any(keyword in label for keyword in keywords):
            return answer
    return None


def _first_text(*candidates: Any) -> str | None:
    for candidate in candidates:
        if candidate is None:
            continue
        text = str(candidate).strip()
        if text:
            return text
    return None


def _answer_text(answer: TypeformAnswer | None) -> str | None:
    return answer.value_text() if answer is not None else None


def resolve_email(
    payload: TypeformWebhookPayload,
    options: NormalizerOptions,
) -> tuple[str | None, str | None]:
    """Return ``(valid_email, first_raw_candidate)``."""
    form_response = payload.form_response
    email_answer = form_response.answer_by_type("email")
    candidates = [
        payload.override("email"),
        form_response.hidden_text("email"),
        _answer_text(form_response.answer_by_ref(options.email_refs)),
        email_answer.email if email_answer is not None else None,
        _answer_text(_answer_by_keywords(form_response, _EMAIL_KEYWORDS)),
    ]
    raw = _first_text(*candidates)
    for candidate in candidates:
        email = clean_email(candidate)
        if email:
            return email, raw
    return None, raw


def resolve_consent(payload: TypeformWebhookPayload, options: NormalizerOptions) -> bool:
    form_response = payload.form_response
    for value in (payload.override("consent", "consent_given"), form_response.hidden.get("consent")):
        consent = coerce_consent(value)
        if consent is not None:
            return consent

    answer = form_response.answer_by_ref(options.consent_refs)
    if answer is None:
        answer = form_response.answer_by_type("legal")
    if answer is None:
        return False
    if answer.boolean is not None:
        return answer.boolean
    return bool(coerce_consent(answer.value_text()))


def resolve_horse_name(payload: TypeformWebhookPayload, options: NormalizerOptions) -> str | None:
    form_response = payload.form_response
    found = _first_text(
        payload.override("horse_name", "horse"),
        form_response.hidden_text("horse_name", "horse", "horsename", "hast", "häst"),
        _answer_text(form_response.answer_by_ref(options.horse_refs)),
        _answer_text(_answer_by_keywords(form_response, _HORSE_KEYWORDS, answer_types=("text",))),
    )
    if found:
        return found

    excluded = set(options.consent_refs) | set(options.email_refs)
    for answer in form_response.answers:
        if answer.type != "text" or answer.field.ref in excluded:
            continue
        text = answer.value_text()
        if text and not is_valid_email(text):
            return text
    return None


def resolve_ending_title(
    payload: TypeformWebhookPayload,
    options: NormalizerOptions,
    scan: ScanResult | None,
) -> str | None:
    form_response = payload.form_response
    calculated_outcome = form_response.calculated.outcome if form_response.calculated else None
    return _first_text(
        payload.override("ending", "ending_title"),
        form_response.hidden_text("ending", "ending_title", "result"),
        _answer_text(form_response.answer_by_ref(options.ending_refs)),
        calculated_outcome.title if calculated_outcome else None,
        form_response.outcome.title if form_response.outcome else None,
        _answer_text(_answer_by_keywords(form_response, _ENDING_KEYWORDS)),
        scan.ending if scan else None,
    )


def resolve_quiz_path(payload: TypeformWebhookPayload, scan: ScanResult | None) -> str | None:
    form_response = payload.form_response
    for candidate in (
        payload.override("quiz_path", "path"),
        form_response.hidden_text("quiz_path", "path"),
        form_response.hidden_text("quiz_url", "url", "page_url"),
    ):
        path = normalize_quiz_path(candidate)
        if path:
            return path
    return scan.path if scan else None


def normalize_submission(raw_payload: Any, options: NormalizerOptions | None = None) -> NormalizedFact:
    options = options or NormalizerOptions()
    payload = parse_payload(raw_payload)
    form_response = payload.form_response
    scan = scan_ending_and_path(raw_payload)

    email, raw_email = resolve_email(payload, options)
    ending_title = resolve_ending_title(payload, options, scan)
    explicit_key = _first_text(payload.override("ending_key"), form_response.hidden_text("ending_key"))
    if explicit_key:
        ending_key = slugify(explicit_key)
    elif ending_title:
        ending_key = slugify(ending_title)
    else:
        ending_key = UNKNOWN_ENDING_KEY

    quiz_path = resolve_quiz_path(payload, scan)
    language = detect_language(form_response, raw_payload, options.default_language)
    profile = language_profile(language)

    return NormalizedFact(
        email=email,
        raw_email=raw_email,
        consent_given=resolve_consent(payload, options),
        ending_title=ending_title,
        ending_key=ending_key,
        quiz_path=quiz_path,
        quiz_group=derive_quiz_group(quiz_path),
        quiz_name=_first_text(payload.override("quiz_name"), form_response.hidden_text("quiz_name")),
        source=_first_text(
            payload.override("source"),
            form_response.hidden_text("source", "utm_source"),
        ),
        horse_name=resolve_horse_name(payload, options),
        language=language,
        newsletter_segment=profile["newsletter_segment"],
        country=profile["country"],
        submitted_at=_first_text(
            payload.override("submitted_at"),
            form_response.submitted_at,
        )
        or datetime.now(timezone.utc).isoformat(),
        form_id=form_response.form_id,
        response_token=form_response.token,
    )
