from __future__ import annotations

import json
import logging
import sys
from collections import Counter
from threading import Lock
from typing import Any


logger = logging.getLogger("quiz_relay")

_metrics_lock = Lock()
_metrics_counter: Counter[str] = Counter()


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalize(v) for v in value]
    return str(value)


def configure_logging(level: str = "INFO") -> None:
    """Send relay log lines to stdout, one JSON object per line."""
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if not any(getattr(handler, "_quiz_relay", False) for handler in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler._quiz_relay = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    logger.propagate = False

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def metric_key(name: str, **labels: Any) -> str:
    if not labels:
        return name
    ordered = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}|{ordered}"


def incr_metric(name: str, value: int = 1, **labels: Any) -> None:
    key = metric_key(name, **{k: _normalize(v) for k, v in labels.items()})
    with _metrics_lock:
        _metrics_counter[key] += value


def metrics_snapshot(prefix: str | None = None) -> dict[str, int]:
    with _metrics_lock:
        if not prefix:
            return dict(_metrics_counter)
        return {key: count for key, count in _metrics_counter.items() if key.startswith(prefix)}


def mask_email(value: str | None) -> str | None:
    """``rider@example.com`` -> ``r***@example.com``; addresses never reach the logs in full."""
    if not value:
        return None
    local, sep, domain = str(value).strip().partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def reset_metrics() -> None:
    with _metrics_lock:
        _metrics_counter.clear()


def log_event(
    event: str,
    *,
    level: int = logging.INFO,
    request_id: str | None = None,
    **fields: Any,
) -> None:
    payload = {"event": event}
    if request_id:
        payload["request_id"] = request_id
    for key, value in fields.items():
        payload[key] = _normalize(value)
    logger.log(level, json.dumps(payload, sort_keys=True, ensure_ascii=False))
