import json
import logging

from src import observability


class _ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.messages: list[str] = []

    def emit(self, record):
        self.messages.append(record.getMessage())


def test_metric_keys_and_prefix_snapshot():
    observability.reset_metrics()
    observability.incr_metric("klaviyo.event.sent", schema="legacy_flat")
    observability.incr_metric("klaviyo.event.sent", schema="legacy_flat")
    observability.incr_metric("typeform.relay.outcome", kind="delivered")

    assert observability.metric_key("a", z=1, b=2) == "a|b=2,z=1"
    assert observability.metrics_snapshot("klaviyo.") == {"klaviyo.event.sent|schema=legacy_flat": 2}
    assert len(observability.metrics_snapshot()) == 2
    observability.reset_metrics()
    assert observability.metrics_snapshot() == {}


def test_mask_email():
    assert observability.mask_email("rider@example.com") == "r***@example.com"
    assert observability.mask_email("not-an-email") == "***"
    assert observability.mask_email(None) is None


def test_log_event_writes_one_json_object():
    handler = _ListHandler()
    observability.logger.addHandler(handler)
    previous_level = observability.logger.level
    observability.logger.setLevel(logging.INFO)
    try:
        observability.log_event("klaviyo_profile_created", request_id="req-1", profile_id="p-1", tags={"häst"})
    finally:
        observability.logger.removeHandler(handler)
        observability.logger.setLevel(previous_level)

    payload = json.loads(handler.messages[0])
    assert payload == {
        "event": "klaviyo_profile_created",
        "request_id": "req-1",
        "profile_id": "p-1",
        "tags": ["häst"],
    }
