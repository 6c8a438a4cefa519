"""Request bodies for the Klaviyo API revisions the relay can talk to.

Each revision family shapes profiles, subscriptions and events differently;
the relay picks one by name (``KLAVIYO_SCHEMA_STRATEGY``) and never builds
Klaviyo payloads itself.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class KlaviyoSchemaRevision(ABC):
    name = "base"
    requires_metric_id = False

    def profile_create_payload(self, email: str) -> dict[str, Any]:
        return {"data": {"type": "profile", "attributes": {"email": email}}}

    def profile_patch_payload(self, profile_id: str, properties: dict[str, Any]) -> dict[str, Any]:
        return {
            "data": {
                "type": "profile",
                "id": profile_id,
                "attributes": {"properties": properties},
            }
        }

    def list_relationship_payload(self, email: str, profile_id: str | None = None) -> dict[str, Any]:
        return {"data": [{"type": "profile", "id": profile_id or f"$email:{email}"}]}

    def metric_create_payload(self, name: str) -> dict[str, Any]:
        return {"data": {"type": "metric", "attributes": {"name": name}}}

    def subscription_job_payload(
        self,
        *,
        list_id: str,
        email: str,
        custom_source: str | None = None,
    ) -> dict[str, Any]:
        attributes: dict[str, Any] = {
            "profiles": {
                "data": [
                    {
                        "type": "profile",
                        "attributes": {
                            "email": email,
                            "subscriptions": {"email": {"marketing": {"consent": "SUBSCRIBED"}}},
                        },
                    }
                ]
            }
        }
        if custom_source:
            attributes["custom_source"] = custom_source
        return {
            "data": {
                "type": "profile-subscription-bulk-create-job",
                "attributes": attributes,
                "relationships": {"list": {"data": {"type": "list", "id": list_id}}},
            }
        }

    @abstractmethod
    def event_payload(
        self,
        *,
        metric_name: str,
        metric_id: str | None,
        email: str,
        profile_id: str | None,
        properties: dict[str, Any],
        time: str,
        unique_id: str | None = None,
    ) -> dict[str, Any]:
        """Build the create-event body for this revision."""


class NestedMetricNameRevision(KlaviyoSchemaRevision):
    """Metric referenced inline by name, profile nested under ``attributes``."""

    name = "nested_metric_name"

    def event_payload(
        self,
        *,
        metric_name: str,
        metric_id: str | None,
        email: str,
        profile_id: str | None,
        properties: dict[str, Any],
        time: str,
        unique_id: str | None = None,
    ) -> dict[str, Any]:
        if profile_id:
            profile_data: dict[str, Any] = {"type": "profile", "id": profile_id}
        else:
            profile_data = {"type": "profile", "attributes": {"email": email}}
        attributes: dict[str, Any] = {
            "properties": properties,
            "time": time,
            "metric": {"data": {"type": "metric", "attributes": {"name": metric_name}}},
            "profile": {"data": profile_data},
        }
        if unique_id:
            attributes["unique_id"] = unique_id
        return {"data": {"type": "event", "attributes": attributes}}


class LegacyFlatRevision(KlaviyoSchemaRevision):
    """2023-era shapes: flat ``$email`` profile, ``list_id`` in the job attributes."""

    name = "legacy_flat"

    def subscription_job_payload(
        self,
        *,
        list_id: str,
        email: str,
        custom_source: str | None = None,
    ) -> dict[str, Any]:
        attributes: dict[str, Any] = {
            "list_id": list_id,
            "subscriptions": [{"channels": {"email": ["MARKETING"]}, "email": email}],
        }
        if custom_source:
            attributes["custom_source"] = custom_source
        return {"data": {"type": "profile-subscription-bulk-create-job", "attributes": attributes}}

    def event_payload(
        self,
        *,
        metric_name: str,
        metric_id: str | None,
        email: str,
        profile_id: str | None,
        properties: dict[str, Any],
        time: str,
        unique_id: str | None = None,
    ) -> dict[str, Any]:
        profile: dict[str, Any] = {"$email": email}
        if profile_id:
            profile["$id"] = profile_id
        attributes: dict[str, Any] = {
            "profile": profile,
            "metric": {"name": metric_name},
            "properties": properties,
            "time": time,
        }
        if unique_id:
            attributes["unique_id"] = unique_id
        return {"data": {"type": "event", "attributes": attributes}}


class MetricIdRelationshipsRevision(KlaviyoSchemaRevision):
    """Metric and profile referenced by id through ``relationships``."""

    name = "metric_id_relationships"
    requires_metric_id = True

    def event_payload(
        self,
        *,
        metric_name: str,
        metric_id: str | None,
        email: str,
        profile_id: str | None,
        properties: dict[str, Any],
        time: str,
        unique_id: str | None = None,
    ) -> dict[str, Any]:
        if not metric_id:
            raise ValueError(f"Metric id required for {self.name} events (metric {metric_name!r})")
        attributes: dict[str, Any] = {"properties": properties, "time": time}
        if unique_id:
            attributes["unique_id"] = unique_id
        return {
            "data": {
                "type": "event",
                "attributes": attributes,
                "relationships": {
                    "metric": {"data": {"type": "metric", "id": metric_id}},
                    "profile": {"data": {"type": "profile", "id": profile_id or f"$email:{email}"}},
                },
            }
        }


SCHEMA_REVISIONS: dict[str, type[KlaviyoSchemaRevision]] = {
    NestedMetricNameRevision.name: NestedMetricNameRevision,
    LegacyFlatRevision.name: LegacyFlatRevision,
    MetricIdRelationshipsRevision.name: MetricIdRelationshipsRevision,
}


def get_schema_revision(name: str | None) -> KlaviyoSchemaRevision:
    key = str(name or NestedMetricNameRevision.name).strip().lower()
    revision_cls = SCHEMA_REVISIONS.get(key)
    if revision_cls is None:
        raise ValueError(f"Unsupported Klaviyo schema strategy: {name}")
    return revision_cls()
