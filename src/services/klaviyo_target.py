from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from src.config import Settings
from src.providers.klaviyo.revisions import KlaviyoSchemaRevision, get_schema_revision


@dataclass(frozen=True)
class KlaviyoTarget:
    """Credentials, revision header and payload schema for one relay run."""

    api_key: str
    revision: str
    base_url: str
    timeout_seconds: float
    schema: KlaviyoSchemaRevision

    @classmethod
    def from_settings(cls, settings: Settings) -> "KlaviyoTarget":
        if not settings.klaviyo_api_key:
            raise ValueError("KLAVIYO_API_KEY is not configured")
        return cls(
            api_key=settings.klaviyo_api_key,
            revision=settings.klaviyo_api_revision,
            base_url=settings.klaviyo_api_base,
            timeout_seconds=settings.klaviyo_timeout_seconds,
            schema=get_schema_revision(settings.klaviyo_schema_strategy),
        )

    def call_kwargs(self) -> dict[str, Any]:
        return {
            "revision": self.revision,
            "base_url": self.base_url,
            "timeout_seconds": self.timeout_seconds,
        }
