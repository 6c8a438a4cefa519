from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    klaviyo_api_key: str | None = None
    klaviyo_api_base: str = "https://a.klaviyo.com"
    klaviyo_api_revision: str = "2024-07-15"
    klaviyo_schema_strategy: str = "nested_metric_name"  # nested_metric_name | legacy_flat | metric_id_relationships
    klaviyo_metric_name: str = "Fager Quiz Completed"
    klaviyo_metric_id: str | None = None
    klaviyo_list_id: str | None = None
    klaviyo_list_mode: str = "subscription_job"  # subscription_job | list_relationship
    klaviyo_timeout_seconds: float = 10.0
    klaviyo_event_max_attempts: int = 3
    klaviyo_subscription_poll_attempts: int = 0
    klaviyo_subscription_poll_interval_seconds: float = 1.0
    typeform_secret: str | None = None
    typeform_consent_field_refs: str = "318e5266-b416-4f99-acf3-17549aacf2f0"
    typeform_email_field_refs: str = ""
    typeform_horse_field_refs: str = ""
    typeform_ending_field_refs: str = ""
    quiz_history_limit: int = 50
    default_quiz_name: str = "FagerBitQuiz"
    default_source: str = "Website"
    default_language: str = "sv"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @field_validator("klaviyo_timeout_seconds")
    @classmethod
    def _clamp_timeout(cls, value: float) -> float:
        return min(max(float(value), 5.0), 30.0)

    @field_validator("klaviyo_event_max_attempts")
    @classmethod
    def _clamp_event_attempts(cls, value: int) -> int:
        return min(max(int(value), 1), 5)

    @field_validator("quiz_history_limit")
    @classmethod
    def _positive_history_limit(cls, value: int) -> int:
        return max(int(value), 1)


def split_refs(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(item.strip() for item in str(raw).split(",") if item.strip())


settings = Settings()
