from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


class TypeformField(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    ref: str | None = None
    type: str | None = None
    title: str | None = None


class TypeformChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    label: str | None = None
    other: str | None = None


class TypeformChoices(BaseModel):
    model_config = ConfigDict(extra="allow")

    labels: list[str] = Field(default_factory=list)
    other: str | None = None


class TypeformAnswer(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str | None = None
    field: TypeformField = Field(default_factory=TypeformField)
    text: str | None = None
    email: str | None = None
    url: str | None = None
    boolean: bool | None = None
    number: float | None = None
    date: str | None = None
    phone_number: str | None = None
    choice: TypeformChoice | None = None
    choices: TypeformChoices | None = None

    @field_validator("field", mode="before")
    @classmethod
    def _field_when_null(cls, value: Any) -> Any:
        return {} if value is None else value

    def value_text(self) -> str | None:
        """Best-effort string rendering of whatever value this answer carries."""
        for candidate in (self.text, self.email, self.url, self.date, self.phone_number):
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
        if self.choice is not None:
            label = self.choice.label or self.choice.other
            if label and label.strip():
                return label.strip()
        if self.choices is not None:
            labels = [label for label in self.choices.labels if label and label.strip()]
            if self.choices.other:
                labels.append(self.choices.other)
            if labels:
                return ", ".join(label.strip() for label in labels)
        if self.number is not None:
            return str(int(self.number)) if float(self.number).is_integer() else str(self.number)
        return None


class TypeformOutcome(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    ref: str | None = None
    title: str | None = None


class TypeformCalculated(BaseModel):
    model_config = ConfigDict(extra="allow")

    score: float | None = None
    outcome: TypeformOutcome | None = None


class TypeformDefinition(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    title: str | None = None
    fields: list[TypeformField] = Field(default_factory=list)


class TypeformFormResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    form_id: str | None = None
    token: str | None = None
    submitted_at: str | None = None
    landed_at: str | None = None
    hidden: dict[str, Any] = Field(default_factory=dict)
    calculated: TypeformCalculated | None = None
    outcome: TypeformOutcome | None = None
    definition: TypeformDefinition | None = None
    answers: list[TypeformAnswer] = Field(default_factory=list)

    @field_validator("hidden", "answers", mode="before")
    @classmethod
    def _empty_when_null(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return {} if info.field_name == "hidden" else []
        return value

    def hidden_text(self, *keys: str) -> str | None:
        for key in keys:
            value = self.hidden.get(key)
            if value is None:
                continue
            text = str(value).strip()
            if text:
                return text
        return None

    def field_title(self, answer: TypeformAnswer) -> str | None:
        if answer.field.title:
            return answer.field.title
        if not self.definition or not answer.field.id:
            return None
        for field in self.definition.fields:
            if field.id == answer.field.id:
                return field.title
        return None

    def answer_by_ref(self, refs: tuple[str, ...]) -> TypeformAnswer | None:
        if not refs:
            return None
        for answer in self.answers:
            if answer.field.ref in refs or answer.field.id in refs:
                return answer
        return None

    def answer_by_type(self, answer_type: str) -> TypeformAnswer | None:
        for answer in self.answers:
            if answer.type == answer_type or answer.field.type == answer_type:
                return answer
        return None


class TypeformWebhookPayload(BaseModel):
    """Inbound Typeform webhook body, with optional top-level overrides."""

    model_config = ConfigDict(extra="allow")

    event_id: str | None = None
    event_type: str | None = None
    secret: str | None = None
    form_response: TypeformFormResponse = Field(default_factory=TypeformFormResponse)

    def override(self, *keys: str) -> Any:
        extra = self.model_extra or {}
        for key in keys:
            value = extra.get(key)
            if value is None:
                continue
            if isinstance(value, str) and not value.strip():
                continue
            return value
        return None
