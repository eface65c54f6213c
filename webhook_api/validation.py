import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError


MSISDN_RE = re.compile(r"\+[0-9]+")
ISO_UTC_RE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}T[0-9]{2}:[0-9]{2}:[0-9]{2}Z")
MAX_TEXT_LENGTH = 4096


def is_iso_utc(value: str) -> bool:
    return ISO_UTC_RE.fullmatch(value) is not None


class WebhookPayload(BaseModel):
    # strict: a JSON number is not a valid message_id / msisdn / ts
    model_config = ConfigDict(strict=True, populate_by_name=True)

    message_id: str = Field(min_length=1)
    from_: str = Field(alias="from")
    to: str
    ts: str
    text: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)

    @field_validator("from_", "to")
    @classmethod
    def validate_msisdn(cls, v: str) -> str:
        # E.164-like: + then digits only
        if MSISDN_RE.fullmatch(v) is None:
            raise ValueError("must start with '+' followed by digits")
        return v

    @field_validator("text", mode="before")
    @classmethod
    def reject_null_text(cls, v):
        # absent is fine, an explicit null is not
        if v is None:
            raise ValueError("text must be a string when present")
        return v

    @field_validator("ts")
    @classmethod
    def validate_ts(cls, v: str) -> str:
        if not is_iso_utc(v):
            raise ValueError("ts must be ISO-8601 UTC like YYYY-MM-DDTHH:MM:SSZ")
        return v


@dataclass(frozen=True)
class ValidMessage:
    message_id: str
    from_: str
    to: str
    ts: str
    text: Optional[str] = None


@dataclass(frozen=True)
class ValidationFailure:
    reason: str
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_detail(self) -> Union[str, list[dict[str, str]]]:
        if self.reason == "invalid_json":
            return "invalid json"
        return self.errors


def _reject_constant(name: str):
    raise ValueError(f"invalid JSON constant {name}")


def _field_errors(exc: PydanticValidationError) -> list[dict[str, str]]:
    errors = []
    for err in exc.errors():
        loc = err.get("loc") or ()
        name = ".".join(str(part) for part in loc) or "body"
        msg = err.get("msg", "invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        errors.append({"field": name, "reason": msg})
    return errors


def validate_payload(raw_body: bytes) -> Union[ValidMessage, ValidationFailure]:
    try:
        data: Any = json.loads(raw_body.decode("utf-8"), parse_constant=_reject_constant)
    except ValueError:
        # covers UnicodeDecodeError and JSONDecodeError
        return ValidationFailure(reason="invalid_json")

    if not isinstance(data, dict):
        return ValidationFailure(
            reason="schema",
            errors=[{"field": "body", "reason": "must be a JSON object"}],
        )

    try:
        payload = WebhookPayload.model_validate(data)
    except PydanticValidationError as exc:
        return ValidationFailure(reason="schema", errors=_field_errors(exc))

    return ValidMessage(
        message_id=payload.message_id,
        from_=payload.from_,
        to=payload.to,
        ts=payload.ts,
        text=payload.text,
    )
