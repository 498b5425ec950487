from __future__ import annotations

from typing import Any, TypeVar

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from llm_key_proxy.errors import InvalidInputError
from llm_key_proxy.utils.time_utils import ONE_YEAR_MS, now_ms

KEY_ID_PATTERN = r"^[a-f0-9]{64}$"

M = TypeVar("M", bound=BaseModel)


class CreateKeyRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    owner_label: str = Field(
        validation_alias=AliasChoices("ownerLabel", "owner_label", "username"),
        max_length=128,
    )


class AnalyticsQuery(BaseModel):
    key_id: str = Field(pattern=KEY_ID_PATTERN)
    start_date: int | None = None
    end_date: int | None = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _within_sanity_window(cls, value: int | None) -> int | None:
        if value is None:
            return None
        if value <= 0:
            raise ValueError("Timestamp must be positive")
        current = now_ms()
        if value < current - ONE_YEAR_MS:
            raise ValueError("Timestamp is too old (more than 1 year ago)")
        if value > current + ONE_YEAR_MS:
            raise ValueError(
                "Timestamp is too far in the future (more than 1 year from now)"
            )
        return value

    @model_validator(mode="after")
    def _ordered_range(self) -> AnalyticsQuery:
        if (
            self.start_date is not None
            and self.end_date is not None
            and self.start_date >= self.end_date
        ):
            raise ValueError("Start date must be before end date")
        return self

    @property
    def has_range(self) -> bool:
        return self.start_date is not None or self.end_date is not None


def parse_model(model: type[M], data: Any) -> M:
    """Validate ``data`` or raise ``InvalidInputError`` with every problem listed."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        messages = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()) if part != "")
            message = str(error.get("msg", "invalid value"))
            messages.append(f"{location}: {message}" if location else message)
        raise InvalidInputError(", ".join(messages)) from exc
