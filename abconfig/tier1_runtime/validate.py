"""
abconfig.tier1_runtime.validate
──────────────────────────────────
Operator input validation via Pydantic v2. Raises abconfig ValidationError
(not raw Pydantic errors) so the admin layer always sees one error shape.
"""
from __future__ import annotations

from typing import Any, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

T = TypeVar("T", bound=BaseModel)

SCOPES = ("request", "session", "device", "beforesession", "afterconfig")


class ExperimentInput(BaseModel):
    name: str = Field(min_length=1)
    shortname: str = Field(min_length=1, pattern=r"^[A-Za-z0-9]+$")
    scope: str
    enabled: bool = False
    admin_enabled: bool = False
    numeric_offset: int = Field(default=0, ge=0, le=99)

    @field_validator("scope")
    @classmethod
    def known_scope(cls, v: str) -> str:
        if v not in SCOPES:
            raise ValueError(f"scope must be one of {SCOPES}, got {v!r}")
        return v


class ConditionInput(BaseModel):
    condset: str = Field(min_length=1)
    ip_allow_list: str = ""
    commands: list[str] = Field(default_factory=list)
    weight: int = Field(ge=0)
    user_ids: list[int] = Field(default_factory=list)


def validate_input(model: Type[T], data: Any) -> T:
    """
    Validate raw data against a Pydantic model.
    Raises abconfig ValidationError (not Pydantic's) on failure.

    Usage:
        experiment = validate_input(ExperimentInput, {"name": "Theme", ...})
    """
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        from abconfig.tier0_core.errors import ValidationError

        fields = {
            ".".join(str(loc) for loc in err["loc"]): err["msg"]
            for err in exc.errors()
        }
        raise ValidationError(
            code="validation_error",
            user_message="Experiment input validation failed.",
            fields=fields,
        ) from exc


__all__ = ["ExperimentInput", "ConditionInput", "validate_input", "SCOPES"]
