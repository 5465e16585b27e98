"""Typed requests for every state-changing operation.

Each operation gets its own command model, validated before it reaches the
services, instead of a free-form dict of partial fields.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator

from .config import settings
from .errors import ValidationError


class Role(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    LIBRARIAN = "librarian"


class SessionContext(BaseModel):
    """Who is acting. Supplied by the caller's session layer and stored verbatim."""
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    actor_id: Optional[str] = None
    name: Optional[str] = None
    role: Role = Role.STUDENT

    @property
    def staff_name(self) -> str:
        return self.name or self.actor_id or settings.default_staff_name


class _Command(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="forbid")


class RequestLoanCommand(_Command):
    borrower_id: str = Field(min_length=1)
    book_id: int = Field(gt=0)
    duration_days: int = Field(default_factory=lambda: settings.default_loan_days)

    @field_validator("duration_days")
    @classmethod
    def _allowed_duration(cls, value: int) -> int:
        if value not in settings.allowed_loan_days:
            allowed = ", ".join(str(d) for d in settings.allowed_loan_days)
            raise ValueError(f"duration must be one of: {allowed}")
        return value


class ApproveCommand(_Command):
    loan_id: int = Field(gt=0)
    acting_staff: str = Field(min_length=1)
    force: bool = False


class RejectCommand(_Command):
    loan_id: int = Field(gt=0)
    acting_staff: str = Field(min_length=1)


class ReturnCommand(_Command):
    loan_id: int = Field(gt=0)
    acting_staff: str = Field(min_length=1)


class ManualLoanCommand(_Command):
    """Librarian override: creates an approved loan directly."""
    borrower_id: str = Field(min_length=1)
    book_id: int = Field(gt=0)
    duration_days: int = Field(default_factory=lambda: settings.default_loan_days, gt=0)
    acting_staff: str = Field(min_length=1)
    force: bool = False

    @field_validator("duration_days")
    @classmethod
    def _max_duration(cls, value: int) -> int:
        if value > settings.max_loan_days:
            raise ValueError(f"duration cannot exceed {settings.max_loan_days} days")
        return value


class JoinWaitlistCommand(_Command):
    borrower_id: str = Field(min_length=1)
    book_id: int = Field(gt=0)


class RemoveFromWaitlistCommand(_Command):
    entry_id: int = Field(gt=0)


class StockCorrectionCommand(_Command):
    book_id: int = Field(gt=0)
    available: int = Field(ge=0)
    total: Optional[int] = Field(default=None, ge=1)
    acting_staff: str = Field(min_length=1)

    @model_validator(mode="after")
    def _available_within_total(self) -> "StockCorrectionCommand":
        if self.total is not None and self.available > self.total:
            raise ValueError("available cannot exceed total")
        return self


C = TypeVar("C", bound=BaseModel)


def build(command_cls: Type[C], **data: Any) -> C:
    """Construct a command, turning pydantic failures into ValidationError."""
    try:
        return command_cls(**data)
    except PydanticValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'command'}: {err['msg']}" for err in exc.errors()
        )
        raise ValidationError(f"Invalid {command_cls.__name__}: {details}") from exc
