"""Schema validation that reports expected failures as values.

``validate`` never raises for bad input. Callers branch on the returned
variant instead of catching pydantic's ``ValidationError``:

* ``Ok(value)`` holds the parsed model.
* ``ValidationFailed(errors)`` lists every violated field.
* ``Failed(cause)`` wraps anything unexpected raised while validating.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from pydantic import BaseModel, ValidationError

M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


@dataclass(frozen=True)
class Ok(Generic[M]):
    value: M


@dataclass(frozen=True)
class ValidationFailed:
    errors: tuple[FieldError, ...]

    def as_payload(self) -> dict[str, object]:
        return {
            "message": "Validation error",
            "errors": [e.as_dict() for e in self.errors],
        }


@dataclass(frozen=True)
class Failed:
    cause: BaseException


ValidationResult = Union[Ok[M], ValidationFailed, Failed]


def _field_name(loc: tuple[Any, ...]) -> str:
    parts = [str(p) for p in loc]
    return ".".join(parts) if parts else "body"


def validate(schema: type[M], payload: object) -> ValidationResult:
    if not isinstance(payload, dict):
        return ValidationFailed((FieldError("body", "Expected a JSON object"),))
    try:
        return Ok(schema.model_validate(payload))
    except ValidationError as exc:
        errors = tuple(
            FieldError(_field_name(tuple(err.get("loc", ()))), err.get("msg", "Invalid value"))
            for err in exc.errors()
        )
        return ValidationFailed(errors)
    except Exception as exc:  # noqa: BLE001
        return Failed(exc)
