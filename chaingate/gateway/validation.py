"""Request Validator: declarative per-endpoint schemas.

A schema is an ordered tuple of FieldSpecs; each FieldSpec carries an ordered
tuple of Constraints, and every Constraint has its own human-readable message.
Unlike a plain pydantic model, validation here reports *every* violated
constraint of a field, in declaration order. The individual checks are
pydantic TypeAdapters, so the string/email semantics are pydantic's.

Evaluation per field:
  - missing or null      → required message only
  - not a string         → type message only
  - empty string         → empty message only
  - otherwise            → each constraint in order, all failures collected

On success the payload is normalized: unknown keys are dropped and declared
keys keep schema order, so re-validating a normalized payload is a no-op.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Annotated, Any

from pydantic import AfterValidator, EmailStr, StringConstraints, TypeAdapter, ValidationError


MAX_INPUT_LENGTH = 10_000


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


@dataclass(frozen=True)
class Constraint:
    code: str  # e.g. "string.min"
    adapter: TypeAdapter
    message: str

    def check(self, value: str) -> bool:
        try:
            self.adapter.validate_python(value)
        except ValidationError:
            return False
        return True


@dataclass(frozen=True)
class FieldSpec:
    name: str
    constraints: tuple[Constraint, ...] = ()
    required: bool = True
    required_message: str = ""
    empty_message: str = ""
    type_message: str = ""


@dataclass
class ValidationResult:
    valid: bool
    data: dict[str, Any] = field(default_factory=dict)
    field_errors: list[FieldError] = field(default_factory=list)

    def details(self) -> list[dict[str, str]]:
        return [e.to_dict() for e in self.field_errors]


def string_field(
    name: str,
    label: str,
    *,
    required: bool = True,
    min_length: int | None = None,
    max_length: int | None = None,
    pattern: str | None = None,
    email: bool = False,
    messages: dict[str, str] | None = None,
) -> FieldSpec:
    """Build a string FieldSpec with the usual message set for ``label``."""
    messages = messages or {}
    constraints: list[Constraint] = []

    if min_length is not None:
        constraints.append(
            Constraint(
                "string.min",
                TypeAdapter(Annotated[str, StringConstraints(min_length=min_length)]),
                messages.get("string.min", f"{label} must be at least {min_length} characters long"),
            )
        )
    if max_length is not None:
        constraints.append(
            Constraint(
                "string.max",
                TypeAdapter(Annotated[str, StringConstraints(max_length=max_length)]),
                messages.get("string.max", f"{label} cannot exceed {max_length:,} characters"),
            )
        )
    if pattern is not None:
        # pydantic's pattern engine has no lookaheads, so check with re
        constraints.append(
            Constraint(
                "string.pattern.base",
                TypeAdapter(Annotated[str, AfterValidator(_regex_search(pattern))]),
                messages.get("string.pattern.base", f"{label} has an invalid format"),
            )
        )
    if email:
        constraints.append(
            Constraint(
                "string.email",
                TypeAdapter(EmailStr),
                messages.get("string.email", "Please enter a valid email address"),
            )
        )

    return FieldSpec(
        name=name,
        constraints=tuple(constraints),
        required=required,
        required_message=messages.get("any.required", f"{label} is required"),
        empty_message=messages.get("string.empty", f"{label} cannot be empty"),
        type_message=messages.get("string.base", f"{label} must be a string"),
    )


def _regex_search(pattern: str):
    regex = re.compile(pattern)

    def _check(value: str) -> str:
        if not regex.search(value):
            raise ValueError("pattern mismatch")
        return value

    return _check


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

_INPUT_FIELD = string_field(
    "input",
    "Input",
    min_length=1,
    max_length=MAX_INPUT_LENGTH,
    messages={"string.max": "Input cannot exceed 10,000 characters"},
)

SCHEMAS: dict[str, tuple[FieldSpec, ...]] = {
    "inference": (_INPUT_FIELD,),
    "userRegister": (
        string_field(
            "username",
            "Username",
            min_length=3,
            max_length=30,
            pattern=r"^[a-zA-Z0-9_]+$",
            messages={"string.pattern.base": "Username can only contain letters, numbers, and underscores"},
        ),
        string_field("email", "Email", email=True),
        string_field(
            "password",
            "Password",
            min_length=6,
            max_length=128,
            pattern=r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)",
            messages={
                "string.pattern.base": (
                    "Password must contain at least one lowercase letter, one uppercase letter, and one number"
                )
            },
        ),
    ),
    "userLogin": (
        string_field("email", "Email", email=True),
        string_field("password", "Password"),
    ),
}


def validate(schema_name: str, raw_body: Any) -> ValidationResult:
    """Check ``raw_body`` against the named schema.

    Raises KeyError if the schema does not exist (a configuration error,
    not a client error).
    """
    try:
        schema = SCHEMAS[schema_name]
    except KeyError:
        raise KeyError(f"Validation schema '{schema_name}' not found") from None

    body = raw_body if isinstance(raw_body, dict) else {}
    errors: list[FieldError] = []
    data: dict[str, Any] = {}

    for spec in schema:
        value = body.get(spec.name)

        if value is None:
            if spec.required:
                errors.append(FieldError(spec.name, spec.required_message))
            continue
        if not isinstance(value, str):
            errors.append(FieldError(spec.name, spec.type_message))
            continue
        if value == "":
            errors.append(FieldError(spec.name, spec.empty_message))
            continue

        failed = [FieldError(spec.name, c.message) for c in spec.constraints if not c.check(value)]
        if failed:
            errors.extend(failed)
            continue

        data[spec.name] = value

    if errors:
        return ValidationResult(valid=False, field_errors=errors)
    return ValidationResult(valid=True, data=data)


# ---------------------------------------------------------------------------
# Password strength
# ---------------------------------------------------------------------------

PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 128

_PASSWORD_RULES: tuple[tuple[str, re.Pattern[str] | None], ...] = (
    (f"Password must be between {PASSWORD_MIN_LENGTH} and {PASSWORD_MAX_LENGTH} characters long", None),
    ("Password must contain at least one lowercase letter", re.compile(r"[a-z]")),
    ("Password must contain at least one uppercase letter", re.compile(r"[A-Z]")),
    ("Password must contain at least one number", re.compile(r"\d")),
    ("Password must contain at least one special character", re.compile(r"[^A-Za-z0-9]")),
)


@dataclass(frozen=True)
class PasswordStrength:
    is_valid: bool
    violated_rule_messages: tuple[str, ...]
    strength_score: int  # 0..5, one point per satisfied rule


def check_password_strength(password: str) -> PasswordStrength:
    """Score a password against the registration rules."""
    violated: list[str] = []
    for message, regex in _PASSWORD_RULES:
        if regex is None:
            ok = PASSWORD_MIN_LENGTH <= len(password) <= PASSWORD_MAX_LENGTH
        else:
            ok = regex.search(password) is not None
        if not ok:
            violated.append(message)

    return PasswordStrength(
        is_valid=not violated,
        violated_rule_messages=tuple(violated),
        strength_score=len(_PASSWORD_RULES) - len(violated),
    )
