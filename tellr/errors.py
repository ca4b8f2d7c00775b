"""Command failures. Every one is recoverable at the command boundary."""

from __future__ import annotations


class TellrError(Exception):
    """Base class: a structured failure with a human-readable message."""

    kind = "error"
    default_message = "Request failed"

    def __init__(self, message: str = ""):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


class Unauthorized(TellrError):
    """Missing or invalid bearer token, or token used against the wrong code."""

    kind = "unauthorized"
    default_message = "Not authorized"


class Forbidden(TellrError):
    kind = "forbidden"
    default_message = "Teller access required"


class NotFound(TellrError):
    """Target missing, expired, or not in the status the transition needs."""

    kind = "not_found"
    default_message = "Not found"


class Conflict(TellrError):
    kind = "conflict"
    default_message = "Conflicting request"


class ValidationFailed(TellrError):
    kind = "validation"
    default_message = "Invalid input"


def require_text(value: str | None, field_name: str, *, max_len: int, required: bool = True) -> str | None:
    """Strip and length-check a free-text field."""
    if value is None:
        if required:
            raise ValidationFailed(f"{field_name} is required")
        return None
    text = value.strip()
    if not text:
        if required:
            raise ValidationFailed(f"{field_name} is required")
        return None
    if len(text) > max_len:
        raise ValidationFailed(f"{field_name} must be at most {max_len} characters")
    return text
