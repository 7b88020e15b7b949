"""Shared helpers for API routes."""

from typing import Any, TypeVar
from urllib.parse import urlparse

from fastapi import Request
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..core.errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)

INVALID_BODY_MESSAGE = "Invalid request body"


def is_absolute_url(value: str) -> bool:
    """Return True for URLs with both a scheme and a host."""
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return bool(parsed.scheme and parsed.netloc)


async def parse_json_body(
    request: Request,
    model: type[ModelT],
    allow_empty: bool = False,
) -> ModelT:
    """
    Validate a JSON request body against ``model``.

    With ``allow_empty`` a missing or unreadable body validates as ``{}``.

    Raises:
        ValidationError: 400 "Invalid request body" with the field errors
    """
    try:
        payload: Any = await request.json()
    except ValueError:
        payload = {} if allow_empty else None

    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        errors = [
            {"loc": [str(part) for part in err["loc"]], "msg": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError(INVALID_BODY_MESSAGE, details={"fields": errors}) from e
