"""Shared request dependencies."""

from typing import Annotated

from fastapi import Depends, Header

from cvarchitect.core.errors import ValidationError


def get_user_id(user_id: Annotated[str, Header(alias="X-User-Id")]) -> str:
    """Caller identity from the X-User-Id header (set by the auth proxy)."""
    cleaned = user_id.strip()
    if not cleaned:
        raise ValidationError("X-User-Id header must not be empty")
    return cleaned


UserId = Annotated[str, Depends(get_user_id)]
