"""Shared Pydantic base models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class FocusbeatBase(BaseModel):
    """Base model with shared config for all Focusbeat schemas.

    Fields are snake_case in Python and camelCase on the wire, which is what
    the timer UI sends and expects.
    """

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
        alias_generator=to_camel,
    )


class ErrorDetail(BaseModel):
    detail: str
