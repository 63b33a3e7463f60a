"""
Base schemas with standardized field types for consistent API responses.
"""

from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, ConfigDict, PlainSerializer

# Money is validated as Decimal and serialized as a JSON number
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class StandardizedModel(BaseModel):
    """Base model for responses built from ORM rows."""

    model_config = ConfigDict(from_attributes=True, use_enum_values=True, populate_by_name=True)


class StrictRequestModel(BaseModel):
    """Request body base: forbid unknown fields and strip whitespace."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)
