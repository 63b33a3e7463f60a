"""
Envelope schemas shared by the list and delete endpoints.
"""

from typing import Generic, List, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    """One page of bookings or withdrawals plus navigation flags."""

    items: List[T]
    total: int = Field(description="Rows matching the filter across all pages")
    page: int = Field(default=1, ge=1)
    per_page: int = Field(default=20, ge=1, le=100)
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, items: List[T], total: int, page: int, per_page: int) -> "PaginatedResponse[T]":
        return cls(
            items=items,
            total=total,
            page=page,
            per_page=per_page,
            has_next=page * per_page < total,
            has_prev=page > 1,
        )


class DeleteResponse(BaseModel):
    """Acknowledgement for a removed bank account."""

    success: bool = True
    message: str
