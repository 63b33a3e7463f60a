"""Pydantic models for webhook endpoint responses."""

from typing import Optional

from pydantic import BaseModel, ConfigDict


class WebhookAckResponse(BaseModel):
    """Standard acknowledgement payload returned by webhook endpoints."""

    model_config = ConfigDict(extra="forbid")
    ok: bool = True
    handled: bool = False
    event: Optional[str] = None
