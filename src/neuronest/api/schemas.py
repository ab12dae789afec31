"""Request / response models for the REST API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from neuronest.affect.models import ClassificationResult
from neuronest.models import LinkStatus


class ConnectRequest(BaseModel):
    address: str | None = None  # last working endpoint when omitted
    port: int | None = Field(None, ge=1, le=65535)


class StatusResponse(BaseModel):
    link: LinkStatus
    connected: bool
    synthetic: bool
    connection_error: str | None = None
    last_error: str | None = None
    classifier: dict[str, Any]
    events_published: int


class PredictionResponse(BaseModel):
    """Current result plus caregiver-facing text."""
    prediction: ClassificationResult
    description: str
    recommendation: str
