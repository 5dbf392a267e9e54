"""Request schemas for the SINAPI API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class CollectRequest(BaseModel):
    """Reference period to download and ingest."""

    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)

    class Config:
        json_schema_extra = {"example": {"year": 2024, "month": 1}}
