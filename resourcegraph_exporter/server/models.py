"""HTTP response models for the exporter endpoints."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Simple health/readiness response model."""

    status: str


class QueryStatusModel(BaseModel):
    """Per-query outcome reported in a failed probe."""

    query: str
    state: str
    error_type: Optional[str] = None
    error: Optional[str] = None


class ErrorResponse(BaseModel):
    """Structured JSON error response for HTTP endpoints.

    Fields
    ------
    detail: str
        Human-readable explanation of the error.
    error_type: str
        Machine-readable error classification.
    available_options: list[str] | None
        Valid values when the error is about an unknown query name, module
        or subscription id.
    queries: list[QueryStatusModel] | None
        Per-query statuses when every query of a probe failed.
    """

    detail: str
    error_type: str
    available_options: Optional[List[str]] = Field(default=None)
    queries: Optional[List[QueryStatusModel]] = Field(default=None)
