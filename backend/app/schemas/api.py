"""
API request/response schemas for the research commands and the health check.

Request bodies use the camelCase field names the frontend sends; Python code
reads the snake_case attributes.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class InitiateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Any JSON value is accepted here; the word-count check reports non-strings.
    problem_statement: Any = Field(default=None, alias="problemStatement")
    user_email: Optional[str] = Field(default=None, alias="userEmail")
    metadata: dict[str, Any] = Field(default_factory=dict)


class RetryPhaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phase: Any = None
    delete_existing: bool = Field(default=False, alias="deleteExisting")


class StopPhaseRequest(BaseModel):
    phase: Any = None
    reason: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    workers_configured: dict[str, bool]
    all_workers_ready: bool

