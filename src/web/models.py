"""Pydantic request schemas for the tuning API."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# --- Imports ---


class ImportCreate(BaseModel):
    content: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1, max_length=255)
    source: str = Field("upload", max_length=100)


# --- Analysis ---


class WindowBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(..., alias="from")
    to: str


class AnalysisRun(BaseModel):
    window: WindowBody
    profile_id: Optional[str] = None
    dry_run: bool = False


# --- Proposals ---


class ProposalDecision(BaseModel):
    """PATCH body: a status decision, optionally applying a selection."""

    status: str
    apply: bool = False
    selected_recommendations: Optional[list[int]] = None
    expected_status: Optional[str] = None
    dry_run: bool = False
    notes: Optional[str] = Field(None, max_length=2000)
