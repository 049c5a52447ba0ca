"""Pydantic models for the sync API."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Optional
from uuid import UUID


class SyncRequest(BaseModel):
    workspace_id: UUID
    api_key: str = Field(min_length=1)
    product_id: Optional[str] = None
    initiative_id: Optional[str] = None
    include_features: bool = True
    include_components: bool = True
    include_initiatives: bool = True
    max_depth: int = Field(default=5, ge=1, le=10)

    def parameters(self) -> dict:
        """The invocation as recorded on the run, without the api key."""
        return self.model_dump(mode="json", exclude={"api_key"})


# ── Response models ─────────────────────────────────────────────────

class SyncResults(BaseModel):
    products: int = 0
    initiatives: int = 0
    components: int = 0
    features: int = 0
    subFeatures: int = 0
    initiativeFeatures: int = 0
    componentFeatures: int = 0
    relationships: int = 0


class SyncRunRecord(BaseModel):
    id: str
    workspace_id: str
    status: str  # "in_progress" | "completed" | "failed"
    started_at: str
    completed_at: Optional[str] = None
    products_count: int = 0
    initiatives_count: int = 0
    components_count: int = 0
    features_count: int = 0
    relationships_count: int = 0
    error_message: Optional[str] = None
    parameters: dict = Field(default_factory=dict)
    stats: dict = Field(default_factory=dict)
