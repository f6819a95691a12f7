from datetime import datetime

from pydantic import BaseModel, Field


class JobOut(BaseModel):
    id: str
    source: str
    external_run_id: str
    dataset_id: str | None = None
    status: str
    progress_cursor: int = 0
    items_fetched: int = 0
    items_upserted: int = 0
    attempts: int = 0
    last_error: str | None = None
    locked_until: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


class EnqueueRunRequest(BaseModel):
    source: str = Field(min_length=1, max_length=64, pattern=r"^[a-z0-9][a-z0-9_-]*$")
    external_run_id: str = Field(min_length=1, max_length=128)
