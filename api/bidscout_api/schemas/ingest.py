from pydantic import BaseModel, Field


class StubItemIn(BaseModel):
    source_stock_id: str | None = Field(default=None, max_length=128)
    detail_url: str = Field(min_length=1, max_length=2048)
    year: int | None = Field(default=None, ge=1950, le=2100)
    make: str | None = Field(default=None, max_length=64)
    model: str | None = Field(default=None, max_length=64)
    km: int | None = Field(default=None, ge=0)
    location: str | None = Field(default=None, max_length=256)
    raw_text: str | None = None


class StubBatchIn(BaseModel):
    items: list[StubItemIn] = Field(default_factory=list, max_length=1000)


class StubBatchOut(BaseModel):
    created: int
    updated: int
    exceptions: int
