from datetime import datetime

from pydantic import BaseModel, Field


class MatchOut(BaseModel):
    fingerprint_id: str
    listing_id: str
    dealer_id: str
    tier: int
    lane: str
    match_type: str
    confidence_score: int
    action: str
    reasons: list[str] = Field(default_factory=list)
    auction_datetime: datetime | None = None
    run_id: str | None = None
    matched_at: datetime | None = None
    make: str | None = None
    model: str | None = None
    year: int | None = None
    km: int | None = None
    price: int | None = None
    listing_url: str | None = None


class MatchingRunOut(BaseModel):
    run_id: str
    fingerprints: int
    listings: int
    matches_written: int
    buy_count: int
    watch_count: int
    replication_written: int
    alerts_queued: int
