from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

ListingStatus = Literal["catalogue", "upcoming", "listed", "passed_in", "cleared", "sold", "withdrawn"]


class NormalizedListing(BaseModel):
    source: str
    source_listing_id: str = Field(min_length=1)
    listing_url: str | None = None
    year: int = Field(ge=1950, le=2100)
    make: str = Field(min_length=1)
    model: str = Field(min_length=1)
    variant_raw: str | None = None
    variant_normalised: str | None = None
    variant_family: str | None = None
    km: int | None = Field(default=None, ge=0)
    price: int | None = Field(default=None, ge=0)
    location: str | None = None
    state: str | None = None
    status: ListingStatus = "listed"
    visible_to_dealers: bool = True
    excluded_reason: str | None = None
    auction_datetime: datetime | None = None
    engine: str | None = None
    drivetrain: str | None = None
    transmission: str | None = None
    fuel: str | None = None
    pass_count: int = Field(default=0, ge=0)
    reserve: int | None = None

    @field_validator("make", "model")
    @classmethod
    def _upper_identity(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("variant_raw", "variant_normalised", "variant_family")
    @classmethod
    def _upper_optional(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip().upper()
        return stripped or None


class EnrichmentFields(BaseModel):
    model_config = ConfigDict(extra="forbid")

    variant_family: str | None = None
    engine_family: str | None = None
    body_type: str | None = None
