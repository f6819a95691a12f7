from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
import re
from typing import Any

from pydantic import ValidationError

from bidscout_workers.adapters.base import (
    AdapterRejectError,
    first_int,
    first_text,
    register_adapter,
    state_from_location,
)
from bidscout_workers.core.taxonomy import Taxonomy
from bidscout_workers.schemas.listings import NormalizedListing

_STATUS_ALIASES = {
    "catalogue": "catalogue",
    "catalog": "catalogue",
    "upcoming": "upcoming",
    "listed": "listed",
    "open": "listed",
    "passed in": "passed_in",
    "passed_in": "passed_in",
    "cleared": "cleared",
    "sold": "sold",
    "withdrawn": "withdrawn",
}


class AuctionLotAdapter:
    """Maps harvested auction catalogue lots (one dataset item per lot)."""

    def __init__(self, source: str, lot_url_template: str) -> None:
        self.source = source
        self.lot_url_template = lot_url_template

    def map_item(self, raw: Mapping[str, Any], taxonomy: Taxonomy) -> NormalizedListing:
        if not isinstance(raw, Mapping):
            raise AdapterRejectError("item is not an object")

        lot_id = first_text(raw, "lot_id", "lotId", "stockNumber", "id")
        if not lot_id:
            raise AdapterRejectError("missing lot id")

        year = first_int(raw, "year")
        if not year:
            compliance = first_text(raw, "compliance", "buildDate") or ""
            match = re.search(r"(19|20)\d{2}", compliance)
            year = int(match.group(0)) if match else None
        make = first_text(raw, "make")
        model = first_text(raw, "model")
        if not year or not make or not model:
            raise AdapterRejectError(f"lot {lot_id} missing year, make or model")

        variant = first_text(raw, "variant", "variant_raw", "badge")
        description = first_text(raw, "description", "raw_text", "conditionReport")
        location = first_text(raw, "location", "yard")
        event_id = first_text(raw, "event_id", "eventId", "saleId") or ""

        try:
            return NormalizedListing(
                source=self.source,
                source_listing_id=lot_id,
                listing_url=first_text(raw, "url", "listing_url", "detailUrl")
                or self.lot_url_template.format(event_id=event_id, lot_id=lot_id),
                year=year,
                make=make,
                model=model,
                variant_raw=variant,
                variant_normalised=taxonomy.normalise_variant(variant),
                variant_family=taxonomy.variant_family(make, model, variant, description),
                km=first_int(raw, "km", "odometer", "odometerReading"),
                price=first_int(raw, "price", "buyNowPrice", "guidePrice"),
                location=location,
                state=state_from_location(location, taxonomy.states),
                status=_parse_status(first_text(raw, "status", "saleStatus")),
                excluded_reason=taxonomy.salvage_reason(variant, description, first_text(raw, "damage")),
                auction_datetime=_parse_datetime(first_text(raw, "auction_datetime", "auctionDate", "saleDate")),
                engine=first_text(raw, "engine"),
                drivetrain=first_text(raw, "drivetrain", "driveType"),
                transmission=first_text(raw, "transmission"),
                fuel=first_text(raw, "fuel", "fuelType"),
                pass_count=first_int(raw, "pass_count", "passCount") or 0,
                reserve=first_int(raw, "reserve"),
            )
        except ValidationError as exc:
            raise AdapterRejectError(f"invalid lot {lot_id}: {exc.error_count()} errors") from exc


def _parse_status(value: str | None) -> str:
    if not value:
        return "catalogue"
    return _STATUS_ALIASES.get(value.strip().lower(), "listed")


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


register_adapter(AuctionLotAdapter("pickles", "https://www.pickles.com.au/cars/item/-/details/{event_id}/{lot_id}"))
register_adapter(AuctionLotAdapter("manheim", "https://www.manheim.com.au/passenger-vehicles/{lot_id}"))
