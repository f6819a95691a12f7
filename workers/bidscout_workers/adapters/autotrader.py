from __future__ import annotations

from collections.abc import Mapping
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

MIN_YEAR = 2000
MIN_PRICE = 1000
MAX_PRICE = 500000

_CAR_ID_PATTERN = re.compile(r"/car/(\d+)")
_TITLE_YEAR_PATTERN = re.compile(r"\b(20\d{2})\b")


class AutotraderAdapter:
    source = "autotrader"

    def map_item(self, raw: Mapping[str, Any], taxonomy: Taxonomy) -> NormalizedListing:
        if not isinstance(raw, Mapping):
            raise AdapterRejectError("item is not an object")

        listing_url = first_text(raw, "url", "listingUrl", "link") or ""
        id_match = _CAR_ID_PATTERN.search(listing_url)
        listing_id = first_text(raw, "id", "listingId") or (id_match.group(1) if id_match else None)
        if not listing_id:
            raise AdapterRejectError("missing listing id")

        title = first_text(raw, "title", "name") or ""
        year = first_int(raw, "year")
        if not year:
            year_match = _TITLE_YEAR_PATTERN.search(title)
            year = int(year_match.group(1)) if year_match else 0
        if year < MIN_YEAR:
            raise AdapterRejectError(f"year out of range: {year}")

        make = first_text(raw, "make")
        model = first_text(raw, "model")
        variant = first_text(raw, "variant", "badge", "trim")
        if not make or not model:
            title_parts = re.sub(r"^\d{4}\s+", "", title).split()
            if len(title_parts) >= 2:
                make = make or title_parts[0]
                model = model or title_parts[1]
                variant = variant or " ".join(title_parts[2:]) or None
        if not make or not model:
            raise AdapterRejectError("missing make or model")

        price = first_int(raw, "price", "priceText", "priceString") or 0
        if price < MIN_PRICE or price > MAX_PRICE:
            raise AdapterRejectError(f"price out of range: {price}")

        km = first_int(raw, "odometer", "km", "mileage", "odometerText")
        location = first_text(raw, "location", "suburb")
        state = (first_text(raw, "state") or "").upper() or state_from_location(location, taxonomy.states)
        description = first_text(raw, "description", "sellerComments")

        try:
            return NormalizedListing(
                source=self.source,
                source_listing_id=listing_id,
                listing_url=listing_url or f"https://www.autotrader.com.au/car/{listing_id}",
                year=year,
                make=make,
                model=model,
                variant_raw=variant,
                variant_normalised=taxonomy.normalise_variant(variant),
                variant_family=taxonomy.variant_family(make, model, variant),
                km=km,
                price=price,
                location=location,
                state=state,
                status="listed",
                excluded_reason=taxonomy.salvage_reason(title, variant, description),
                transmission=first_text(raw, "transmission"),
                drivetrain=first_text(raw, "drivetrain", "driveType"),
                engine=first_text(raw, "engine"),
                fuel=first_text(raw, "fuel", "fuelType"),
            )
        except ValidationError as exc:
            raise AdapterRejectError(f"invalid listing {listing_id}: {exc.error_count()} errors") from exc


register_adapter(AutotraderAdapter())
