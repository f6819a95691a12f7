from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import logging
import re
from typing import Literal

from bidscout_api.services.matching import Listing

logger = logging.getLogger(__name__)

KM_TOLERANCE = 10000
KM_CEILING = 250000
BADGE_WEIGHT = 0.6
KM_WEIGHT = 0.4
TARGET_BUY_DELTA_SHARE = 0.6

ConfidenceTier = Literal["HIGH", "MEDIUM", "LOW"]

_VARIANT_NOISE_PATTERNS = (
    re.compile(r"\b(4X[24]|AWD|2WD|RWD|4WD|AUTO|MANUAL|CVT|DCT|DSG)\b"),
    re.compile(r"\b\d+\.\d+[A-Z]*\b"),
    re.compile(r"\b(DIESEL|PETROL|TURBO|HYBRID)\b"),
    re.compile(r"\b(DUAL\s*CAB|SINGLE\s*CAB|DOUBLE\s*CAB|CREW\s*CAB|CAB\s*CHASSIS|UTE|WAGON|SEDAN|HATCH)\b"),
    re.compile(r"\b(MY\d{2,4})\b"),
    re.compile(r"\b[A-Z]{2}\d{2,4}[A-Z]{0,3}\b"),
)


@dataclass(slots=True)
class Winner:
    id: str
    dealer_id: str
    make: str
    model: str
    last_sale_price: float
    avg_profit: float
    variant: str | None = None
    dealer_name: str | None = None
    year_min: int | None = None
    year_max: int | None = None
    avg_km: int | None = None
    median_km: int | None = None
    times_sold: int = 0

    @property
    def reference_km(self) -> int | None:
        return self.median_km if self.median_km is not None else self.avg_km


@dataclass(slots=True)
class ReplicationOpportunity:
    winner_id: str
    dealer_id: str
    listing_id: str
    badge_score: float
    km_score: float
    total_score: float
    delta: float
    threshold: int
    target_buy: int
    priority_level: int
    confidence_tier: ConfidenceTier
    badge_label: str


def normalize_variant(value: str | None) -> str:
    if not value:
        return ""
    text = value.upper()
    for pattern in _VARIANT_NOISE_PATTERNS:
        text = pattern.sub("", text)
    text = re.sub(r"-+", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def badge_score(listing_variant: str | None, winner_variant: str | None) -> float:
    listing_norm = normalize_variant(listing_variant)
    winner_norm = normalize_variant(winner_variant)
    if not winner_norm:
        return 0.5
    if not listing_norm:
        return 0.3
    if listing_norm == winner_norm:
        return 1.0
    if winner_norm in listing_norm or listing_norm in winner_norm:
        return 0.7
    return 0.0


def km_score(listing_km: int | None, reference_km: int | None) -> float:
    if listing_km is None or reference_km is None:
        return 0.5
    diff = abs(listing_km - reference_km)
    if diff <= KM_TOLERANCE:
        return 1.0
    if diff <= KM_TOLERANCE * 1.5:
        return 0.7
    if diff <= KM_TOLERANCE * 2:
        return 0.4
    return 0.0


def delta_threshold(badge: float) -> int:
    if badge >= 1.0:
        return 3000
    if badge >= 0.7:
        return 3500
    return 4500


def confidence_tier(total: float) -> ConfidenceTier:
    if total >= 0.7:
        return "HIGH"
    if total >= 0.5:
        return "MEDIUM"
    return "LOW"


def _badge_label(badge: float) -> str:
    if badge >= 1.0:
        return "EXACT BADGE"
    if badge >= 0.7:
        return "CLOSE BADGE"
    return "MAKE/MODEL ONLY"


def _winner_applies(winner: Winner, listing: Listing) -> bool:
    if winner.make.strip().upper() != listing.make.strip().upper():
        return False
    if winner.model.strip().upper() != listing.model.strip().upper():
        return False
    if winner.year_min is None or winner.year_max is None:
        return True
    return winner.year_min - 1 <= listing.year <= winner.year_max + 1


def score_against_winners(listing: Listing, winners: Iterable[Winner]) -> list[ReplicationOpportunity]:
    if listing.price is None or listing.price <= 0:
        return []
    if listing.km is not None and listing.km > KM_CEILING:
        return []

    variant = listing.variant_raw or listing.variant_normalised
    opportunities: list[ReplicationOpportunity] = []
    for winner in winners:
        if not _winner_applies(winner, listing):
            continue

        km = km_score(listing.km, winner.reference_km)
        if km == 0.0 and listing.km is not None and winner.reference_km is not None:
            continue

        badge = badge_score(variant, winner.variant)
        if badge == 0.0:
            continue

        delta = (winner.last_sale_price - winner.avg_profit) - listing.price
        threshold = delta_threshold(badge)
        if delta < threshold:
            logger.debug(
                "delta below threshold delta=%.0f threshold=%s listing_id=%s winner_id=%s",
                delta,
                threshold,
                listing.id,
                winner.id,
            )
            continue

        total = round(badge * BADGE_WEIGHT + km * KM_WEIGHT, 4)
        opportunities.append(
            ReplicationOpportunity(
                winner_id=winner.id,
                dealer_id=winner.dealer_id,
                listing_id=listing.id,
                badge_score=badge,
                km_score=km,
                total_score=total,
                delta=delta,
                threshold=threshold,
                target_buy=round(listing.price - delta * TARGET_BUY_DELTA_SHARE),
                priority_level=1 if total >= 0.7 else 2,
                confidence_tier=confidence_tier(total),
                badge_label=_badge_label(badge),
            )
        )
    return sorted(opportunities, key=lambda item: (-item.total_score, -item.delta))
