from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

Lane = Literal["Precision", "Advisory", "Probable"]
MatchType = Literal["km_bounded", "spec_only", "variant_family"]
Action = Literal["Buy", "Watch"]

LANE_ORDER: dict[str, int] = {"Precision": 0, "Advisory": 1, "Probable": 2}
INELIGIBLE_STATUSES = frozenset({"sold", "withdrawn"})
CATALOGUE_STATUSES = frozenset({"catalogue", "upcoming"})
YEAR_TOLERANCE = 1
DEFAULT_BUY_THRESHOLD = 3
RESERVE_SOFTENING_PERCENT = 5.0
FATIGUE_DAYS = 14
MIN_ESTIMATED_MARGIN = 2000
MAX_ESTIMATED_DELTA = 25000
MAX_DELTA_PRICE_RATIO = 0.4


@dataclass(slots=True)
class Fingerprint:
    """A dealer's buying spec.

    Matching anchors on ``year`` with a tolerance of one year either side.
    ``year_min`` and ``year_max`` are carried through for display only.
    """

    id: str
    dealer_id: str
    make: str
    model: str
    year: int
    dealer_name: str | None = None
    variant_normalised: str | None = None
    variant_family: str | None = None
    year_min: int | None = None
    year_max: int | None = None
    min_km: int | None = None
    max_km: int | None = None
    sale_km: int | None = None
    fingerprint_type: str = "full"
    engine: str | None = None
    drivetrain: str | None = None
    transmission: str | None = None
    is_active: bool = True
    do_not_buy: bool = False
    expires_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_spec_only(self) -> bool:
        return (
            self.fingerprint_type == "spec_only"
            or self.sale_km is None
            or self.min_km is None
            or self.max_km is None
        )

    def km_in_bounds(self, km: int | None) -> bool:
        if km is None or self.min_km is None or self.max_km is None:
            return False
        return self.min_km <= km <= self.max_km


@dataclass(slots=True)
class Listing:
    id: str
    source: str
    source_listing_id: str
    year: int
    make: str
    model: str
    variant_raw: str | None = None
    variant_normalised: str | None = None
    variant_family: str | None = None
    km: int | None = None
    price: int | None = None
    status: str = "listed"
    visible_to_dealers: bool = True
    excluded_reason: str | None = None
    auction_datetime: datetime | None = None
    engine: str | None = None
    drivetrain: str | None = None
    transmission: str | None = None
    confidence_score: int | None = None
    pass_count: int = 0
    reserve: int | None = None
    previous_reserve: int | None = None
    price_drop_count: int = 0
    relist_count: int = 0
    first_seen_at: datetime | None = None
    description_score: int | None = None
    estimated_margin: int | None = None
    listing_url: str | None = None
    location: str | None = None

    def is_future_catalogue_lot(self, now: datetime) -> bool:
        return (
            self.status in CATALOGUE_STATUSES
            and self.auction_datetime is not None
            and self.auction_datetime > now
        )


@dataclass(slots=True)
class MatchCandidate:
    fingerprint_id: str
    listing_id: str
    dealer_id: str
    tier: int
    lane: Lane
    match_type: MatchType
    confidence_score: int
    action: Action
    auction_datetime: datetime | None = None
    reasons: list[str] = field(default_factory=list)

    def sort_key(self) -> tuple:
        far_future = datetime.max.replace(tzinfo=timezone.utc)
        return (
            self.tier,
            LANE_ORDER[self.lane],
            -self.confidence_score,
            self.auction_datetime or far_future,
        )


def _norm(value: str | None) -> str:
    return (value or "").strip().casefold()


def _family(value: str | None) -> str:
    return (value or "").strip().upper()


def listing_is_eligible(listing: Listing) -> bool:
    return listing.status not in INELIGIBLE_STATUSES and listing.visible_to_dealers


def fingerprint_is_eligible(fingerprint: Fingerprint, now: datetime) -> bool:
    if not fingerprint.is_active or fingerprint.do_not_buy or fingerprint.deleted_at is not None:
        return False
    return fingerprint.expires_at is None or fingerprint.expires_at > now


def reserve_drop_percent(listing: Listing) -> float:
    if not listing.previous_reserve or listing.reserve is None or listing.reserve >= listing.previous_reserve:
        return 0.0
    return (listing.previous_reserve - listing.reserve) / listing.previous_reserve * 100.0


def days_listed(listing: Listing, now: datetime) -> int | None:
    if listing.first_seen_at is None:
        return None
    return max(0, (now - listing.first_seen_at).days)


def lot_confidence_score(listing: Listing) -> int:
    score = 0
    if listing.pass_count >= 2:
        score += 1
    if listing.pass_count >= 3:
        score += 1
    if listing.description_score is not None and listing.description_score <= 1:
        score += 1
    if reserve_drop_percent(listing) >= RESERVE_SOFTENING_PERCENT:
        score += 1
    if (
        listing.estimated_margin is not None
        and listing.estimated_margin >= MIN_ESTIMATED_MARGIN
        and guardrail_accepts(listing.estimated_margin, listing.price)
    ):
        score += 1
    return score


def guardrail_accepts(delta: float, price: float | None) -> bool:
    """Bounds for estimated deltas. Deltas computed from recorded sales are not checked."""
    if price is None or price <= 0:
        return False
    return 0 <= delta <= MAX_ESTIMATED_DELTA and delta <= price * MAX_DELTA_PRICE_RATIO


def pressure_signals(listing: Listing, now: datetime) -> list[str]:
    signals: list[str] = []
    if listing.pass_count >= 3:
        signals.append("PASSED IN x3+")
    elif listing.pass_count == 2:
        signals.append("PASSED IN x2")
    if reserve_drop_percent(listing) >= RESERVE_SOFTENING_PERCENT:
        signals.append("RESERVE SOFTENING")
    if listing.price_drop_count >= 1:
        signals.append("PRICE DROPPING")
    if listing.relist_count >= 1:
        signals.append("RELISTED")
    listed_for = days_listed(listing, now)
    if listed_for is not None and listed_for >= FATIGUE_DAYS:
        signals.append("FATIGUE LISTING")
    return signals


def determine_action(tier: int, confidence_score: int, buy_threshold: int = DEFAULT_BUY_THRESHOLD) -> Action:
    if tier != 1:
        return "Watch"
    return "Buy" if confidence_score >= buy_threshold else "Watch"


def _attributes_agree(fingerprint: Fingerprint, listing: Listing) -> bool:
    for spec_value, listing_value in (
        (fingerprint.engine, listing.engine),
        (fingerprint.drivetrain, listing.drivetrain),
        (fingerprint.transmission, listing.transmission),
    ):
        if _norm(spec_value) and _norm(listing_value) and _norm(spec_value) != _norm(listing_value):
            return False
    return True


def _tier_one(fingerprint: Fingerprint, listing: Listing) -> tuple[Lane, MatchType] | None:
    spec_variant = _norm(fingerprint.variant_normalised)
    if not spec_variant or spec_variant != _norm(listing.variant_normalised):
        return None
    if fingerprint.is_spec_only:
        return "Advisory", "spec_only"
    if not _attributes_agree(fingerprint, listing):
        return None
    if fingerprint.km_in_bounds(listing.km):
        return "Precision", "km_bounded"
    return None


def _tier_two(fingerprint: Fingerprint, listing: Listing) -> bool:
    spec_family = _family(fingerprint.variant_family)
    if not spec_family or spec_family != _family(listing.variant_family):
        return False
    if fingerprint.is_spec_only:
        return True
    return fingerprint.km_in_bounds(listing.km)


def match(
    fingerprint: Fingerprint,
    listing: Listing,
    now: datetime,
    *,
    buy_threshold: int = DEFAULT_BUY_THRESHOLD,
) -> MatchCandidate | None:
    if not listing_is_eligible(listing) or not fingerprint_is_eligible(fingerprint, now):
        return None
    if listing.excluded_reason:
        return None
    if abs(listing.year - fingerprint.year) > YEAR_TOLERANCE:
        return None
    if _norm(listing.make) != _norm(fingerprint.make) or _norm(listing.model) != _norm(fingerprint.model):
        return None

    confidence = listing.confidence_score if listing.confidence_score is not None else lot_confidence_score(listing)
    reasons = pressure_signals(listing, now)

    if not listing.is_future_catalogue_lot(now):
        tier_one = _tier_one(fingerprint, listing)
        if tier_one is not None:
            lane, match_type = tier_one
            return MatchCandidate(
                fingerprint_id=fingerprint.id,
                listing_id=listing.id,
                dealer_id=fingerprint.dealer_id,
                tier=1,
                lane=lane,
                match_type=match_type,
                confidence_score=confidence,
                action=determine_action(1, confidence, buy_threshold),
                auction_datetime=listing.auction_datetime,
                reasons=reasons,
            )

    if _tier_two(fingerprint, listing):
        return MatchCandidate(
            fingerprint_id=fingerprint.id,
            listing_id=listing.id,
            dealer_id=fingerprint.dealer_id,
            tier=2,
            lane="Probable",
            match_type="variant_family",
            confidence_score=confidence,
            action="Watch",
            auction_datetime=listing.auction_datetime,
            reasons=reasons,
        )
    return None


def rank_matches(candidates: Iterable[MatchCandidate]) -> list[MatchCandidate]:
    return sorted(candidates, key=MatchCandidate.sort_key)


def run_matching(
    fingerprints: Iterable[Fingerprint],
    listings: Iterable[Listing],
    now: datetime,
    *,
    buy_threshold: int = DEFAULT_BUY_THRESHOLD,
) -> list[MatchCandidate]:
    """Evaluates every eligible (fingerprint, listing) pair and returns globally ranked matches.

    Listings are bucketed by make and model so that only pairs that could pass
    the identity check are evaluated.
    """
    by_identity: dict[tuple[str, str], list[Listing]] = defaultdict(list)
    for listing in listings:
        if listing_is_eligible(listing) and not listing.excluded_reason:
            by_identity[(_norm(listing.make), _norm(listing.model))].append(listing)

    candidates: list[MatchCandidate] = []
    for fingerprint in fingerprints:
        if not fingerprint_is_eligible(fingerprint, now):
            continue
        for listing in by_identity.get((_norm(fingerprint.make), _norm(fingerprint.model)), ()):
            candidate = match(fingerprint, listing, now, buy_threshold=buy_threshold)
            if candidate is not None:
                candidates.append(candidate)
    return rank_matches(candidates)
