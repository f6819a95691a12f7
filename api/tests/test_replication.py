from __future__ import annotations

from dataclasses import replace

import pytest

from bidscout_api.services.matching import Listing
from bidscout_api.services.replication import (
    Winner,
    badge_score,
    delta_threshold,
    km_score,
    normalize_variant,
    score_against_winners,
)


def _winner(**overrides) -> Winner:
    base = Winner(
        id="win-1",
        dealer_id="dealer-1",
        dealer_name="Northside Motors",
        make="TOYOTA",
        model="HILUX",
        variant="SR5",
        year_min=2018,
        year_max=2020,
        median_km=60000,
        last_sale_price=48000,
        avg_profit=4000,
        times_sold=3,
    )
    return replace(base, **overrides)


def _listing(**overrides) -> Listing:
    base = Listing(
        id="lst-1",
        source="autotrader",
        source_listing_id="AT-1",
        year=2019,
        make="TOYOTA",
        model="HILUX",
        variant_raw="SR5 4X4 2.8 AUTO DUAL CAB",
        km=62000,
        price=38000,
        status="listed",
    )
    return replace(base, **overrides)


def test_normalize_variant_strips_drivetrain_engine_and_body_noise() -> None:
    assert normalize_variant("SR5 4X4 2.8 AUTO DUAL CAB") == "SR5"
    assert normalize_variant("sr5-hi-rider 2.8d") == "SR5 HI RIDER"
    assert normalize_variant(None) == ""


@pytest.mark.parametrize(
    ("listing_variant", "winner_variant", "expected"),
    [
        ("SR5 AUTO", "SR5", 1.0),
        ("SR5 HI RIDER", "SR5", 0.7),
        ("WORKMATE", "SR5", 0.0),
        (None, "SR5", 0.3),
        ("SR5", None, 0.5),
    ],
)
def test_badge_score(listing_variant: str | None, winner_variant: str | None, expected: float) -> None:
    assert badge_score(listing_variant, winner_variant) == expected


@pytest.mark.parametrize(
    ("listing_km", "reference_km", "expected"),
    [
        (60000, 65000, 1.0),
        (60000, 74000, 0.7),
        (60000, 79000, 0.4),
        (60000, 90000, 0.0),
        (None, 60000, 0.5),
    ],
)
def test_km_score(listing_km: int | None, reference_km: int | None, expected: float) -> None:
    assert km_score(listing_km, reference_km) == expected


def test_weaker_badge_needs_a_larger_delta() -> None:
    assert delta_threshold(1.0) < delta_threshold(0.7) < delta_threshold(0.5)


def test_exact_badge_close_km_scores_high_priority() -> None:
    opportunities = score_against_winners(_listing(), [_winner()])

    assert len(opportunities) == 1
    opportunity = opportunities[0]
    assert opportunity.delta == 6000
    assert opportunity.threshold == 3000
    assert opportunity.total_score == 1.0
    assert opportunity.priority_level == 1
    assert opportunity.confidence_tier == "HIGH"
    assert opportunity.badge_label == "EXACT BADGE"
    assert opportunity.target_buy == 34400


def test_delta_below_threshold_is_dropped() -> None:
    assert score_against_winners(_listing(price=42000), [_winner()]) == []


def test_large_recorded_sale_delta_is_not_capped() -> None:
    opportunities = score_against_winners(_listing(price=30000), [_winner()])

    assert [item.delta for item in opportunities] == [14000]
    assert opportunities[0].target_buy == 21600


def test_high_km_listing_is_skipped() -> None:
    assert score_against_winners(_listing(km=260000), [_winner(median_km=255000)]) == []


def test_other_model_or_year_range_is_ignored() -> None:
    assert score_against_winners(_listing(model="LANDCRUISER"), [_winner()]) == []
    assert score_against_winners(_listing(year=2016), [_winner()]) == []


def test_results_sorted_by_score_then_delta() -> None:
    winners = [
        _winner(id="close", variant="SR5 HI RIDER", last_sale_price=52000),
        _winner(id="exact", variant="SR5"),
        _winner(id="far-km", variant="SR5", median_km=80000, last_sale_price=50000),
    ]

    opportunities = score_against_winners(_listing(variant_raw="SR5"), winners)

    assert [item.winner_id for item in opportunities] == ["exact", "close", "far-km"]
