from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

from bidscout_api.schemas.ingest import StubItemIn

Confidence = Literal["high", "med", "low"]


@dataclass(slots=True)
class StubRecord:
    source_stock_id: str
    detail_url: str
    year: int | None
    make: str | None
    model: str | None
    km: int | None
    location: str | None
    raw_text: str | None
    fingerprint_confidence: Confidence


@dataclass(slots=True)
class StubException:
    detail_url: str
    missing_fields: list[str]
    reason: str


@dataclass(slots=True)
class StubBatchResult:
    created: int = 0
    updated: int = 0
    exceptions: int = 0


def fingerprint_confidence(item: StubItemIn) -> Confidence:
    if item.year is None or not item.make or not item.model:
        return "low"
    return "high" if item.km is not None else "med"


def partition_stubs(items: Iterable[StubItemIn]) -> tuple[list[StubRecord], list[StubException]]:
    """Splits a webhook batch into storable stubs and exception rows.

    A stub without a stock id cannot be keyed, so it is recorded as an exception
    instead. Repeated stock ids within one batch collapse to the last occurrence.
    """
    records: dict[str, StubRecord] = {}
    exceptions: list[StubException] = []
    for item in items:
        stock_id = (item.source_stock_id or "").strip()
        if not stock_id:
            exceptions.append(
                StubException(
                    detail_url=item.detail_url,
                    missing_fields=["source_stock_id"],
                    reason="missing stock id in list page",
                )
            )
            continue
        records[stock_id] = StubRecord(
            source_stock_id=stock_id,
            detail_url=item.detail_url,
            year=item.year,
            make=item.make.strip().upper() if item.make else None,
            model=item.model.strip().upper() if item.model else None,
            km=item.km,
            location=item.location,
            raw_text=item.raw_text[:500] if item.raw_text else None,
            fingerprint_confidence=fingerprint_confidence(item),
        )
    return list(records.values()), exceptions
