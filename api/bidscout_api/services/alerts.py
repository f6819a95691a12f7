from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from functools import lru_cache
import logging
from typing import Any, Literal

import httpx

from bidscout_api.core.config import get_settings
from bidscout_api.services.matching import Listing, MatchCandidate
from bidscout_api.services.replication import ReplicationOpportunity

logger = logging.getLogger(__name__)

AlertType = Literal["buy_signal", "replication"]
DEFAULT_REASON = "new"


@dataclass(slots=True)
class Alert:
    dealer_id: str
    lot_id: str
    alert_type: AlertType
    reason: str
    message: str
    dedup_key: str
    dealer_name: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    def as_payload(self) -> dict[str, Any]:
        return asdict(self)


def dedup_key(dealer: str, lot_id: str, alert_type: str, reason: str | None, day: date) -> str:
    return "|".join((dealer, lot_id, alert_type, reason or DEFAULT_REASON, day.isoformat()))


def vehicle_label(listing: Listing) -> str:
    parts = [str(listing.year), listing.make, listing.model, listing.variant_normalised or listing.variant_raw or ""]
    return " ".join(part for part in parts if part).strip()


def _reason_slug(signal: str) -> str:
    return signal.lower().replace(" ", "_").replace("+", "_plus")


def build_buy_alert(
    candidate: MatchCandidate,
    listing: Listing,
    now: datetime,
    *,
    dealer_name: str | None = None,
) -> Alert:
    reason = _reason_slug(candidate.reasons[0]) if candidate.reasons else DEFAULT_REASON
    message = f"{vehicle_label(listing)} matches your {candidate.lane.lower()} spec: {candidate.action.upper()}"
    if candidate.reasons:
        message = f"{message} ({', '.join(candidate.reasons)})"
    return Alert(
        dealer_id=candidate.dealer_id,
        dealer_name=dealer_name,
        lot_id=listing.id,
        alert_type="buy_signal",
        reason=reason,
        message=message,
        dedup_key=dedup_key(candidate.dealer_id, listing.id, "buy_signal", reason, now.date()),
        payload={
            "fingerprint_id": candidate.fingerprint_id,
            "tier": candidate.tier,
            "lane": candidate.lane,
            "match_type": candidate.match_type,
            "confidence_score": candidate.confidence_score,
            "listing_url": listing.listing_url,
            "price": listing.price,
            "km": listing.km,
            "auction_datetime": listing.auction_datetime.isoformat() if listing.auction_datetime else None,
        },
    )


def build_replication_alert(
    opportunity: ReplicationOpportunity,
    listing: Listing,
    now: datetime,
    *,
    dealer_name: str | None = None,
) -> Alert:
    message = (
        f"{vehicle_label(listing)} looks like a past winner ({opportunity.badge_label}): "
        f"${opportunity.delta:,.0f} under, target buy ${opportunity.target_buy:,}"
    )
    return Alert(
        dealer_id=opportunity.dealer_id,
        dealer_name=dealer_name,
        lot_id=listing.id,
        alert_type="replication",
        reason=DEFAULT_REASON,
        message=message,
        dedup_key=dedup_key(opportunity.dealer_id, listing.id, "replication", DEFAULT_REASON, now.date()),
        payload={
            "winner_id": opportunity.winner_id,
            "confidence_tier": opportunity.confidence_tier,
            "total_score": opportunity.total_score,
            "delta": opportunity.delta,
            "target_buy": opportunity.target_buy,
            "listing_url": listing.listing_url,
            "price": listing.price,
        },
    )


class AlertDispatcher:
    """Posts alerts to a webhook. Delivery failures are logged and never raised."""

    def __init__(
        self,
        webhook_url: str | None,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def send(self, alert: Alert) -> bool:
        if not self.webhook_url:
            logger.debug("alert webhook not configured; dropping dedup_key=%s", alert.dedup_key)
            return False
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(self.webhook_url, json=alert.as_payload())
                response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("alert delivery failed dedup_key=%s error=%s", alert.dedup_key, exc)
            return False
        return True

    async def dispatch(self, alerts: Iterable[Alert]) -> int:
        delivered = 0
        for alert in alerts:
            if await self.send(alert):
                delivered += 1
        return delivered


@lru_cache
def get_alert_dispatcher() -> AlertDispatcher:
    settings = get_settings()
    return AlertDispatcher(settings.alert_webhook_url, timeout_seconds=settings.alert_timeout_seconds)
