from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Protocol
from uuid import uuid4

from opentelemetry import trace

from bidscout_api.core.config import Settings
from bidscout_api.services.alerts import Alert, build_buy_alert, build_replication_alert
from bidscout_api.services.matching import Fingerprint, Listing, MatchCandidate, run_matching
from bidscout_api.services.replication import ReplicationOpportunity, Winner, score_against_winners

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CRON_NAME = "spec-matching"


class MatchingRepository(Protocol):
    async def list_active_fingerprints(self) -> list[Fingerprint]: ...

    async def list_candidate_listings(self, *, window_days: int) -> list[Listing]: ...

    async def list_winners(self) -> list[Winner]: ...

    async def replace_run_results(
        self,
        *,
        run_id: str,
        matches: list[MatchCandidate],
        opportunities: list[ReplicationOpportunity],
    ) -> None: ...

    async def record_alert(self, alert: Alert) -> bool: ...

    async def record_audit(
        self,
        *,
        cron_name: str,
        success: bool,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None: ...


@dataclass(slots=True)
class MatchingRunResult:
    run_id: str
    fingerprints: int
    listings: int
    matches: list[MatchCandidate] = field(default_factory=list)
    opportunities: list[ReplicationOpportunity] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)

    @property
    def buy_count(self) -> int:
        return sum(1 for match in self.matches if match.action == "Buy")

    def as_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "fingerprints": self.fingerprints,
            "listings": self.listings,
            "matches_written": len(self.matches),
            "buy_count": self.buy_count,
            "watch_count": len(self.matches) - self.buy_count,
            "replication_written": len(self.opportunities),
            "alerts_queued": len(self.alerts),
        }


def _replicate(listings: list[Listing], winners: list[Winner]) -> list[ReplicationOpportunity]:
    if not winners:
        return []
    opportunities: list[ReplicationOpportunity] = []
    for listing in listings:
        opportunities.extend(score_against_winners(listing, winners))
    return opportunities


async def _record_new_alerts(
    repository: MatchingRepository,
    matches: list[MatchCandidate],
    opportunities: list[ReplicationOpportunity],
    listings_by_id: dict[str, Listing],
    dealer_names: dict[str, str | None],
    now: datetime,
) -> list[Alert]:
    candidates: list[Alert] = []
    for match in matches:
        if match.action == "Buy":
            listing = listings_by_id[match.listing_id]
            candidates.append(build_buy_alert(match, listing, now, dealer_name=dealer_names.get(match.dealer_id)))
    for opportunity in opportunities:
        if opportunity.priority_level == 1:
            listing = listings_by_id[opportunity.listing_id]
            candidates.append(
                build_replication_alert(opportunity, listing, now, dealer_name=dealer_names.get(opportunity.dealer_id))
            )

    fresh: list[Alert] = []
    for alert in candidates:
        if await repository.record_alert(alert):
            fresh.append(alert)
    return fresh


async def run_spec_matching(
    repository: MatchingRepository,
    settings: Settings,
    now: datetime | None = None,
) -> MatchingRunResult:
    """Recomputes all matches and replication opportunities in one pass.

    The previous run's output is replaced wholesale. Alerts are only returned for
    dedup keys not already present in the alert log, and sending them is left to
    the caller.
    """
    now = now or datetime.now(timezone.utc)
    run_id = str(uuid4())

    with tracer.start_as_current_span("matching.run") as span:
        span.set_attribute("bidscout.run_id", run_id)
        try:
            fingerprints = await repository.list_active_fingerprints()
            listings = await repository.list_candidate_listings(window_days=settings.matching_listing_window_days)
            matches = run_matching(fingerprints, listings, now, buy_threshold=settings.buy_confidence_threshold)

            opportunities: list[ReplicationOpportunity] = []
            winners: list[Winner] = []
            if settings.replication_enabled:
                winners = await repository.list_winners()
                opportunities = _replicate(listings, winners)

            await repository.replace_run_results(run_id=run_id, matches=matches, opportunities=opportunities)

            dealer_names = {fingerprint.dealer_id: fingerprint.dealer_name for fingerprint in fingerprints}
            dealer_names.update({winner.dealer_id: winner.dealer_name for winner in winners if winner.dealer_name})
            alerts = await _record_new_alerts(
                repository,
                matches,
                opportunities,
                {listing.id: listing for listing in listings},
                dealer_names,
                now,
            )
        except Exception as exc:
            logger.exception("matching run failed run_id=%s", run_id)
            await repository.record_audit(cron_name=CRON_NAME, success=False, error=str(exc))
            raise

        result = MatchingRunResult(
            run_id=run_id,
            fingerprints=len(fingerprints),
            listings=len(listings),
            matches=matches,
            opportunities=opportunities,
            alerts=alerts,
        )
        summary = result.as_dict()
        span.set_attribute("bidscout.matches", summary["matches_written"])
        await repository.record_audit(cron_name=CRON_NAME, success=True, result=summary)
        logger.info(
            "matching run complete run_id=%s matches=%s buy=%s replication=%s alerts=%s",
            run_id,
            summary["matches_written"],
            summary["buy_count"],
            summary["replication_written"],
            summary["alerts_queued"],
        )
        return result
