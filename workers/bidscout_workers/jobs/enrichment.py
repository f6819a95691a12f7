from __future__ import annotations

import logging

from bidscout_workers.core.taxonomy import Taxonomy
from bidscout_workers.services.listing_sink import ListingSink

logger = logging.getLogger(__name__)


async def backfill_variant_family(sink: ListingSink, taxonomy: Taxonomy, *, limit: int = 500) -> dict[str, int]:
    candidates = await sink.missing_variant_family(limit, taxonomy.version)
    updated = 0
    unresolved = 0
    for candidate in candidates:
        family = taxonomy.variant_family(candidate.make, candidate.model, candidate.variant_raw)
        if family is None:
            await sink.mark_variant_family_checked(candidate.source, candidate.source_listing_id, taxonomy.version)
            unresolved += 1
            continue
        if await sink.apply_enrichment(candidate.source, candidate.source_listing_id, {"variant_family": family}):
            updated += 1

    if candidates:
        logger.info(
            "variant family backfill scanned=%s updated=%s unresolved=%s taxonomy=%s",
            len(candidates),
            updated,
            unresolved,
            taxonomy.version,
        )
    return {"scanned": len(candidates), "updated": updated, "unresolved": unresolved}
